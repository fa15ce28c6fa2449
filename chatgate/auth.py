"""Bearer-token authentication against the key store."""

from __future__ import annotations

import asyncio
import logging

from .errors import Unauthorized
from .keystore import ApiKey, KeyStore, utcnow

logger = logging.getLogger("chatgate.auth")

BEARER_PREFIX = "Bearer "


def extract_bearer_token(header: str | None) -> str:
    """Return the token from an ``Authorization: Bearer <token>`` header.

    Raises ``Unauthorized`` without touching the store when the header is
    missing, uses another scheme, or carries an empty token.
    """
    if not header or not header.startswith(BEARER_PREFIX):
        raise Unauthorized("Missing or invalid API key")
    token = header[len(BEARER_PREFIX):]
    if not token:
        raise Unauthorized("Missing or invalid API key")
    return token


class Authenticator:
    """Validates API keys and records their use.

    Usage updates run as detached tasks: the request never waits for them
    and a failed update is only logged.  The tasks are kept in
    ``pending`` so shutdown can wait for them before the store is closed.
    """

    def __init__(self, store: KeyStore) -> None:
        self.store = store
        self.pending: set[asyncio.Task] = set()

    async def authenticate(self, authorization: str | None) -> ApiKey:
        """Return the active key record for *authorization*.

        Raises
        ------
        Unauthorized
            Missing/malformed header, unknown key, or inactive key.
        StoreFailure
            The lookup itself failed.
        """
        token = extract_bearer_token(authorization)
        record = await self.store.find_by_key(token)
        if record is None or not record.is_active:
            raise Unauthorized("Invalid or inactive API key")

        self._record_usage(record.id)
        return record

    def _record_usage(self, key_id: int) -> None:
        task = asyncio.create_task(self._touch(key_id))
        self.pending.add(task)
        task.add_done_callback(self.pending.discard)

    async def _touch(self, key_id: int) -> None:
        try:
            await self.store.touch(key_id, utcnow())
        except Exception as exc:
            logger.warning("Failed to record usage for API key %s: %s", key_id, exc)

    async def drain(self) -> None:
        """Wait for outstanding usage updates."""
        if self.pending:
            await asyncio.gather(*self.pending, return_exceptions=True)
