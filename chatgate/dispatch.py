"""Outbound calls to the inference backend."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

import httpx

from .config import GatewayConfig
from .errors import BackendAborted, BackendError, BackendUnreachable
from .validation import ChatRequest

logger = logging.getLogger("chatgate.dispatch")

CHAT_PATH = "/api/chat"

#: Backend response headers copied onto the client response.  Everything
#: else (server, date, hop-by-hop, internal headers) is dropped.
FORWARDED_HEADERS = (
    "content-type",
    "transfer-encoding",
    "cache-control",
    "content-encoding",
)


@dataclass
class BackendReply:
    """An open backend response whose body has not been read yet."""

    status_code: int
    headers: list[tuple[str, str]]
    response: httpx.Response

    async def aclose(self) -> None:
        await self.response.aclose()


def forwarded_headers(response: httpx.Response) -> list[tuple[str, str]]:
    headers = []
    for name in FORWARDED_HEADERS:
        value = response.headers.get(name)
        if value:
            headers.append((name, value))
    return headers


class BackendDispatcher:
    """Issues ``POST /api/chat`` calls bound to a caller-owned abort signal."""

    def __init__(
        self,
        config: GatewayConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.client = httpx.AsyncClient(
            base_url=config.backend_url,
            # No read/write/pool limit: replies may stream indefinitely.
            timeout=httpx.Timeout(None, connect=config.connect_timeout),
            transport=transport,
        )

    async def close(self) -> None:
        await self.client.aclose()

    def build_payload(self, chat: ChatRequest) -> dict:
        return {
            "model": self.config.backend_model,
            "messages": [m.to_dict() for m in chat.messages],
            "stream": chat.stream,
            "keep_alive": -1,
        }

    async def dispatch(self, chat: ChatRequest, abort: asyncio.Event) -> BackendReply:
        """Send *chat* to the backend and return once response headers arrive.

        The call is raced against *abort*; whoever owns the event can cancel
        the call at any point without touching this coroutine.

        Raises
        ------
        BackendAborted
            *abort* was set before or during the call.
        BackendUnreachable
            Connection-level failure (refused, reset, DNS, connect timeout).
        BackendError
            Anything else that went wrong while setting up the call.
        """
        if abort.is_set():
            raise BackendAborted()

        request = self.client.build_request(
            "POST", CHAT_PATH, json=self.build_payload(chat)
        )
        send_task = asyncio.create_task(self.client.send(request, stream=True))
        abort_task = asyncio.create_task(abort.wait())
        try:
            await asyncio.wait(
                {send_task, abort_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            abort_task.cancel()
            if not send_task.done():
                send_task.cancel()
                await asyncio.gather(send_task, return_exceptions=True)

        if send_task.cancelled():
            logger.info("Backend request aborted due to client disconnect")
            raise BackendAborted()

        try:
            response = send_task.result()
        except httpx.TransportError as exc:
            logger.error("Error connecting to backend at %s: %s", self.config.backend_url, exc)
            raise BackendUnreachable() from exc
        except Exception as exc:
            logger.exception("Unexpected error calling backend")
            raise BackendError() from exc

        if abort.is_set():
            # Headers arrived in the same tick as the disconnect.
            await response.aclose()
            raise BackendAborted()

        return BackendReply(
            status_code=response.status_code,
            headers=forwarded_headers(response),
            response=response,
        )
