"""Per-request proxy session state."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger("chatgate.session")


class SessionState(str, Enum):
    AUTHENTICATING = "authenticating"
    VALIDATING = "validating"
    DISPATCHING = "dispatching"
    RELAYING = "relaying"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


_PROGRESS = [
    SessionState.AUTHENTICATING,
    SessionState.VALIDATING,
    SessionState.DISPATCHING,
    SessionState.RELAYING,
]

TERMINAL_STATES = frozenset(
    {SessionState.COMPLETED, SessionState.ABORTED, SessionState.FAILED}
)


@dataclass
class ProxySession:
    """One inbound ``POST /chat``, from authentication to the last byte.

    ``abort`` is the cancellation signal handed to the backend call; it is
    set only when this session's client disconnects.
    """

    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    abort: asyncio.Event = field(default_factory=asyncio.Event)
    state: SessionState = SessionState.AUTHENTICATING
    key_id: int | None = None
    status_code: int | None = None
    error: str | None = None
    bytes_relayed: int = 0
    start_time: float = field(default_factory=time.monotonic)

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.start_time) * 1000

    def advance(self, state: SessionState) -> None:
        """Move forward to a non-terminal state.

        Raises ``RuntimeError`` on a backwards or out-of-order transition.
        """
        if self.finished or state not in _PROGRESS:
            raise RuntimeError(f"Cannot move session from {self.state.value} to {state.value}")
        if _PROGRESS.index(state) <= _PROGRESS.index(self.state):
            raise RuntimeError(f"Cannot move session from {self.state.value} to {state.value}")
        self.state = state

    def finish(
        self,
        state: SessionState,
        status_code: int | None,
        error: str | None = None,
    ) -> None:
        """Enter a terminal state and log the outcome.  Later calls are no-ops."""
        if self.finished:
            return
        if state not in TERMINAL_STATES:
            raise RuntimeError(f"{state.value} is not a terminal state")
        self.state = state
        self.status_code = status_code
        self.error = error
        log = logger.warning if state is SessionState.FAILED else logger.info
        log(
            "session %s %s: status=%s key=%s bytes=%d elapsed=%.0fms%s",
            self.id,
            state.value,
            status_code,
            self.key_id,
            self.bytes_relayed,
            self.elapsed_ms,
            f" error={error}" if error else "",
        )
