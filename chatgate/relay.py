"""Streams a backend response body to the client.

:class:`StreamRelay` is a raw ASGI response rather than a Starlette
``StreamingResponse`` because it needs control over *when* the response
prefix is committed: the status line is only sent once the first chunk has
been read, so a backend that fails before producing anything still gets a
clean ``502`` instead of a truncated ``200``.

Backpressure comes from the server: ``await send(...)`` does not return
while the transport's write buffer is over its high-water mark, and the
next chunk is not read until it does.  At most one chunk is held in memory
per session.
"""

from __future__ import annotations

import asyncio
import json
import logging

from starlette.types import Receive, Scope, Send

from .dispatch import BackendReply
from .errors import StreamingFailed
from .session import ProxySession, SessionState

logger = logging.getLogger("chatgate.relay")


async def wait_for_disconnect(receive: Receive) -> None:
    """Return once the client has gone away.

    Leftover ``http.request`` messages (an unread body) are discarded.
    """
    while True:
        message = await receive()
        if message["type"] == "http.disconnect":
            return


def abort_on_disconnect(receive: Receive, session: ProxySession) -> asyncio.Task:
    """Start a task that sets ``session.abort`` when the client disconnects.

    The caller must cancel the returned task once it no longer cares.
    """

    def _on_done(task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is None:
            session.abort.set()

    task = asyncio.create_task(wait_for_disconnect(receive))
    task.add_done_callback(_on_done)
    return task


class StreamRelay:
    """ASGI response relaying *reply* chunk by chunk.

    The session ends in one of three states:

    - ``COMPLETED``: the backend body was exhausted and fully written.
    - ``ABORTED``: the client disconnected first; the backend response is
      closed straight away, which drops the backend connection.
    - ``FAILED``: a read or write raised.  Before the prefix was sent this
      becomes a ``502`` JSON response; after, the connection is cut.
    """

    def __init__(
        self,
        reply: BackendReply,
        session: ProxySession,
        extra_headers: dict[str, str] | None = None,
    ) -> None:
        self.reply = reply
        self.session = session
        self.extra_headers = extra_headers or {}
        self.prefix_sent = False

    def _raw_headers(self) -> list[tuple[bytes, bytes]]:
        headers = [(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in self.reply.headers]
        for k, v in self.extra_headers.items():
            headers.append((k.lower().encode("latin-1"), v.encode("latin-1")))
        return headers

    async def _send_prefix(self, send: Send) -> None:
        self.prefix_sent = True
        await send({
            "type": "http.response.start",
            "status": self.reply.status_code,
            "headers": self._raw_headers(),
        })

    async def _pump(self, send: Send) -> None:
        try:
            async for chunk in self.reply.response.aiter_raw():
                if not chunk:
                    continue
                if not self.prefix_sent:
                    await self._send_prefix(send)
                await send({"type": "http.response.body", "body": chunk, "more_body": True})
                self.session.bytes_relayed += len(chunk)
            if not self.prefix_sent:
                await self._send_prefix(send)
            await send({"type": "http.response.body", "body": b"", "more_body": False})
        except Exception as exc:
            raise StreamingFailed(f"Error streaming response: {exc}") from exc

    async def _send_error(self, send: Send, status: int, body: dict | None) -> None:
        content = json.dumps(body).encode("utf-8") if body is not None else b""
        headers = [(b"content-length", str(len(content)).encode("latin-1"))]
        if body is not None:
            headers.append((b"content-type", b"application/json"))
        await send({"type": "http.response.start", "status": status, "headers": headers})
        await send({"type": "http.response.body", "body": content, "more_body": False})

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        session = self.session
        pump = asyncio.create_task(self._pump(send))
        watcher = abort_on_disconnect(receive, session)
        try:
            await asyncio.wait({pump, watcher}, return_when=asyncio.FIRST_COMPLETED)

            if pump.done():
                exc = pump.exception()
                if exc is None:
                    session.finish(SessionState.COMPLETED, self.reply.status_code)
                    return
                if self.prefix_sent:
                    # Too late for an error response; returning without the
                    # final body message makes the server drop the connection.
                    logger.error("Error streaming response after headers were sent: %s", exc)
                    session.finish(SessionState.FAILED, self.reply.status_code, str(exc))
                    return
                logger.error("Error streaming response: %s", exc)
                await self._send_error(send, StreamingFailed.status_code, StreamingFailed().to_dict())
                session.finish(SessionState.FAILED, StreamingFailed.status_code, str(exc))
                return

            logger.info("Client disconnected, aborting backend request (session %s)", session.id)
            session.abort.set()
            pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)
            if not self.prefix_sent:
                # Nobody is listening; the status is for the access log.
                await self._send_error(send, 499, None)
                session.finish(SessionState.ABORTED, 499)
            else:
                session.finish(SessionState.ABORTED, self.reply.status_code)
        except asyncio.CancelledError:
            session.finish(SessionState.FAILED, self.reply.status_code, "cancelled during shutdown")
            raise
        finally:
            for task in (pump, watcher):
                task.cancel()
            await asyncio.gather(pump, watcher, return_exceptions=True)
            await self.reply.aclose()
