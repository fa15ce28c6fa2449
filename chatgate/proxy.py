"""Authenticated streaming chat proxy server."""

from __future__ import annotations

import logging
import os
import signal
from contextlib import asynccontextmanager
from pathlib import Path

import httpx
from starlette.applications import Starlette
from starlette.requests import ClientDisconnect, Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from .auth import Authenticator
from .config import GatewayConfig
from .dispatch import BackendDispatcher
from .errors import BackendAborted, GatewayError, StoreFailure, Unauthorized
from .keystore import KeyStore
from .relay import StreamRelay, abort_on_disconnect
from .session import ProxySession, SessionState
from .validation import check_content_length, decode_body, parse_chat_request

logger = logging.getLogger("chatgate.proxy")

PIDFILE = Path.home() / ".chatgate" / "gateway.pid"


class Gateway:
    """Long-lived collaborators shared by every request.

    The key store engine and the backend HTTP client are the only shared
    resources; sessions never share mutable state with each other.
    """

    def __init__(
        self,
        config: GatewayConfig,
        *,
        store: KeyStore | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.store = store or KeyStore(config.database_url)
        self.authenticator = Authenticator(self.store)
        self.dispatcher = BackendDispatcher(config, transport=transport)

    async def startup(self) -> None:
        """Connect to the key store.  Any failure here is fatal."""
        try:
            await self.store.connect()
        except Exception:
            logger.exception("Failed to connect to key store at %s", self.config.database_url)
            raise
        logger.info("Key store connected")

    async def shutdown(self) -> None:
        await self.authenticator.drain()
        await self.dispatcher.close()
        await self.store.close()
        logger.info("Key store disconnected")


# --- Starlette app ---

# Module-level singleton for the active gateway, set by ``create_app()``.
# ``reset_gateway_state()`` gives tests a teardown path.
_gateway: Gateway | None = None


def reset_gateway_state() -> None:
    """Reset the module-level gateway singleton to ``None``."""
    global _gateway
    _gateway = None


def _get_gateway() -> Gateway:
    """Return the active gateway, raising ``RuntimeError`` if not initialized."""
    if _gateway is None:
        raise RuntimeError("Gateway not initialized")
    return _gateway


def error_response(exc: GatewayError) -> Response:
    """Render a request-path error as an HTTP response."""
    body = exc.to_dict()
    if body is None:
        return Response(status_code=exc.status_code)
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, Unauthorized) else None
    return JSONResponse(body, status_code=exc.status_code, headers=headers)


async def handle_health(request: Request):
    gateway = _get_gateway()
    if await gateway.store.ping():
        return JSONResponse({"status": "healthy", "database": "connected"})
    return JSONResponse(
        {"status": "unhealthy", "database": "disconnected"},
        status_code=503,
    )


async def handle_chat(request: Request):
    gateway = _get_gateway()
    config = gateway.config
    session = ProxySession()

    try:
        record = await gateway.authenticator.authenticate(
            request.headers.get("authorization")
        )
        session.key_id = record.id

        session.advance(SessionState.VALIDATING)
        check_content_length(request.headers.get("content-length"), config.max_body_size)
        body = decode_body(await request.body(), max_body_size=config.max_body_size)
        chat = parse_chat_request(body, max_messages=config.max_messages)

        session.advance(SessionState.DISPATCHING)
        watcher = abort_on_disconnect(request.receive, session)
        try:
            reply = await gateway.dispatcher.dispatch(chat, session.abort)
        finally:
            watcher.cancel()
    except ClientDisconnect:
        logger.info("Client disconnected while sending the request body (session %s)", session.id)
        session.finish(SessionState.ABORTED, BackendAborted.status_code)
        return error_response(BackendAborted())
    except BackendAborted as exc:
        session.finish(SessionState.ABORTED, exc.status_code)
        return error_response(exc)
    except GatewayError as exc:
        if isinstance(exc, StoreFailure):
            logger.error("Error validating API key: %s", exc.__cause__)
        session.finish(SessionState.FAILED, exc.status_code, exc.message)
        return error_response(exc)

    session.advance(SessionState.RELAYING)
    extra_headers = {"X-Accel-Buffering": "no"} if chat.stream else None
    return StreamRelay(reply, session, extra_headers=extra_headers)


async def handle_unexpected_error(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"error": "Internal server error"}, status_code=500)


def create_app(
    config: GatewayConfig,
    *,
    store: KeyStore | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Starlette:
    """Create and configure the gateway ASGI application.

    *store* and *transport* replace the key store and the backend HTTP
    transport; tests use them to avoid real I/O.

    .. note::
        This function sets the module-level ``_gateway`` singleton; only one
        gateway per process is supported.  Calling it again replaces the
        previous instance and logs a warning.
    """
    global _gateway
    if _gateway is not None:
        logger.warning(
            "create_app() called while a gateway instance already exists; "
            "replacing the previous singleton.  Call reset_gateway_state() "
            "before re-initializing to make this explicit."
        )
    gateway = Gateway(config, store=store, transport=transport)
    _gateway = gateway

    @asynccontextmanager
    async def lifespan(app):
        await gateway.startup()
        logger.info("Proxying to backend at %s (model %s)", config.backend_url, config.backend_model)
        yield
        logger.info("Shutting down gracefully...")
        await gateway.shutdown()

    app = Starlette(
        routes=[
            Route("/health", handle_health, methods=["GET"]),
            Route("/chat", handle_chat, methods=["POST"]),
        ],
        exception_handlers={Exception: handle_unexpected_error},
        lifespan=lifespan,
    )
    return app


def write_pidfile():
    PIDFILE.parent.mkdir(parents=True, exist_ok=True)
    PIDFILE.write_text(str(os.getpid()))


def remove_pidfile():
    PIDFILE.unlink(missing_ok=True)


def read_pidfile() -> int | None:
    if PIDFILE.exists():
        try:
            return int(PIDFILE.read_text().strip())
        except (ValueError, OSError):
            return None
    return None


def stop_gateway() -> bool:
    pid = read_pidfile()
    if pid is None:
        return False
    try:
        os.kill(pid, signal.SIGTERM)
        remove_pidfile()
        return True
    except ProcessLookupError:
        remove_pidfile()
        return False
