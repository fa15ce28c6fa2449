"""Process wiring: run the gateway under uvicorn with a bounded shutdown."""

from __future__ import annotations

import logging
import os
import threading

import uvicorn

from .config import GatewayConfig
from .proxy import create_app

logger = logging.getLogger("chatgate.server")

#: Extra seconds after the grace period for the lifespan to release the key
#: store and backend client before the process is killed outright.
CLEANUP_MARGIN = 2.0


class GatewayServer(uvicorn.Server):
    """uvicorn server that force-exits if shutdown overruns its deadline.

    On the first SIGTERM/SIGINT uvicorn stops accepting connections and gives
    open ones ``timeout_graceful_shutdown`` seconds; sessions still open
    after that are cancelled.  A daemon timer guarantees the process is gone
    shortly afterwards even if something in shutdown hangs.
    """

    def __init__(self, config: uvicorn.Config, deadline: float) -> None:
        super().__init__(config)
        self.deadline = deadline
        self._kill_timer: threading.Timer | None = None

    def handle_exit(self, sig, frame) -> None:
        if self._kill_timer is None:
            logger.info("Shutdown requested; allowing %.0fs for in-flight requests", self.deadline)
            self._kill_timer = threading.Timer(self.deadline, self._force_exit)
            self._kill_timer.daemon = True
            self._kill_timer.start()
        super().handle_exit(sig, frame)

    @staticmethod
    def _force_exit() -> None:
        logger.error("Forcing shutdown after timeout")
        os._exit(1)


def build_server(config: GatewayConfig) -> GatewayServer:
    app = create_app(config)
    uvi_config = uvicorn.Config(
        app,
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
        lifespan="on",
        timeout_graceful_shutdown=config.shutdown_grace,
    )
    return GatewayServer(uvi_config, deadline=config.shutdown_grace + CLEANUP_MARGIN)


def serve(config: GatewayConfig) -> bool:
    """Run until shut down.  Returns False if startup failed."""
    server = build_server(config)
    server.run()
    return server.started
