# rxrelay/service.py

import logging
import signal
import threading
from typing import Optional

from rxrelay.config import RelayConfig
from rxrelay.http.server import RelayHTTPServer
from rxrelay.process.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)


class RelayService:
    """
    Top-level service: one ProcessSupervisor plus the HTTP server that
    exposes it.

    rx is not started automatically; clients start it through
    POST /api/op25/start.
    """

    def __init__(self, config: Optional[RelayConfig] = None, supervisor: Optional[ProcessSupervisor] = None):
        self.config = config or RelayConfig.load_config()
        self.supervisor = supervisor or ProcessSupervisor(self.config)
        self.http_server = RelayHTTPServer(
            host=self.config.host,
            port=self.config.port,
            supervisor=self.supervisor,
            config=self.config,
        )
        self._stop_event = threading.Event()
        self._stopped = False

    def start(self) -> None:
        """Start the HTTP server."""
        logger.info("Starting rxrelay...")
        logger.info(f"rx path: {self.config.rx_path}")
        self.http_server.start()

    def run_forever(self) -> None:
        """Block until SIGINT/SIGTERM or stop(), then shut down."""
        for sig in (signal.SIGINT, signal.SIGTERM):
            signal.signal(sig, self._on_signal)
        try:
            while not self._stop_event.wait(timeout=1.0):
                pass
        finally:
            self.stop()

    def _on_signal(self, signum, frame) -> None:
        logger.info(f"Received signal {signum}, shutting down...")
        self._stop_event.set()

    def stop(self) -> None:
        """Stop rx and the HTTP server. Idempotent."""
        if self._stopped:
            return
        self._stopped = True
        self._stop_event.set()

        logger.info("Shutting down...")
        self.supervisor.stop()
        self.http_server.stop()
        logger.info("Server shutdown complete")
