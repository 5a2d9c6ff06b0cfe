"""HTTP exposition of the metric registry on /metrics."""

import socket
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI
from fastapi.responses import Response

from llamawatch.common.config import parse_listen_address
from llamawatch.common.errors import ExporterStartupError
from llamawatch.monitor.metrics import MetricRegistry

logger = structlog.get_logger()

# Keep-alive and graceful shutdown bound, in seconds
SERVER_TIMEOUT = 10


def create_metrics_app(registry: MetricRegistry) -> FastAPI:
    """Build the single-route exposition app."""
    app = FastAPI(
        title="llama.cpp Exporter",
        description="Prometheus exposition of llama.cpp engine statistics",
        version="1.0.0",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    @app.get("/metrics")
    async def metrics_endpoint():
        """Prometheus metrics endpoint."""
        return Response(registry.render(), media_type=registry.content_type)

    return app


class ExpositionServer:
    """Serves a MetricRegistry with uvicorn on a pre-bound socket."""

    def __init__(self, registry: MetricRegistry, address: str = ":9100"):
        self.registry = registry
        self.address = address
        self.host, self.port = parse_listen_address(address)
        self.app = create_metrics_app(registry)
        self._socket: Optional[socket.socket] = None
        self._server: Optional[uvicorn.Server] = None

    @property
    def bound_port(self) -> Optional[int]:
        """Actual port once bound (differs from `port` when binding port 0)."""
        if self._socket is None:
            return None
        return self._socket.getsockname()[1]

    def bind(self) -> socket.socket:
        """
        Bind the listen socket.

        Raises:
            ExporterStartupError: If the address cannot be bound
        """
        family = socket.AF_INET6 if ":" in self.host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, self.port))
        except OSError as e:
            sock.close()
            raise ExporterStartupError(f"failed to bind exporter on {self.address}: {e}") from e
        sock.set_inheritable(True)
        self._socket = sock
        return sock

    async def serve(self):
        """Serve until shutdown() is called or the process is signalled."""
        sock = self._socket if self._socket is not None else self.bind()
        config = uvicorn.Config(
            self.app,
            timeout_keep_alive=SERVER_TIMEOUT,
            timeout_graceful_shutdown=SERVER_TIMEOUT,
            log_config=None,
            access_log=False,
        )
        self._server = uvicorn.Server(config)

        logger.info("Starting Prometheus exporter", address=self.address, port=self.bound_port)
        try:
            await self._server.serve(sockets=[sock])
        finally:
            sock.close()
            self._socket = None
            logger.info("Prometheus exporter stopped")

    def shutdown(self):
        """Ask uvicorn to drain in-flight requests and exit."""
        if self._server is not None:
            self._server.should_exit = True
