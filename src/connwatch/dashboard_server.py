"""Status server management for connwatch.

This module provides the DashboardServer class that runs a uvicorn server as
a task on the running event loop, alongside the connection monitor. Sharing
the loop lets route handlers call the monitor and pipeline directly.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import uvicorn
    from starlette.types import ASGIApp

from connwatch.logging import get_logger

logger = get_logger(__name__)


class DashboardServer:
    """Serves the status API on the current event loop.

    Example:
        from connwatch.dashboard import create_app
        from connwatch.dashboard_server import DashboardServer

        app = create_app(monitor, pipeline)
        server = DashboardServer(host="127.0.0.1", port=8080)
        await server.start(app)

        # ... run main loop ...

        await server.shutdown()
    """

    def __init__(self, host: str, port: int) -> None:
        """Initialize the status server.

        Args:
            host: The host address to bind to (e.g., "0.0.0.0" or "127.0.0.1").
            port: The port to listen on.
        """
        self._host = host
        self._port = port
        self._server: uvicorn.Server | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def host(self) -> str:
        """Get the host address."""
        return self._host

    @property
    def port(self) -> int:
        """Get the port number."""
        return self._port

    @property
    def is_running(self) -> bool:
        """Check if the server is currently running."""
        return self._server is not None and self._server.started

    @staticmethod
    async def _serve(server: uvicorn.Server) -> None:
        # uvicorn exits the process when it cannot bind; surface that as OSError.
        try:
            await server.serve()
        except SystemExit as e:
            raise OSError(f"uvicorn exited with code {e.code}") from e

    async def start(self, app: ASGIApp, startup_timeout: float = 5.0) -> None:
        """Start serving in a background task.

        Args:
            app: The ASGI application to serve.
            startup_timeout: Seconds to wait for the server to accept connections.

        Raises:
            OSError: If the server task fails while starting (e.g. port in use).
        """
        import uvicorn

        config = uvicorn.Config(
            app=app,
            host=self._host,
            port=self._port,
            log_level="warning",
            access_log=False,
        )
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._serve(self._server), name="connwatch-dashboard")

        try:
            async with asyncio.timeout(startup_timeout):
                while not self._server.started:
                    if self._task.done():
                        break
                    await asyncio.sleep(0.05)
        except TimeoutError:
            logger.warning("Status server startup timed out, continuing anyway")

        if self._task.done() and not self._server.started:
            exc = self._task.exception()
            self._server = None
            self._task = None
            raise OSError(f"Status server failed to start: {exc}")

        if self._server.started:
            logger.info("Status server started at http://%s:%s", self._host, self._port)

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Stop the server gracefully, cancelling it after ``timeout`` seconds."""
        if self._server is None or self._task is None:
            return
        logger.info("Shutting down status server...")
        self._server.should_exit = True
        try:
            async with asyncio.timeout(timeout):
                await self._task
        except TimeoutError:
            logger.warning("Status server did not terminate gracefully")
        self._server = None
        self._task = None
        logger.info("Status server shutdown complete")


__all__ = ["DashboardServer"]
