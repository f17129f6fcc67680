"""Graceful shutdown handling for connwatch.

This module provides signal handling and shutdown coordination for:
- SIGINT (Ctrl+C) handling
- SIGTERM handling
"""

from __future__ import annotations

import asyncio
import signal

from connwatch.logging import get_logger

logger = get_logger(__name__)


class ShutdownHandler:
    """Coordinates shutdown requests for the monitor loop.

    Signals are handled on the event loop; ``wait()`` returns once shutdown
    has been requested.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def shutdown_requested(self) -> bool:
        """Check if shutdown has been requested."""
        return self._event.is_set()

    def request_shutdown(self) -> None:
        """Request graceful shutdown.

        This method can be called programmatically to initiate shutdown,
        in addition to signal-based shutdown.
        """
        if self._event.is_set():
            return
        logger.info("Shutdown requested")
        self._event.set()

    def handle_signal(self, signum: int) -> None:
        """Handle shutdown signals (SIGINT, SIGTERM).

        Args:
            signum: The signal number received.
        """
        signal_name = signal.Signals(signum).name
        logger.info("Received %s, initiating graceful shutdown...", signal_name)
        self.request_shutdown()

    def install_signal_handlers(self) -> None:
        """Install SIGINT and SIGTERM handlers on the running event loop.

        Platforms without ``loop.add_signal_handler`` support keep the default
        handlers.
        """
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self.handle_signal, signum)
            except NotImplementedError:
                logger.debug("Signal handlers not supported on this platform")
                return
        logger.debug("Signal handlers installed for SIGINT and SIGTERM")

    async def wait(self) -> None:
        """Wait until shutdown is requested."""
        await self._event.wait()


__all__ = ["ShutdownHandler"]
