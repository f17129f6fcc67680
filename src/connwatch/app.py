"""Core application runner for connwatch.

This module provides the main application runner that coordinates:
- Status server lifecycle
- Connection monitor loop
- One-shot ``check`` and ``diagnose`` commands

Status-server-less Operation Mode:
    The monitor keeps running if the status server fails to start. The
    failure is logged as a warning and the process continues without the
    HTTP surface.
"""

from __future__ import annotations

import asyncio
import json
import sys

from connwatch.bootstrap import BootstrapContext, bootstrap
from connwatch.cli import parse_args
from connwatch.dashboard_server import DashboardServer
from connwatch.diagnostics import DiagnosticStatus, format_report
from connwatch.logging import get_logger
from connwatch.monitor import ConnectionState
from connwatch.shutdown import ShutdownHandler

logger = get_logger(__name__)


async def start_dashboard(context: BootstrapContext) -> DashboardServer | None:
    """Start the status server if enabled.

    Args:
        context: Bootstrap context with configuration and components.

    Returns:
        DashboardServer if started successfully, None otherwise.
    """
    config = context.config
    if not config.dashboard.enabled:
        logger.info("Status server is disabled via configuration")
        return None

    try:
        from connwatch.dashboard import create_app

        logger.info(
            "Starting status server on %s:%s", config.dashboard.host, config.dashboard.port
        )
        server = DashboardServer(host=config.dashboard.host, port=config.dashboard.port)
        await server.start(create_app(context.monitor, context.pipeline))
        return server
    except OSError as e:
        logger.warning(
            "Status server startup failed: network/OS error. "
            "Monitoring continues without the status API. Error: %s",
            e,
        )
        return None
    except (ImportError, RuntimeError, ValueError, TypeError) as e:
        logger.warning(
            "Status server startup failed (%s). "
            "Monitoring continues without the status API. Error: %s",
            type(e).__name__,
            e,
        )
        return None


def _log_transition(state: ConnectionState) -> None:
    logger.debug(
        "Connection state: %s (failures=%d, health=%s)",
        state.phase.value,
        state.consecutive_failures,
        state.health.value,
        extra={"diagnostic_tag": "monitor"},
    )


async def run_monitor(context: BootstrapContext) -> int:
    """Run the connection monitor until SIGINT/SIGTERM.

    Args:
        context: Bootstrap context with all components.

    Returns:
        Exit code: 0 after a graceful shutdown.
    """
    shutdown = ShutdownHandler()
    shutdown.install_signal_handlers()

    unsubscribe = context.monitor.subscribe(_log_transition)
    dashboard_server = await start_dashboard(context)
    context.monitor.start()
    try:
        await shutdown.wait()
    finally:
        unsubscribe()
        if dashboard_server is not None:
            await dashboard_server.shutdown()
        await context.aclose()
    return 0


async def run_check(context: BootstrapContext, as_json: bool = False) -> int:
    """Probe the backend once and print the resulting state.

    Returns:
        Exit code: 0 if the backend is reachable, 1 otherwise.
    """
    try:
        state = await context.monitor.trigger_check()
    finally:
        await context.aclose()

    if as_json:
        print(json.dumps(state.to_dict(), indent=2))
    elif state.is_connected:
        print(f"connected ({state.health.value})")
    else:
        error = state.last_error.message if state.last_error else "unknown error"
        print(f"disconnected: {error}")
    return 0 if state.is_connected else 1


async def run_diagnose(context: BootstrapContext, as_json: bool = False) -> int:
    """Run the diagnostic pipeline once and print the report.

    Returns:
        Exit code: 0 unless a stage reported an error.
    """
    try:
        report = await context.pipeline.run()
    finally:
        await context.aclose()

    if as_json:
        print(json.dumps(report.to_dict(), indent=2, ensure_ascii=False))
    else:
        print(format_report(report))
    return 1 if report.overall_status is DiagnosticStatus.ERROR else 0


def main(args: list[str] | None = None) -> int:
    """Main entry point for the application.

    Args:
        args: Optional list of command-line arguments.

    Returns:
        Exit code for the application.
    """
    parsed = parse_args(args)

    async def _run() -> int:
        context = bootstrap(parsed)
        if parsed.command == "check":
            return await run_check(context, as_json=parsed.json)
        if parsed.command == "diagnose":
            return await run_diagnose(context, as_json=parsed.json)
        return await run_monitor(context)

    return asyncio.run(_run())


if __name__ == "__main__":
    sys.exit(main())


__all__ = [
    "main",
    "run_check",
    "run_diagnose",
    "run_monitor",
    "start_dashboard",
]
