"""Command-line interface argument parsing for connwatch.

This module provides the CLI argument parser that handles:
- Environment file and log level overrides
- ``monitor``: run the connection monitor (optionally with the status API)
- ``check``: probe the backend once
- ``diagnose``: run the diagnostic pipeline and print the report
"""

from __future__ import annotations

import argparse
from pathlib import Path

COMMANDS = ("monitor", "check", "diagnose")


def parse_args(args: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments.

    Args:
        args: Optional list of arguments to parse. If None, uses sys.argv.

    Returns:
        Parsed arguments namespace with the following attributes:
        - command: One of ``monitor`` (default), ``check``, ``diagnose``
        - env_file: Path to .env file
        - log_level: Logging level
        - interval: Base probe interval in seconds (monitor)
        - dashboard: Whether to serve the status API (monitor)
        - port: Status API port (monitor)
        - json: Print the result as JSON (check, diagnose)
    """
    parser = argparse.ArgumentParser(
        prog="connwatch",
        description="connwatch - backend connection health monitor and diagnostics",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to .env file (default: ./.env)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log level (overrides CONNWATCH_LOG_LEVEL)",
    )

    subparsers = parser.add_subparsers(dest="command", metavar="{monitor,check,diagnose}")

    monitor_parser = subparsers.add_parser(
        "monitor",
        help="Monitor the backend connection until interrupted (default)",
    )
    monitor_parser.add_argument(
        "--interval",
        type=int,
        default=None,
        help="Base probe interval in seconds (overrides CONNWATCH_MONITOR_INTERVAL)",
    )
    monitor_parser.add_argument(
        "--dashboard",
        action="store_true",
        help="Serve the status API (overrides CONNWATCH_DASHBOARD_ENABLED)",
    )
    monitor_parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Status API port (overrides CONNWATCH_DASHBOARD_PORT)",
    )

    check_parser = subparsers.add_parser("check", help="Probe the backend once and exit")
    check_parser.add_argument(
        "--json",
        action="store_true",
        help="Print the resulting state as JSON",
    )

    diagnose_parser = subparsers.add_parser(
        "diagnose",
        help="Run the connection diagnostics and print the report",
    )
    diagnose_parser.add_argument(
        "--json",
        action="store_true",
        help="Print the report as JSON instead of text",
    )

    parsed = parser.parse_args(args)
    if parsed.command is None:
        parsed.command = "monitor"
    for name, default in (("interval", None), ("dashboard", False), ("port", None), ("json", False)):
        if not hasattr(parsed, name):
            setattr(parsed, name, default)
    return parsed


__all__ = ["COMMANDS", "parse_args"]
