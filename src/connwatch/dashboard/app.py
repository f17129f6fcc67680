"""FastAPI application factory for the status API."""

from __future__ import annotations

from fastapi import FastAPI

from connwatch.dashboard.routes import create_routes
from connwatch.diagnostics import DiagnosticPipeline
from connwatch.monitor import ConnectionMonitor


def create_app(monitor: ConnectionMonitor, pipeline: DiagnosticPipeline) -> FastAPI:
    """Create and configure the FastAPI status application.

    Args:
        monitor: Connection health monitor whose state is exposed.
        pipeline: Diagnostic pipeline that can be run and followed.

    Returns:
        A configured FastAPI application.
    """
    from connwatch import __version__

    app = FastAPI(
        title="connwatch",
        description="Backend connection health and diagnostics",
        version=__version__,
    )
    app.include_router(create_routes(monitor, pipeline))
    return app
