"""Route handlers for the status API.

Endpoints:
- /health/live: Liveness probe
- /api/connection: Current connection state
- /api/connection/check: Check now (joins an in-flight probe)
- /api/connection/summary: Success rate and latency of recent probes
- /api/connection/stream: SSE stream of connection states
- /api/diagnostics: Run the diagnostic pipeline (POST) or read the latest
  report (GET)
- /api/diagnostics/stream: SSE stream of diagnostic results
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import AsyncGenerator
from typing import Any

from fastapi import APIRouter, HTTPException
from sse_starlette.sse import EventSourceResponse

from connwatch.dashboard.models import (
    ConnectionStateResponse,
    ConnectionSummaryResponse,
    DiagnosticReportResponse,
    LivenessResponse,
)
from connwatch.diagnostics import DiagnosticPipeline, DiagnosticReport, DiagnosticResult
from connwatch.logging import get_logger
from connwatch.monitor import ConnectionMonitor, ConnectionState

logger = get_logger(__name__)


async def connection_state_events(
    monitor: ConnectionMonitor,
) -> AsyncGenerator[dict[str, str]]:
    """Yield one SSE ``state`` event per published connection state.

    The first event carries the current state. The subscription is removed
    when the generator is closed.
    """
    queue: asyncio.Queue[ConnectionState] = asyncio.Queue()
    unsubscribe = monitor.subscribe(queue.put_nowait)
    try:
        while True:
            state = await queue.get()
            yield {"event": "state", "data": json.dumps(state.to_dict())}
    finally:
        unsubscribe()


async def diagnostic_events(
    pipeline: DiagnosticPipeline,
) -> AsyncGenerator[dict[str, str]]:
    """Yield SSE events as diagnostic runs progress.

    Emits a ``result`` event for every appended result, then a ``complete``
    event carrying the whole report after the terminal result. A slow
    consumer still receives one ``complete`` per run. The subscription is
    removed when the generator is closed.
    """
    queue: asyncio.Queue[tuple[DiagnosticReport, DiagnosticResult]] = asyncio.Queue()
    unsubscribe = pipeline.subscribe(queue.put_nowait)
    try:
        while True:
            report, result = await queue.get()
            yield {
                "event": "result",
                "data": json.dumps({"run_id": report.run_id, **result.to_dict()}),
            }
            if report.completed and result is report.results[-1]:
                yield {"event": "complete", "data": json.dumps(report.to_dict())}
    finally:
        unsubscribe()


def create_routes(monitor: ConnectionMonitor, pipeline: DiagnosticPipeline) -> APIRouter:
    """Create status routes bound to a monitor and a pipeline.

    Args:
        monitor: Connection health monitor to expose.
        pipeline: Diagnostic pipeline to expose.

    Returns:
        An APIRouter with all routes configured.
    """
    router = APIRouter()

    @router.get("/health/live", response_model=LivenessResponse)
    async def health_live() -> dict[str, Any]:
        """Liveness probe endpoint. Does not touch the backend."""
        return {"status": "healthy", "timestamp": time.time()}

    @router.get("/api/connection", response_model=ConnectionStateResponse)
    async def get_connection() -> dict[str, Any]:
        """Return the current connection state."""
        return monitor.get_current_state().to_dict()

    @router.get("/api/connection/summary", response_model=ConnectionSummaryResponse)
    async def get_connection_summary() -> dict[str, Any]:
        """Return the summary of the most recent probes."""
        return monitor.summary().to_dict()

    @router.post("/api/connection/check", response_model=ConnectionStateResponse)
    async def check_connection(force: bool = False) -> dict[str, Any]:
        """Check the connection now and return the resulting state.

        Args:
            force: Supersede an in-flight probe instead of joining it.
        """
        state = await monitor.trigger_check(force=force)
        return state.to_dict()

    @router.get("/api/connection/stream")
    async def stream_connection() -> EventSourceResponse:
        """Stream connection states via Server-Sent Events."""
        return EventSourceResponse(connection_state_events(monitor))

    @router.post("/api/diagnostics", response_model=DiagnosticReportResponse)
    async def run_diagnostics() -> dict[str, Any]:
        """Run the diagnostic pipeline, or join the active run."""
        report = await pipeline.run()
        return report.to_dict()

    @router.get("/api/diagnostics", response_model=DiagnosticReportResponse)
    async def latest_diagnostics() -> dict[str, Any]:
        """Return the current or most recent diagnostic report.

        Raises:
            HTTPException: 404 if no run has started yet.
        """
        report = pipeline.latest_report
        if report is None:
            raise HTTPException(status_code=404, detail="No diagnostic run yet")
        return report.to_dict()

    @router.get("/api/diagnostics/stream")
    async def stream_diagnostics() -> EventSourceResponse:
        """Stream diagnostic results via Server-Sent Events."""
        return EventSourceResponse(diagnostic_events(pipeline))

    return router
