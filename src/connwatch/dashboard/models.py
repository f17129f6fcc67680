"""Pydantic response models for the status API.

- Connection models: ProbeErrorResponse, ConnectionStateResponse,
  ConnectionSummaryResponse
- Diagnostic models: DiagnosticResultResponse, DiagnosticCountsResponse,
  DiagnosticReportResponse
- Health models: LivenessResponse
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel

# NOTE: Update this list when adding new models to this module.
__all__: list[str] = [
    # Connection models
    "ProbeErrorResponse",
    "ConnectionStateResponse",
    "ConnectionSummaryResponse",
    # Diagnostic models
    "DiagnosticResultResponse",
    "DiagnosticCountsResponse",
    "DiagnosticReportResponse",
    # Health models
    "LivenessResponse",
]

StatusLiteral = Literal["success", "warning", "error", "loading"]


class ProbeErrorResponse(BaseModel):
    """Classification and message of the last failed probe."""

    kind: Literal["ok", "application", "server", "timeout", "network", "configuration"]
    message: str


class ConnectionStateResponse(BaseModel):
    """Snapshot of the monitored connection."""

    phase: Literal["initializing", "checking", "connected", "disconnected"]
    is_connected: bool
    consecutive_failures: int
    last_error: ProbeErrorResponse | None = None
    last_checked_at: str | None = None
    last_success_at: str | None = None
    health: Literal["unknown", "healthy", "unstable", "offline"]


class ConnectionSummaryResponse(BaseModel):
    """Success rate and latency over the most recent probes."""

    recent_checks: int
    success_rate: int
    average_elapsed_ms: int
    last_checked_at: str | None = None
    is_healthy: bool


class DiagnosticResultResponse(BaseModel):
    """One diagnostic stage outcome."""

    name: str
    status: StatusLiteral
    message: str
    details: str | None = None
    timestamp: str


class DiagnosticCountsResponse(BaseModel):
    """Number of results per status."""

    success: int
    warning: int
    error: int


class DiagnosticReportResponse(BaseModel):
    """A diagnostic run and its results."""

    run_id: int
    started_at: str
    finished_at: str | None = None
    duration_seconds: float | None = None
    completed: bool
    overall_status: StatusLiteral
    counts: DiagnosticCountsResponse
    results: list[DiagnosticResultResponse]


class LivenessResponse(BaseModel):
    """Liveness probe payload."""

    status: Literal["healthy"]
    timestamp: float
