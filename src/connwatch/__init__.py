"""connwatch - backend connection health monitor and diagnostics."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("connwatch")
except PackageNotFoundError:
    # Package is not installed (e.g., running from source without pip install)
    __version__ = "0.0.0.dev0"

# Re-export core public API
from connwatch.app import main
from connwatch.diagnostics import DiagnosticPipeline, DiagnosticReport, DiagnosticResult
from connwatch.monitor import ConnectionMonitor, ConnectionState
from connwatch.probes import ProbeExecutor, ProbeKind, ProbeResult

# NOTE: Update this list when adding new exports to this module.
__all__ = [
    "__version__",
    "ConnectionMonitor",
    "ConnectionState",
    "DiagnosticPipeline",
    "DiagnosticReport",
    "DiagnosticResult",
    "ProbeExecutor",
    "ProbeKind",
    "ProbeResult",
    "main",
]
