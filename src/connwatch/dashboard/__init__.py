"""HTTP status surface for connwatch.

Exposes the connection monitor's state and the diagnostic pipeline over a
small FastAPI application, including Server-Sent Event streams for observers
that want live updates.
"""

from connwatch.dashboard.app import create_app
from connwatch.dashboard.routes import connection_state_events, create_routes, diagnostic_events

# NOTE: Update this list when adding new exports to this module.
__all__ = [
    "create_app",
    "create_routes",
    "connection_state_events",
    "diagnostic_events",
]
