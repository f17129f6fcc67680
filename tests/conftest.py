"""Shared pytest fixtures for connwatch tests.

Network access is never needed: HTTP components accept an httpx transport,
and tests pass ``httpx.MockTransport`` instances built from small handler
functions. The monitor takes any coroutine factory as its probe, so monitor
tests use ``ScriptedProbe`` to control outcomes and timing.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import httpx
import pytest

from connwatch.config import BackendConfig, MonitorConfig
from connwatch.probes import ProbeKind, ProbeResult

PROJECT_ID = "abcdefghij0123456789"
ANON_KEY = "eyJhbGciOiJIUzI1NiIsInR5cCI6IkpXVCJ9.test-anon-key"
BASE_URL = f"https://{PROJECT_ID}.supabase.co"


class ScriptedProbe:
    """Monitor probe returning scripted outcomes.

    Outcomes are consumed in call order; once exhausted, ``default`` is used.
    ``hold(n)`` returns an event that call ``n`` (0-indexed) waits on before
    returning, letting tests keep a probe in flight.
    """

    def __init__(
        self,
        outcomes: list[ProbeKind] | None = None,
        default: ProbeKind = ProbeKind.OK,
    ) -> None:
        self.outcomes = list(outcomes or [])
        self.default = default
        self.calls = 0
        self._gates: dict[int, asyncio.Event] = {}

    def hold(self, call_index: int) -> asyncio.Event:
        gate = asyncio.Event()
        self._gates[call_index] = gate
        return gate

    async def __call__(self) -> ProbeResult:
        index = self.calls
        self.calls += 1
        kind = self.outcomes[index] if index < len(self.outcomes) else self.default
        gate = self._gates.get(index)
        if gate is not None:
            await gate.wait()
        return ProbeResult(kind=kind, message=f"probe {index}: {kind.value}")


def mock_transport(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.MockTransport:
    """Wrap a request handler in an ``httpx.MockTransport``."""
    return httpx.MockTransport(handler)


@pytest.fixture
def backend_config() -> BackendConfig:
    """Backend settings with well-formed credentials."""
    return BackendConfig(project_id=PROJECT_ID, anon_key=ANON_KEY)


@pytest.fixture
def fast_monitor_config() -> MonitorConfig:
    """Monitor settings with short intervals for loop tests."""
    return MonitorConfig(
        base_interval=0.05,
        max_interval=0.4,
        backoff_factor=2.0,
        probe_timeout=1.0,
        startup_delay=0.0,
    )
