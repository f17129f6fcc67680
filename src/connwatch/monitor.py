"""Connection health monitor.

The monitor owns a single ``ConnectionState`` and keeps it current by probing
the backend on a schedule. It guarantees:

- At most one probe in flight. ``trigger_check()`` joins a running probe
  instead of starting a duplicate request.
- Last-started-wins. Every probe cycle carries a generation number; a cycle
  that finishes after a newer one was started discards its own result and
  resolves with the newer cycle's outcome.
- Consistent snapshots. The state is a frozen dataclass that is replaced
  wholesale and published synchronously to every subscriber.

Scheduling uses exponential backoff on consecutive failures, capped at
``MonitorConfig.max_interval``, and resets to the base interval on success.
A configuration error pauses the schedule until the next manual check.

Usage:
    monitor = ConnectionMonitor(backend_probe(executor, config.backend), config.monitor)
    unsubscribe = monitor.subscribe(lambda state: print(state.phase))
    monitor.start()
    state = await monitor.trigger_check()
    await monitor.stop()
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from connwatch.config import BackendConfig, MonitorConfig
from connwatch.logging import get_logger
from connwatch.observers import ObserverRegistry
from connwatch.probes import ProbeError, ProbeExecutor, ProbeKind, ProbeResult

logger = get_logger(__name__)

Probe = Callable[[], Awaitable[ProbeResult]]
StateObserver = Callable[["ConnectionState"], None]


class MonitorPhase(StrEnum):
    """Phase of the monitor's probe cycle."""

    INITIALIZING = "initializing"
    CHECKING = "checking"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class ConnectionHealth(StrEnum):
    """Coarse health derived from the consecutive failure count."""

    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNSTABLE = "unstable"
    OFFLINE = "offline"


@dataclass(frozen=True)
class ConnectionState:
    """Snapshot of the backend connection as seen by the monitor.

    Attributes:
        phase: Current phase of the probe cycle.
        is_connected: Whether the last applied probe reached the backend.
        consecutive_failures: Unbroken probe failures since the last success.
        last_error: Classification and message of the last failure.
        last_checked_at: When the last probe result was applied (UTC).
        last_success_at: When a probe last reached the backend (UTC).
        health: Health derived from ``consecutive_failures``.
    """

    phase: MonitorPhase = MonitorPhase.INITIALIZING
    is_connected: bool = False
    consecutive_failures: int = 0
    last_error: ProbeError | None = None
    last_checked_at: datetime | None = None
    last_success_at: datetime | None = None
    health: ConnectionHealth = ConnectionHealth.UNKNOWN

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "phase": self.phase.value,
            "is_connected": self.is_connected,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error.to_dict() if self.last_error else None,
            "last_checked_at": self.last_checked_at.isoformat() if self.last_checked_at else None,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "health": self.health.value,
        }


# Bounds for ConnectionSummary.is_healthy (percent, milliseconds).
SUMMARY_MIN_SUCCESS_RATE = 80
SUMMARY_MAX_AVERAGE_MS = 5000


@dataclass(frozen=True)
class ProbeSample:
    """Outcome of one applied probe, kept for the connection summary."""

    checked_at: datetime
    reachable: bool
    elapsed_ms: float


@dataclass(frozen=True)
class ConnectionSummary:
    """Aggregate over the most recent probes.

    Attributes:
        recent_checks: Number of probes in the window.
        success_rate: Percentage of those probes that reached the backend.
        average_elapsed_ms: Mean probe duration, rounded to milliseconds.
        last_checked_at: When the newest probe in the window was applied.
        is_healthy: Success rate and latency are both within bounds.
    """

    recent_checks: int = 0
    success_rate: int = 0
    average_elapsed_ms: int = 0
    last_checked_at: datetime | None = None
    is_healthy: bool = False

    @classmethod
    def from_samples(cls, samples: Sequence[ProbeSample]) -> ConnectionSummary:
        if not samples:
            return cls()
        rate = 100 * sum(1 for s in samples if s.reachable) / len(samples)
        average = sum(s.elapsed_ms for s in samples) / len(samples)
        return cls(
            recent_checks=len(samples),
            success_rate=round(rate),
            average_elapsed_ms=round(average),
            last_checked_at=samples[-1].checked_at,
            is_healthy=rate >= SUMMARY_MIN_SUCCESS_RATE and average < SUMMARY_MAX_AVERAGE_MS,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "recent_checks": self.recent_checks,
            "success_rate": self.success_rate,
            "average_elapsed_ms": self.average_elapsed_ms,
            "last_checked_at": self.last_checked_at.isoformat() if self.last_checked_at else None,
            "is_healthy": self.is_healthy,
        }


def backend_probe(
    executor: ProbeExecutor,
    config: BackendConfig,
    timeout: float = 3.0,
) -> Probe:
    """Build the monitor's probe: a minimal authenticated read of the primary table.

    Args:
        executor: Executor performing the request.
        config: Backend connection settings.
        timeout: Probe bound in seconds.

    Returns:
        A coroutine factory producing a ``ProbeResult``. Missing credentials
        yield a ``CONFIGURATION`` result without any network call.
    """

    async def probe() -> ProbeResult:
        if not config.configured:
            return ProbeResult(
                kind=ProbeKind.CONFIGURATION,
                message="Backend credentials not configured",
                timeout=timeout,
            )
        return await executor.http(
            f"{config.rest_url}/{config.primary_table}?select=id&limit=1",
            timeout=timeout,
            headers={
                "apikey": config.anon_key,
                "Authorization": f"Bearer {config.anon_key}",
                "X-Client-Info": config.client_info,
            },
        )

    return probe


class ConnectionMonitor:
    """Publishes the backend connection state to any number of observers.

    Instances are independent; the application constructs one at startup and
    stops it at shutdown. All methods must be called from the event loop that
    runs the monitor.
    """

    def __init__(
        self,
        probe: Probe,
        config: MonitorConfig | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the monitor.

        Args:
            probe: Coroutine factory performing one probe.
            config: Scheduling settings. Defaults to ``MonitorConfig()``.
            clock: Source of UTC timestamps for the state.
        """
        self._probe = probe
        self.config = config or MonitorConfig()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._state = ConnectionState()
        self._observers: ObserverRegistry[ConnectionState] = ObserverRegistry("connection state")
        self._generation = 0
        self._in_flight: asyncio.Task[ConnectionState] | None = None
        self._wake = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._stopping = False
        self._history: deque[ProbeSample] = deque(maxlen=self.config.history_size)

    @property
    def current_state(self) -> ConnectionState:
        """The latest published state."""
        return self._state

    def get_current_state(self) -> ConnectionState:
        """Return the latest published state."""
        return self._state

    @property
    def is_running(self) -> bool:
        """Whether the scheduling loop is active."""
        return self._task is not None and not self._task.done()

    @property
    def check_in_progress(self) -> bool:
        """Whether a probe cycle is currently in flight."""
        return self._in_flight is not None and not self._in_flight.done()

    def summary(self) -> ConnectionSummary:
        """Summarize the most recent probes (success rate, latency, health)."""
        return ConnectionSummary.from_samples(list(self._history))

    def subscribe(self, observer: StateObserver) -> Callable[[], None]:
        """Register an observer of state transitions.

        The observer receives the current state immediately, then every
        subsequent state synchronously as it is published.

        Args:
            observer: Callback receiving ``ConnectionState`` snapshots.

        Returns:
            A function that removes the subscription.
        """
        unsubscribe = self._observers.subscribe(observer)
        self._observers.notify(observer, self._state)
        return unsubscribe

    def next_delay(self) -> float | None:
        """Delay before the next scheduled probe.

        Returns:
            ``base_interval * backoff_factor ** consecutive_failures`` capped
            at ``max_interval``, or None while the last failure was a
            configuration error (no scheduled retry).
        """
        state = self._state
        if state.last_error is not None and state.last_error.kind is ProbeKind.CONFIGURATION:
            return None
        try:
            delay = self.config.base_interval * (
                self.config.backoff_factor**state.consecutive_failures
            )
        except OverflowError:
            return self.config.max_interval
        return min(delay, self.config.max_interval)

    async def trigger_check(self, *, force: bool = False) -> ConnectionState:
        """Check the connection now.

        Joins the in-flight probe if there is one. The schedule is re-armed
        from the moment the check completes.

        Args:
            force: Start a new probe even if one is in flight. The new probe
                supersedes the running one, whose result is then discarded.

        Returns:
            The state after the check.
        """
        state = await self._check(force=force)
        self._wake.set()
        return state

    async def _check(self, *, force: bool = False) -> ConnectionState:
        if self.check_in_progress and not force:
            assert self._in_flight is not None
            logger.debug(
                "Joining in-flight probe",
                extra={"diagnostic_tag": "monitor", "generation": self._generation},
            )
            return await asyncio.shield(self._in_flight)

        self._generation += 1
        generation = self._generation
        task = asyncio.create_task(
            self._run_cycle(generation), name=f"connwatch-probe-{generation}"
        )
        self._in_flight = task
        return await asyncio.shield(task)

    async def _run_cycle(self, generation: int) -> ConnectionState:
        self._publish(replace(self._state, phase=MonitorPhase.CHECKING))

        try:
            result = await self._probe()
        except Exception as e:
            logger.exception("Probe raised unexpectedly")
            result = ProbeResult(kind=ProbeKind.NETWORK, message=f"{type(e).__name__}: {e}")

        if generation != self._generation:
            logger.debug(
                "Discarding stale probe result (%s); generation %d superseded by %d",
                result.kind,
                generation,
                self._generation,
                extra={"diagnostic_tag": "monitor", "generation": generation},
            )
            assert self._in_flight is not None
            return await asyncio.shield(self._in_flight)

        state = self._apply(result)
        self._publish(state)
        return state

    def _health_for(self, failures: int) -> ConnectionHealth:
        if failures >= self.config.offline_threshold:
            return ConnectionHealth.OFFLINE
        if failures >= self.config.unstable_threshold:
            return ConnectionHealth.UNSTABLE
        return ConnectionHealth.HEALTHY

    def _apply(self, result: ProbeResult) -> ConnectionState:
        now = self._clock()
        previous = self._state
        self._history.append(
            ProbeSample(checked_at=now, reachable=result.reachable, elapsed_ms=result.elapsed_ms)
        )

        if result.reachable:
            if previous.consecutive_failures:
                logger.info(
                    "Connection restored after %d consecutive failures",
                    previous.consecutive_failures,
                )
            if result.kind is ProbeKind.APPLICATION:
                logger.warning("Backend reachable but answered with an error: %s", result.message)
            return ConnectionState(
                phase=MonitorPhase.CONNECTED,
                is_connected=True,
                consecutive_failures=0,
                last_error=None,
                last_checked_at=now,
                last_success_at=now,
                health=ConnectionHealth.HEALTHY,
            )

        failures = previous.consecutive_failures + 1
        log = logger.with_context(
            failures=failures, kind=result.kind.value, elapsed_ms=round(result.elapsed_ms)
        )
        if result.kind is ProbeKind.CONFIGURATION:
            log.error(
                "Configuration error, scheduled probes paused until a manual check: %s",
                result.message,
            )
        elif failures >= self.config.offline_threshold:
            log.error("Connection lost, backend offline: %s", result.message)
        elif failures >= self.config.unstable_threshold:
            log.warning("Connection unstable, reconnect attempts in progress: %s", result.message)
        else:
            log.warning(
                "Probe failed (%d/%d): %s",
                failures,
                self.config.unstable_threshold,
                result.message,
            )

        return ConnectionState(
            phase=MonitorPhase.DISCONNECTED,
            is_connected=False,
            consecutive_failures=failures,
            last_error=result.to_error(),
            last_checked_at=now,
            last_success_at=previous.last_success_at,
            health=self._health_for(failures),
        )

    def _publish(self, state: ConnectionState) -> None:
        self._state = state
        self._observers.publish(state)

    async def _wait(self, delay: float | None) -> bool:
        """Wait for ``delay`` seconds or until woken. Returns True if woken."""
        if delay is None:
            await self._wake.wait()
            return True
        try:
            async with asyncio.timeout(delay):
                await self._wake.wait()
        except TimeoutError:
            return False
        return True

    async def _run(self) -> None:
        logger.info(
            "Connection monitor started (interval %.1fs, max %.1fs)",
            self.config.base_interval,
            self.config.max_interval,
        )
        # A manual check during the startup delay counts as the first probe.
        checked = False
        if self.config.startup_delay > 0:
            self._wake.clear()
            checked = await self._wait(self.config.startup_delay)

        while not self._stopping:
            if not checked:
                await self._check()
            checked = False
            while True:
                delay = self.next_delay()
                if delay is None:
                    logger.info("No probe scheduled until a manual check")
                else:
                    logger.debug(
                        "Next probe in %.1fs",
                        delay,
                        extra={"diagnostic_tag": "monitor"},
                    )
                self._wake.clear()
                woke = await self._wait(delay)
                if self._stopping:
                    return
                if not woke:
                    break

    def start(self) -> None:
        """Start the scheduling loop on the running event loop."""
        if self.is_running:
            logger.info("Connection monitor already running")
            return
        self._stopping = False
        self._task = asyncio.create_task(self._run(), name="connwatch-monitor")

    async def stop(self) -> None:
        """Stop the scheduling loop and cancel any in-flight probe."""
        self._stopping = True
        self._wake.set()
        for task in (self._task, self._in_flight):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._task = None
        logger.info("Connection monitor stopped")
