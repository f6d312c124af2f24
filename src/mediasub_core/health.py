"""Per-client health accounting.

Counters here are monotonic for the process lifetime and are an operator
signal only; the circuit breaker keeps its own bounded rolling window.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum

from mediasub_core.circuit_breaker import CircuitState
from mediasub_core.retry import AttemptOutcome, AttemptRecord


def _utcnow() -> datetime:
    return datetime.now(UTC)


class HealthStatus(StrEnum):
    """Derived dependency health."""

    NOT_CONFIGURED = "not_configured"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class HealthSnapshot:
    """Read-only, point-in-time summary of one dependency client."""

    name: str
    status: HealthStatus
    configured: bool
    total_requests: int
    failed_requests: int
    failure_rate_percent: float
    circuit_state: CircuitState
    last_checked_at: datetime | None
    last_response_time_ms: float | None
    last_attempt_duration_ms: float | None = None
    average_attempt_duration_ms: float | None = None


class HealthMonitor:
    """Accumulate attempt counters and circuit state for one client.

    The monitor is a ``BreakerListener`` so it observes every transition of
    the breaker it is registered on.
    """

    def __init__(
        self,
        name: str,
        *,
        configured: bool,
        failure_threshold_percentage: float = 50.0,
    ) -> None:
        self.name = name
        self._configured = configured
        self._failure_threshold_percentage = failure_threshold_percentage
        self._total_requests = 0
        self._failed_requests = 0
        self._circuit_state = CircuitState.CLOSED
        self._probe_failed = False
        self._last_checked_at: datetime | None = None
        self._last_response_time_ms: float | None = None
        self._last_attempt_duration_ms: float | None = None
        self._total_attempt_duration_ms = 0.0

    def record_attempt(self, outcome: AttemptOutcome, duration_ms: float) -> None:
        """Count one transport attempt and its latency."""
        self._total_requests += 1
        self._last_attempt_duration_ms = duration_ms
        self._total_attempt_duration_ms += duration_ms
        if outcome is AttemptOutcome.FAILURE:
            self._failed_requests += 1

    def observe(self, record: AttemptRecord) -> None:
        """``on_attempt`` hook adapter for the retry executor."""
        self.record_attempt(record.outcome, record.duration_ms)

    def record_probe(
        self,
        *,
        healthy: bool,
        response_time_ms: float | None = None,
        checked_at: datetime | None = None,
    ) -> None:
        """Record the outcome of an explicit health probe."""
        self._probe_failed = not healthy
        self._last_checked_at = _utcnow() if checked_at is None else checked_at
        self._last_response_time_ms = response_time_ms

    def failure_rate_percent(self) -> float:
        if self._total_requests == 0:
            return 0.0
        return round(self._failed_requests / self._total_requests * 100.0, 2)

    def average_attempt_duration_ms(self) -> float | None:
        if self._total_requests == 0:
            return None
        return round(self._total_attempt_duration_ms / self._total_requests, 2)

    def status(self) -> HealthStatus:
        if not self._configured:
            return HealthStatus.NOT_CONFIGURED
        if self._probe_failed:
            return HealthStatus.UNHEALTHY
        if self._circuit_state != CircuitState.CLOSED:
            return HealthStatus.DEGRADED
        if (
            self._total_requests
            and self.failure_rate_percent() >= self._failure_threshold_percentage
        ):
            return HealthStatus.DEGRADED
        return HealthStatus.HEALTHY

    def snapshot(self) -> HealthSnapshot:
        """Return the current snapshot without changing any state."""
        return HealthSnapshot(
            name=self.name,
            status=self.status(),
            configured=self._configured,
            total_requests=self._total_requests,
            failed_requests=self._failed_requests,
            failure_rate_percent=self.failure_rate_percent(),
            circuit_state=self._circuit_state,
            last_checked_at=self._last_checked_at,
            last_response_time_ms=self._last_response_time_ms,
            last_attempt_duration_ms=self._last_attempt_duration_ms,
            average_attempt_duration_ms=self.average_attempt_duration_ms(),
        )

    async def on_state_change(
        self, name: str, old: CircuitState, new: CircuitState
    ) -> None:
        _ = name
        self._circuit_state = new
        if old == CircuitState.HALF_OPEN and new == CircuitState.CLOSED:
            self._probe_failed = False

    async def on_call_rejected(self, name: str) -> None:
        _ = name

    async def on_call_succeeded(self, name: str, elapsed: float) -> None:
        _ = (name, elapsed)

    async def on_call_failed(
        self, name: str, exc: BaseException, elapsed: float
    ) -> None:
        _ = (name, exc, elapsed)
