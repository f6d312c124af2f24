"""Core circuit breaker implementation."""

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import ParamSpec, TypeVar

from mediasub_core.circuit_breaker.exceptions import CircuitOpenError
from mediasub_core.circuit_breaker.metrics import BreakerListener
from mediasub_core.circuit_breaker.state import BreakerSnapshot, CircuitState
from mediasub_core.circuit_breaker.window import RollingWindow

T = TypeVar("T")
P = ParamSpec("P")

_Transition = tuple[CircuitState, CircuitState]


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True)
class CircuitBreakerConfig:
    """Circuit breaker configuration values.

    Attributes:
        error_threshold_percentage: Failure percentage inside the rolling
            window at or above which the circuit opens.
        reset_timeout: Seconds to wait while ``OPEN`` before allowing a probe.
        volume_threshold: Minimum calls inside the rolling window before the
            failure percentage is considered at all.
        rolling_window: Length of the rolling window in seconds.
        rolling_buckets: Number of slices the rolling window is split into.
        expected_exceptions: Exceptions that count as failures.
        excluded_exceptions: Exceptions that must not count as failures.
    """

    error_threshold_percentage: float = 50.0
    reset_timeout: float = 30.0
    volume_threshold: int = 5
    rolling_window: float = 10.0
    rolling_buckets: int = 10
    expected_exceptions: tuple[type[BaseException], ...] = (Exception,)
    excluded_exceptions: tuple[type[BaseException], ...] = ()

    def __post_init__(self) -> None:
        if not 0 < self.error_threshold_percentage <= 100:
            raise ValueError("error_threshold_percentage must be in (0, 100]")
        if self.reset_timeout < 0:
            raise ValueError("reset_timeout must be >= 0")
        if self.volume_threshold < 1:
            raise ValueError("volume_threshold must be >= 1")
        if self.rolling_window <= 0:
            raise ValueError("rolling_window must be > 0")
        if self.rolling_buckets < 1:
            raise ValueError("rolling_buckets must be >= 1")


class CircuitBreaker:
    """Stateful proxy around a dangerous async operation.

    State transitions and rolling-window updates happen under one
    ``asyncio.Lock``; listeners are notified after the lock is released.
    While ``HALF_OPEN`` exactly one probe call is in flight; concurrent callers
    are rejected with ``CircuitOpenError(retry_after=0)``.
    """

    def __init__(
        self,
        name: str,
        *,
        config: CircuitBreakerConfig | None = None,
        listeners: Sequence[BreakerListener] | None = None,
    ) -> None:
        """Build a circuit breaker.

        Args:
            name: Breaker name used in errors, logs and metrics.
            config: Breaker behavior configuration. Defaults to
                ``CircuitBreakerConfig()``.
            listeners: Optional listener hooks for breaker events.
        """
        self.name = name
        self.config = CircuitBreakerConfig() if config is None else config
        self._listeners: list[BreakerListener] = list(listeners or ())
        self._window = RollingWindow(
            duration=self.config.rolling_window,
            buckets=self.config.rolling_buckets,
        )
        self._lock = asyncio.Lock()
        self._state = CircuitState.CLOSED
        self._opened_at: datetime | None = None
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    def add_listener(self, listener: BreakerListener) -> None:
        """Register one more listener for breaker events."""
        self._listeners.append(listener)

    def snapshot(self) -> BreakerSnapshot:
        """Return a read-only view of the current state and window counts."""
        successes, failures = self._window.counts(_utcnow().timestamp())
        return BreakerSnapshot(
            name=self.name,
            state=self._state,
            window_successes=successes,
            window_failures=failures,
            opened_at=self._opened_at,
        )

    async def _emit_transitions(self, transitions: Sequence[_Transition]) -> None:
        for old, new in transitions:
            for listener in self._listeners:
                try:
                    await listener.on_state_change(self.name, old, new)
                except Exception:
                    continue

    async def _emit_call_rejected(self) -> None:
        for listener in self._listeners:
            try:
                await listener.on_call_rejected(self.name)
            except Exception:
                continue

    async def _emit_call_succeeded(self, elapsed: float) -> None:
        for listener in self._listeners:
            try:
                await listener.on_call_succeeded(self.name, elapsed)
            except Exception:
                continue

    async def _emit_call_failed(self, exc: BaseException, elapsed: float) -> None:
        for listener in self._listeners:
            try:
                await listener.on_call_failed(self.name, exc, elapsed)
            except Exception:
                continue

    def _retry_after(self, now: datetime) -> float:
        opened_at = now if self._opened_at is None else self._opened_at
        elapsed = (now - opened_at).total_seconds()
        return max(self.config.reset_timeout - elapsed, 0.0)

    def _should_trip(self, now: datetime) -> bool:
        successes, failures = self._window.counts(now.timestamp())
        volume = successes + failures
        if volume < self.config.volume_threshold:
            return False
        return failures / volume * 100.0 >= self.config.error_threshold_percentage

    def _trip(self, now: datetime) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = now

    def _counts_as_failure(self, exc: BaseException) -> bool:
        # An abandoned call is accounted like any other failed attempt.
        if isinstance(exc, asyncio.CancelledError):
            return True
        if isinstance(exc, self.config.excluded_exceptions):
            return False
        return isinstance(exc, self.config.expected_exceptions)

    async def _admit(self) -> bool:
        """Decide whether a call may proceed; return true for a probe call."""
        transitions: list[_Transition] = []
        rejected_after: float | None = None
        is_probe = False

        async with self._lock:
            now = _utcnow()
            if self._state == CircuitState.OPEN:
                retry_after = self._retry_after(now)
                if retry_after > 0:
                    rejected_after = retry_after
                else:
                    self._state = CircuitState.HALF_OPEN
                    transitions.append((CircuitState.OPEN, CircuitState.HALF_OPEN))

            if rejected_after is None and self._state == CircuitState.HALF_OPEN:
                if self._probe_in_flight:
                    rejected_after = 0.0
                else:
                    self._probe_in_flight = True
                    is_probe = True

        await self._emit_transitions(transitions)
        if rejected_after is not None:
            await self._emit_call_rejected()
            raise CircuitOpenError(self.name, retry_after=rejected_after)
        return is_probe

    async def _settle_success(self, *, is_probe: bool, elapsed: float) -> None:
        transitions: list[_Transition] = []
        async with self._lock:
            if is_probe:
                self._probe_in_flight = False
                self._state = CircuitState.CLOSED
                self._opened_at = None
                self._window.reset()
                transitions.append((CircuitState.HALF_OPEN, CircuitState.CLOSED))
            else:
                self._window.record_success(_utcnow().timestamp())

        await self._emit_transitions(transitions)
        await self._emit_call_succeeded(elapsed)

    async def _settle_failure(
        self,
        exc: BaseException,
        *,
        is_probe: bool,
        elapsed: float,
    ) -> None:
        transitions: list[_Transition] = []
        async with self._lock:
            now = _utcnow()
            self._window.record_failure(now.timestamp())
            if is_probe:
                self._probe_in_flight = False
                self._trip(now)
                transitions.append((CircuitState.HALF_OPEN, CircuitState.OPEN))
            elif self._state == CircuitState.CLOSED and self._should_trip(now):
                self._trip(now)
                transitions.append((CircuitState.CLOSED, CircuitState.OPEN))

        await self._emit_call_failed(exc, elapsed)
        await self._emit_transitions(transitions)

    async def _release_probe(self) -> None:
        async with self._lock:
            self._probe_in_flight = False

    async def call(
        self,
        func: Callable[P, Awaitable[T]],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> T:
        """Invoke an async callable under circuit breaker protection.

        Args:
            func: Dangerous async callable to execute.
            *args: Positional arguments forwarded to ``func``.
            **kwargs: Keyword arguments forwarded to ``func``.

        Returns:
            The result of ``func`` when allowed and successful.

        Raises:
            CircuitOpenError: When the circuit is open and the call is rejected
                without invoking ``func``.
            BaseException: The original exception from ``func`` when it is
                attempted and fails.
        """
        is_probe = await self._admit()

        start = time.monotonic()
        try:
            result = await func(*args, **kwargs)
        except BaseException as exc:
            if not self._counts_as_failure(exc):
                if is_probe:
                    await self._release_probe()
                raise
            elapsed = max(time.monotonic() - start, 0.0)
            await self._settle_failure(exc, is_probe=is_probe, elapsed=elapsed)
            raise

        elapsed = max(time.monotonic() - start, 0.0)
        await self._settle_success(is_probe=is_probe, elapsed=elapsed)
        return result
