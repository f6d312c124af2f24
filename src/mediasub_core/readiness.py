"""Aggregate dependency probes into one service readiness view.

Each dependency contributes a ``DependencyReport`` built from an explicit
probe plus its client's health snapshot. The service is ready when every
required dependency is ready; optional dependencies that are not configured
only annotate the report.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping, Sequence
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any

import structlog

from mediasub_core.clients.base import OutboundClient
from mediasub_core.health import HealthStatus
from mediasub_core.logging import StructuredLogger, log_info, log_warning

REASON_PENDING = "pending"
REASON_READY = "ready"
REASON_NOT_CONFIGURED = "not_configured"
REASON_DEPENDENCY_UNAVAILABLE = "dependency_unavailable"
REASON_CHECK_FAILED = "check_failed"

ReadinessCheck = Callable[[], Awaitable["DependencyReport"]]
ReadinessListener = Callable[["ReadinessSnapshot"], None]


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class DependencyReport:
    """Readiness verdict for one external dependency."""

    name: str
    ready: bool
    required: bool = True
    status: HealthStatus | None = None
    reason: str = REASON_READY
    detail: str = ""
    data: Mapping[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "data", MappingProxyType(dict(self.data)))


@dataclass(frozen=True)
class ReadinessSnapshot:
    """Point-in-time readiness of the whole integration layer."""

    ready: bool
    reason: str
    checked_at: datetime | None
    dependencies: tuple[DependencyReport, ...]

    @property
    def status(self) -> str:
        return "ok" if self.ready else "degraded"

    def dependency(self, name: str) -> DependencyReport | None:
        return next((dep for dep in self.dependencies if dep.name == name), None)

    def as_dict(self) -> dict[str, object]:
        """Render the snapshot as a health-endpoint payload."""
        return {
            "status": self.status,
            "reason": self.reason,
            "checked_at": (
                None if self.checked_at is None else self.checked_at.isoformat()
            ),
            "dependencies": {
                dep.name: {
                    "ready": dep.ready,
                    "required": dep.required,
                    "status": None if dep.status is None else str(dep.status),
                    "reason": dep.reason,
                    "detail": dep.detail,
                    **dep.data,
                }
                for dep in self.dependencies
            },
        }


def pending_snapshot(names: Sequence[str]) -> ReadinessSnapshot:
    """Snapshot served before the first probe round has finished."""
    return ReadinessSnapshot(
        ready=False,
        reason=REASON_PENDING,
        checked_at=None,
        dependencies=tuple(
            DependencyReport(name=name, ready=False, reason=REASON_PENDING)
            for name in names
        ),
    )


def make_client_check(
    client: OutboundClient[Any, Any],
    *,
    required: bool = True,
) -> ReadinessCheck:
    """Wrap ``client.perform_health_check`` as a readiness check.

    Unconfigured clients are never probed. They fail readiness only when
    ``required`` is true.
    """

    async def _check() -> DependencyReport:
        if not client.is_configured:
            return DependencyReport(
                name=client.name,
                ready=not required,
                required=required,
                status=HealthStatus.NOT_CONFIGURED,
                reason=REASON_NOT_CONFIGURED,
                detail="Service not configured",
            )

        probe = await client.perform_health_check()
        health = client.health_status()
        data: dict[str, object] = {
            "circuit_state": str(health.circuit_state),
            "total_requests": health.total_requests,
            "failed_requests": health.failed_requests,
            "failure_rate_percent": health.failure_rate_percent,
        }
        if health.average_attempt_duration_ms is not None:
            data["average_attempt_ms"] = health.average_attempt_duration_ms
        if probe.response_time_ms is not None:
            data["response_time_ms"] = round(probe.response_time_ms, 2)
        return DependencyReport(
            name=client.name,
            ready=probe.healthy,
            required=required,
            status=health.status,
            reason=REASON_READY if probe.healthy else REASON_DEPENDENCY_UNAVAILABLE,
            detail=probe.reason or "",
            data=data,
        )

    _check.__name__ = client.name
    return _check


def _check_name(check: ReadinessCheck) -> str:
    return getattr(check, "__name__", check.__class__.__name__)


async def evaluate_readiness_once(
    checks: Sequence[ReadinessCheck],
    *,
    logger: StructuredLogger | None = None,
) -> ReadinessSnapshot:
    """Run all checks concurrently and fold them into one snapshot.

    A check that raises is reported as a failed required dependency.
    """
    outcomes = await asyncio.gather(
        *(check() for check in checks),
        return_exceptions=True,
    )
    reports: list[DependencyReport] = []
    for check, outcome in zip(checks, outcomes, strict=True):
        if isinstance(outcome, asyncio.CancelledError):
            raise outcome
        if isinstance(outcome, BaseException):
            if logger is not None:
                log_warning(
                    logger,
                    "readiness.check_failed",
                    check=_check_name(check),
                    error=f"{outcome.__class__.__name__}: {outcome}",
                )
            reports.append(
                DependencyReport(
                    name=_check_name(check),
                    ready=False,
                    reason=REASON_CHECK_FAILED,
                    detail=f"{outcome.__class__.__name__}: {outcome}",
                )
            )
            continue
        reports.append(outcome)

    blocking = [report for report in reports if report.required and not report.ready]
    return ReadinessSnapshot(
        ready=not blocking,
        reason=blocking[0].reason if blocking else REASON_READY,
        checked_at=_utcnow(),
        dependencies=tuple(reports),
    )


class ReadinessManager:
    """Hold the latest readiness snapshot and optionally refresh it on a timer."""

    def __init__(
        self,
        checks: Sequence[ReadinessCheck],
        *,
        interval_seconds: float = 30.0,
        on_change: ReadinessListener | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        """Create a manager over a fixed set of checks.

        Args:
            checks: Readiness checks run on every refresh.
            interval_seconds: Pause between background refreshes.
            on_change: Called when overall readiness flips.
            logger: Structured logger.

        Raises:
            ValueError: If no checks are given or the interval is not positive.
        """
        self._checks = tuple(checks)
        if not self._checks:
            raise ValueError("at least one readiness check is required")
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self._interval_seconds = interval_seconds
        self._on_change = on_change
        self._logger: StructuredLogger = (
            structlog.stdlib.get_logger(__name__) if logger is None else logger
        )
        self._snapshot = pending_snapshot([_check_name(c) for c in self._checks])
        self._stop = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def snapshot(self) -> ReadinessSnapshot:
        return self._snapshot

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def refresh(self) -> ReadinessSnapshot:
        """Probe every dependency now and cache the result."""
        previous = self._snapshot
        current = await evaluate_readiness_once(self._checks, logger=self._logger)
        self._snapshot = current
        if previous.ready != current.ready or previous.checked_at is None:
            log_info(
                self._logger,
                "readiness.changed",
                ready=current.ready,
                reason=current.reason,
            )
            self._notify(current)
        return current

    def _notify(self, snapshot: ReadinessSnapshot) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(snapshot)
        except Exception:
            log_warning(
                self._logger,
                "readiness.listener_failed",
                ready=snapshot.ready,
            )

    async def _poll(self) -> None:
        while not self._stop.is_set():
            await self.refresh()
            with suppress(TimeoutError):
                await asyncio.wait_for(self._stop.wait(), self._interval_seconds)

    def start(self) -> None:
        """Start background refreshes. A running poller is left alone."""
        if self.is_running:
            return
        self._stop = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(
            self._poll(),
            name="readiness-poller",
        )

    async def stop(self) -> None:
        """Stop background refreshes and wait for the poller to exit."""
        self._stop.set()
        task, self._task = self._task, None
        if task is None:
            return
        try:
            await asyncio.wait_for(task, self._interval_seconds + 5.0)
        except TimeoutError:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
