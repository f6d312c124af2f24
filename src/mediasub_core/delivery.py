"""In-memory, single-consumer queue for fire-and-forget deliveries.

Jobs live only in process memory: anything queued or in flight is lost when
the process stops. Delivery is best-effort and there is no dead-letter store.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Generic, TypeVar
from uuid import uuid4

import structlog

from mediasub_core.circuit_breaker import CircuitOpenError
from mediasub_core.classifier import classify
from mediasub_core.clients.base import OutboundClient
from mediasub_core.errors import (
    ConfigurationError,
    InvalidRequestError,
    QueueJobExhaustedError,
)
from mediasub_core.logging import StructuredLogger, log_error, log_info, log_warning
from mediasub_core.retry import AttemptRecord

PayloadT = TypeVar("PayloadT")

REASON_CIRCUIT_OPEN = "circuit-open"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class JobPriority(StrEnum):
    """Caller-declared importance. Recorded only; order is always FIFO."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


@dataclass(slots=True)
class DeliveryJob(Generic[PayloadT]):
    """One queued delivery. Mutated only by the queue worker."""

    id: str
    payload: PayloadT
    max_attempts: int
    priority: JobPriority
    enqueued_at: datetime
    attempts: int = 0


@dataclass(frozen=True)
class EnqueueReceipt:
    """Acceptance of a job into memory. Not a delivery guarantee."""

    job_id: str
    queued: bool = True


@dataclass(frozen=True)
class DeliveryOutcome:
    """Terminal outcome of one delivery job."""

    job_id: str
    delivered: bool
    attempts: int
    result: object | None = None
    error: QueueJobExhaustedError | None = None
    reason: str | None = None


@dataclass(frozen=True)
class QueueStats:
    size: int
    processing: bool
    delivered: int
    failed: int


def _rejection_reason(exc: BaseException) -> str | None:
    """Reason for a job turned away before any transport attempt."""
    if isinstance(exc, CircuitOpenError):
        return REASON_CIRCUIT_OPEN
    if isinstance(exc, (ConfigurationError, InvalidRequestError)):
        return classify(exc).reason
    return None


OutcomeCallback = Callable[[DeliveryOutcome], None]


class DeliveryQueue(Generic[PayloadT]):
    """FIFO queue drained by at most one worker task at a time.

    ``enqueue`` is a plain method meant to be called on the event loop thread.
    The worker starts on the first enqueue, exits once the queue is empty and
    is started again by the next enqueue. Each job goes through
    ``OutboundClient.call`` with its own attempt budget, so no two jobs ever
    have a transport call in flight at the same time.
    """

    def __init__(
        self,
        client: OutboundClient[PayloadT, Any],
        *,
        default_max_attempts: int | None = None,
        on_outcome: OutcomeCallback | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        self._client = client
        self._default_max_attempts = (
            client.retry_policy.attempts
            if default_max_attempts is None
            else default_max_attempts
        )
        if self._default_max_attempts < 1:
            raise ValueError("default_max_attempts must be >= 1")
        self._on_outcome = on_outcome
        self._logger: StructuredLogger = (
            structlog.stdlib.get_logger(__name__) if logger is None else logger
        )
        self._jobs: deque[DeliveryJob[PayloadT]] = deque()
        self._worker: asyncio.Task[None] | None = None
        self._delivered = 0
        self._failed = 0

    def enqueue(
        self,
        payload: PayloadT,
        *,
        max_attempts: int | None = None,
        priority: JobPriority = JobPriority.NORMAL,
    ) -> EnqueueReceipt:
        """Accept ``payload`` for asynchronous delivery and return immediately."""
        attempts = self._default_max_attempts if max_attempts is None else max_attempts
        if attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        job = DeliveryJob(
            id=uuid4().hex,
            payload=payload,
            max_attempts=attempts,
            priority=JobPriority(priority),
            enqueued_at=_utcnow(),
        )
        self._jobs.append(job)
        log_info(
            self._logger,
            "delivery.enqueued",
            dependency=self._client.name,
            job_id=job.id,
            priority=str(job.priority),
            queue_size=len(self._jobs),
        )
        self._ensure_worker()
        return EnqueueReceipt(job_id=job.id)

    def stats(self) -> QueueStats:
        return QueueStats(
            size=len(self._jobs),
            processing=self.is_processing,
            delivered=self._delivered,
            failed=self._failed,
        )

    @property
    def is_processing(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def join(self) -> None:
        """Wait until the current worker has drained the queue."""
        while self._worker is not None:
            task = self._worker
            await asyncio.shield(task)
            if self._worker is task:
                break

    async def close(self) -> None:
        """Cancel the worker and drop whatever is still queued."""
        task = self._worker
        dropped = len(self._jobs)
        self._jobs.clear()
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        if dropped:
            log_warning(
                self._logger,
                "delivery.dropped_on_close",
                dependency=self._client.name,
                dropped=dropped,
            )

    def _ensure_worker(self) -> None:
        if self.is_processing:
            return
        self._worker = asyncio.get_running_loop().create_task(
            self._drain(),
            name=f"delivery-queue:{self._client.name}",
        )

    async def _drain(self) -> None:
        try:
            # No await between the emptiness check and exit, so a producer on
            # the loop can never observe a live worker that is about to stop.
            while self._jobs:
                job = self._jobs.popleft()
                await self._deliver(job)
        finally:
            if self._worker is asyncio.current_task():
                self._worker = None

    async def _deliver(self, job: DeliveryJob[PayloadT]) -> None:
        def _count_attempt(record: AttemptRecord) -> None:
            job.attempts = record.attempt_number

        try:
            result = await self._client.call(
                job.payload,
                max_attempts=job.max_attempts,
                on_attempt=_count_attempt,
            )
        except Exception as exc:
            self._fail(job, exc)
            return

        self._delivered += 1
        log_info(
            self._logger,
            "delivery.delivered",
            dependency=self._client.name,
            job_id=job.id,
            attempts=result.attempts,
        )
        self._report(
            DeliveryOutcome(
                job_id=job.id,
                delivered=True,
                attempts=result.attempts,
                result=result.data,
            )
        )

    def _fail(self, job: DeliveryJob[PayloadT], exc: Exception) -> None:
        rejection = _rejection_reason(exc)
        reason = rejection or classify(exc).reason
        error = QueueJobExhaustedError(
            f"delivery job {job.id} failed after {job.attempts} attempt(s): {exc}",
            dependency=self._client.name,
            job_id=job.id,
            attempts=job.attempts,
        )
        error.__cause__ = exc
        self._failed += 1
        log_error(
            self._logger,
            "delivery.exhausted" if rejection is None else "delivery.rejected",
            dependency=self._client.name,
            job_id=job.id,
            attempts=job.attempts,
            reason=reason,
            error=f"{exc.__class__.__name__}: {exc}",
        )
        self._report(
            DeliveryOutcome(
                job_id=job.id,
                delivered=False,
                attempts=job.attempts,
                error=error,
                reason=reason,
            )
        )

    def _report(self, outcome: DeliveryOutcome) -> None:
        if self._on_outcome is None:
            return
        try:
            self._on_outcome(outcome)
        except Exception:
            log_warning(
                self._logger,
                "delivery.outcome_callback_failed",
                dependency=self._client.name,
                job_id=outcome.job_id,
            )
