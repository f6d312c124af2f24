from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Generic, TypeVar

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.retry import retry_base

from mediasub_core.classifier import classify, is_retryable
from mediasub_core.errors import ClassifiedTransportError, IntegrationError
from mediasub_core.logging import StructuredLogger, log_info, log_warning

T = TypeVar("T")
Sleep = Callable[[float], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class RetryBackoffPolicy:
    """Configuration for retry attempt count and exponential backoff."""

    attempts: int
    base_delay_seconds: float
    max_delay_seconds: float | None = None

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0")
        if self.max_delay_seconds is not None and (
            self.max_delay_seconds < self.base_delay_seconds
        ):
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")

    def delay_after(self, attempt_number: int) -> float:
        """Return the pause that follows failed attempt ``attempt_number``."""
        delay = self.base_delay_seconds * 2 ** (attempt_number - 1)
        if self.max_delay_seconds is not None:
            return min(delay, self.max_delay_seconds)
        return delay

    def with_attempts(self, attempts: int) -> RetryBackoffPolicy:
        return RetryBackoffPolicy(
            attempts=attempts,
            base_delay_seconds=self.base_delay_seconds,
            max_delay_seconds=self.max_delay_seconds,
        )


class AttemptOutcome(StrEnum):
    """Outcome of a single transport attempt."""

    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class AttemptRecord:
    """Ephemeral record of one transport attempt."""

    attempt_number: int
    started_at: datetime
    duration_ms: float
    outcome: AttemptOutcome
    error: BaseException | None = None


@dataclass(frozen=True)
class RetryResult(Generic[T]):
    """Successful operation value with the number of attempts it took."""

    value: T
    attempts: int


AttemptCallback = Callable[[AttemptRecord], None]


def build_exponential_backoff_retrying(
    *,
    retry: retry_base,
    policy: RetryBackoffPolicy,
    sleep: Sleep | None = None,
    before_sleep: Callable[[RetryCallState], None] | None = None,
    reraise: bool = True,
) -> AsyncRetrying:
    """Build an ``AsyncRetrying`` waiting ``base * 2**(n-1)`` after attempt n."""
    if policy.max_delay_seconds is None:
        wait = wait_exponential(multiplier=policy.base_delay_seconds, exp_base=2)
    else:
        wait = wait_exponential(
            multiplier=policy.base_delay_seconds,
            exp_base=2,
            max=policy.max_delay_seconds,
        )
    options: dict[str, Any] = {
        "retry": retry,
        "wait": wait,
        "stop": stop_after_attempt(policy.attempts),
        "reraise": reraise,
    }
    if sleep is not None:
        options["sleep"] = sleep
    if before_sleep is not None:
        options["before_sleep"] = before_sleep
    return AsyncRetrying(**options)


def _transport_details(error: BaseException) -> tuple[int | None, str | None]:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code, error.response.text
    return None, None


class RetryExecutor:
    """Run async operations with classified, exponentially backed-off retries.

    The executor holds no per-call state, so one instance can be shared by
    every client. Non-retryable and fatal failures stop immediately; retryable
    failures are retried until the policy's attempts are used up. Whatever
    finally escapes is re-raised as ``ClassifiedTransportError`` unless it is
    already an ``IntegrationError`` or a task cancellation.
    """

    def __init__(
        self,
        *,
        sleep: Sleep | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        self._sleep = sleep
        self._logger: StructuredLogger = (
            structlog.stdlib.get_logger(__name__) if logger is None else logger
        )

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        policy: RetryBackoffPolicy,
        dependency: str = "dependency",
        on_attempt: AttemptCallback | None = None,
    ) -> RetryResult[T]:
        """Run ``operation`` until it succeeds or the policy gives up.

        Args:
            operation: Zero-argument coroutine factory performing one attempt.
            policy: Attempt budget and backoff base.
            dependency: Dependency name used in errors and log events.
            on_attempt: Optional hook receiving one ``AttemptRecord`` per
                attempt, including failed and cancelled ones.

        Returns:
            ``RetryResult`` holding the value and the attempt count.

        Raises:
            ClassifiedTransportError: When the final attempt failed.
            IntegrationError: Re-raised unchanged when ``operation`` raises one.
        """
        retrying = build_exponential_backoff_retrying(
            retry=retry_if_exception(is_retryable),
            policy=policy,
            sleep=self._sleep,
            before_sleep=self._build_before_sleep(dependency),
        )

        attempt_number = 0
        try:
            async for attempt in retrying:
                with attempt:
                    attempt_number = attempt.retry_state.attempt_number
                    value = await self._attempt_once(
                        operation,
                        attempt_number=attempt_number,
                        on_attempt=on_attempt,
                    )
                    if attempt_number > 1:
                        log_info(
                            self._logger,
                            "retry.succeeded",
                            dependency=dependency,
                            attempt=attempt_number,
                        )
                    return RetryResult(value=value, attempts=attempt_number)
        except IntegrationError:
            raise
        except Exception as exc:
            classification = classify(exc)
            http_status, response_body = _transport_details(exc)
            log_warning(
                self._logger,
                "retry.gave_up",
                dependency=dependency,
                attempts=attempt_number,
                reason=classification.reason,
                retryable=classification.is_retryable,
                error=f"{exc.__class__.__name__}: {exc}",
            )
            raise ClassifiedTransportError(
                f"{dependency} call failed after {attempt_number} attempt(s) "
                f"({classification.reason}): {exc}",
                dependency=dependency,
                classification=classification,
                attempts=attempt_number,
                http_status=http_status,
                response_body=response_body,
            ) from exc

        raise RuntimeError("Retry loop exited unexpectedly.")

    async def _attempt_once(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        attempt_number: int,
        on_attempt: AttemptCallback | None,
    ) -> T:
        started_at = _utcnow()
        start = time.monotonic()
        try:
            value = await operation()
        except BaseException as exc:
            self._notify(
                on_attempt,
                AttemptRecord(
                    attempt_number=attempt_number,
                    started_at=started_at,
                    duration_ms=(time.monotonic() - start) * 1000.0,
                    outcome=AttemptOutcome.FAILURE,
                    error=exc,
                ),
            )
            raise
        self._notify(
            on_attempt,
            AttemptRecord(
                attempt_number=attempt_number,
                started_at=started_at,
                duration_ms=(time.monotonic() - start) * 1000.0,
                outcome=AttemptOutcome.SUCCESS,
            ),
        )
        return value

    def _notify(
        self,
        on_attempt: AttemptCallback | None,
        record: AttemptRecord,
    ) -> None:
        if on_attempt is None:
            return
        try:
            on_attempt(record)
        except Exception:
            log_warning(
                self._logger,
                "retry.attempt_callback_failed",
                attempt=record.attempt_number,
            )

    def _build_before_sleep(
        self,
        dependency: str,
    ) -> Callable[[RetryCallState], None]:
        def _before_sleep(state: RetryCallState) -> None:
            outcome = state.outcome
            error = None if outcome is None else outcome.exception()
            delay = 0.0 if state.next_action is None else state.next_action.sleep
            log_info(
                self._logger,
                "retry.scheduled",
                dependency=dependency,
                attempt=state.attempt_number,
                delay_seconds=delay,
                reason=None if error is None else classify(error).reason,
            )

        return _before_sleep
