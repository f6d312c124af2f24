from __future__ import annotations

import asyncio

import httpx
import pytest
from tenacity import RetryCallState
from tenacity.retry import retry_if_exception_type

from mediasub_core.classifier import REASON_BAD_REQUEST, REASON_TIMEOUT
from mediasub_core.errors import ClassifiedTransportError, ConfigurationError
from mediasub_core.retry import (
    AttemptOutcome,
    AttemptRecord,
    RetryBackoffPolicy,
    RetryExecutor,
    build_exponential_backoff_retrying,
)
from tests.mediasub_core.support.fakes import FakeLogger, RecordingSleep

pytestmark = pytest.mark.asyncio

_REQUEST = httpx.Request("POST", "http://directory.test/Users/New")


class _Operation:
    """Zero-argument operation replaying scripted outcomes."""

    def __init__(self, *outcomes: object) -> None:
        self._outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self) -> object:
        self.calls += 1
        outcome = self._outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


@pytest.mark.parametrize(
    ("attempts", "base", "max_delay", "message"),
    [
        (0, 1.0, None, "attempts must be >= 1"),
        (1, -0.1, None, "base_delay_seconds must be >= 0"),
        (1, 2.0, 1.0, "max_delay_seconds must be >= base_delay_seconds"),
    ],
)
async def test_retry_backoff_policy_validation(
    attempts: int,
    base: float,
    max_delay: float | None,
    message: str,
) -> None:
    with pytest.raises(ValueError, match=message):
        RetryBackoffPolicy(
            attempts=attempts,
            base_delay_seconds=base,
            max_delay_seconds=max_delay,
        )


async def test_policy_delay_doubles_and_respects_cap() -> None:
    policy = RetryBackoffPolicy(attempts=5, base_delay_seconds=1.0)
    capped = RetryBackoffPolicy(
        attempts=5,
        base_delay_seconds=1.0,
        max_delay_seconds=3.0,
    )

    assert [policy.delay_after(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]
    assert [capped.delay_after(n) for n in (1, 2, 3)] == [1.0, 2.0, 3.0]
    assert policy.with_attempts(2).attempts == 2
    assert policy.with_attempts(2).base_delay_seconds == 1.0


async def test_build_retrying_uses_injected_sleep_and_hooks() -> None:
    sleep = RecordingSleep()
    before_sleep_calls: list[int] = []

    def _before_sleep(state: RetryCallState) -> None:
        before_sleep_calls.append(state.attempt_number)

    retrying = build_exponential_backoff_retrying(
        retry=retry_if_exception_type(ValueError),
        policy=RetryBackoffPolicy(attempts=3, base_delay_seconds=0.5),
        sleep=sleep,
        before_sleep=_before_sleep,
    )
    operation = _Operation(ValueError("one"), ValueError("two"), "done")

    result = await retrying(operation)

    assert result == "done"
    assert sleep.delays == [0.5, 1.0]
    assert before_sleep_calls == [1, 2]


async def test_executor_returns_value_and_attempt_count() -> None:
    sleep = RecordingSleep()
    executor = RetryExecutor(sleep=sleep, logger=FakeLogger())
    operation = _Operation("ok")

    result = await executor.run(
        operation,
        policy=RetryBackoffPolicy(attempts=3, base_delay_seconds=1.0),
    )

    assert (result.value, result.attempts) == ("ok", 1)
    assert sleep.delays == []


async def test_retryable_failures_back_off_exponentially(
    fake_logger: FakeLogger,
) -> None:
    sleep = RecordingSleep()
    executor = RetryExecutor(sleep=sleep, logger=fake_logger)
    operation = _Operation(TimeoutError(), TimeoutError(), "ok")

    result = await executor.run(
        operation,
        policy=RetryBackoffPolicy(attempts=3, base_delay_seconds=0.25),
        dependency="directory",
    )

    assert result.attempts == 3
    assert sleep.delays == [0.25, 0.5]
    assert fake_logger.events.count("retry.scheduled") == 2
    assert "retry.succeeded" in fake_logger.events


async def test_retryable_failures_exhaust_attempts(fake_logger: FakeLogger) -> None:
    sleep = RecordingSleep()
    executor = RetryExecutor(sleep=sleep, logger=fake_logger)
    operation = _Operation(*(TimeoutError() for _ in range(4)))

    with pytest.raises(ClassifiedTransportError) as exc_info:
        await executor.run(
            operation,
            policy=RetryBackoffPolicy(attempts=4, base_delay_seconds=1.0),
            dependency="directory",
        )

    error = exc_info.value
    assert operation.calls == 4
    assert sleep.delays == [1.0, 2.0, 4.0]
    assert error.attempts == 4
    assert error.reason == REASON_TIMEOUT
    assert error.dependency == "directory"
    assert isinstance(error.__cause__, TimeoutError)
    assert fake_logger.fields_for("retry.gave_up")[0]["attempts"] == 4


async def test_non_retryable_failure_stops_after_one_attempt() -> None:
    sleep = RecordingSleep()
    executor = RetryExecutor(sleep=sleep, logger=FakeLogger())
    response = httpx.Response(422, request=_REQUEST, text="invalid name")
    operation = _Operation(
        httpx.HTTPStatusError("bad", request=_REQUEST, response=response),
        "unreached",
    )

    with pytest.raises(ClassifiedTransportError) as exc_info:
        await executor.run(
            operation,
            policy=RetryBackoffPolicy(attempts=5, base_delay_seconds=1.0),
        )

    assert operation.calls == 1
    assert sleep.delays == []
    assert exc_info.value.reason == REASON_BAD_REQUEST
    assert exc_info.value.http_status == 422
    assert exc_info.value.response_body == "invalid name"


async def test_integration_errors_are_reraised_unchanged() -> None:
    executor = RetryExecutor(sleep=RecordingSleep(), logger=FakeLogger())
    error = ConfigurationError("missing", dependency="mail")
    operation = _Operation(error)

    with pytest.raises(ConfigurationError) as exc_info:
        await executor.run(
            operation,
            policy=RetryBackoffPolicy(attempts=3, base_delay_seconds=1.0),
        )

    assert exc_info.value is error
    assert operation.calls == 1


async def test_on_attempt_receives_one_record_per_attempt() -> None:
    executor = RetryExecutor(sleep=RecordingSleep(), logger=FakeLogger())
    records: list[AttemptRecord] = []
    failure = TimeoutError()

    await executor.run(
        _Operation(failure, "ok"),
        policy=RetryBackoffPolicy(attempts=3, base_delay_seconds=0.0),
        on_attempt=records.append,
    )

    assert [record.attempt_number for record in records] == [1, 2]
    assert [record.outcome for record in records] == [
        AttemptOutcome.FAILURE,
        AttemptOutcome.SUCCESS,
    ]
    assert records[0].error is failure
    assert all(record.duration_ms >= 0 for record in records)


async def test_failing_attempt_callback_is_logged_and_ignored(
    fake_logger: FakeLogger,
) -> None:
    executor = RetryExecutor(sleep=RecordingSleep(), logger=fake_logger)

    def _explode(record: AttemptRecord) -> None:
        raise RuntimeError("callback broke")

    result = await executor.run(
        _Operation("ok"),
        policy=RetryBackoffPolicy(attempts=1, base_delay_seconds=0.0),
        on_attempt=_explode,
    )

    assert result.value == "ok"
    assert "retry.attempt_callback_failed" in fake_logger.events


async def test_cancellation_propagates_and_is_recorded_as_failed_attempt() -> None:
    executor = RetryExecutor(sleep=RecordingSleep(), logger=FakeLogger())
    records: list[AttemptRecord] = []
    started = asyncio.Event()

    async def _hang() -> str:
        started.set()
        await asyncio.Event().wait()
        return "never"

    task = asyncio.create_task(
        executor.run(
            _hang,
            policy=RetryBackoffPolicy(attempts=3, base_delay_seconds=0.0),
            on_attempt=records.append,
        )
    )
    await started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert len(records) == 1
    assert records[0].outcome is AttemptOutcome.FAILURE
