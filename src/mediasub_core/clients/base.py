"""Composition of breaker, retry executor and health monitor per dependency."""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from functools import partial
from types import MappingProxyType
from typing import Generic, TypeVar

import structlog

from mediasub_core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    LoggingBreakerListener,
)
from mediasub_core.classifier import classify
from mediasub_core.errors import ConfigurationError
from mediasub_core.health import HealthMonitor, HealthSnapshot
from mediasub_core.logging import StructuredLogger, log_error, log_info, log_warning
from mediasub_core.retry import (
    AttemptCallback,
    AttemptRecord,
    RetryBackoffPolicy,
    RetryExecutor,
)

RequestT = TypeVar("RequestT")
ResponseT = TypeVar("ResponseT")

DEFAULT_RETRY_POLICY = RetryBackoffPolicy(attempts=3, base_delay_seconds=1.0)


@dataclass(frozen=True)
class CallResult(Generic[ResponseT]):
    """Successful outbound call."""

    data: ResponseT
    attempts: int
    ok: bool = True


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of an explicit, on-demand health probe."""

    healthy: bool
    response_time_ms: float | None = None
    reason: str | None = None
    data: Mapping[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "data", MappingProxyType(dict(self.data)))


class OutboundClient(ABC, Generic[RequestT, ResponseT]):
    """One callable surface over an unreliable external dependency.

    ``call`` runs ``CircuitBreaker.call(RetryExecutor.run(transport))`` so the
    breaker only sees the final outcome of a whole retry sequence, while the
    health monitor sees every single attempt.
    """

    def __init__(
        self,
        name: str,
        *,
        configured: bool,
        timeout_seconds: float,
        health_check_timeout_seconds: float | None = None,
        retry_policy: RetryBackoffPolicy | None = None,
        breaker_config: CircuitBreakerConfig | None = None,
        executor: RetryExecutor | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        """Wire the breaker, retry executor and health monitor for one client.

        Args:
            name: Dependency name used for the breaker, logs and error codes.
            configured: Whether endpoint and credentials are present.
            timeout_seconds: Timeout applied to every single transport call.
            health_check_timeout_seconds: Timeout for explicit probes. Defaults
                to ``timeout_seconds``.
            retry_policy: Default attempt budget and backoff base.
            breaker_config: Circuit breaker thresholds.
            executor: Shared retry executor. A private one is built if omitted.
            logger: Structured logger. Defaults to a module structlog logger.
        """
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self.name = name
        self._configured = configured
        self._timeout_seconds = timeout_seconds
        self._health_check_timeout_seconds = (
            timeout_seconds
            if health_check_timeout_seconds is None
            else health_check_timeout_seconds
        )
        self._retry_policy = (
            DEFAULT_RETRY_POLICY if retry_policy is None else retry_policy
        )
        self._logger: StructuredLogger = (
            structlog.stdlib.get_logger(__name__) if logger is None else logger
        )
        self._executor = (
            RetryExecutor(logger=self._logger) if executor is None else executor
        )
        config = CircuitBreakerConfig() if breaker_config is None else breaker_config
        self._monitor = HealthMonitor(
            name,
            configured=configured,
            failure_threshold_percentage=config.error_threshold_percentage,
        )
        self._breaker = CircuitBreaker(
            name,
            config=config,
            listeners=[self._monitor, LoggingBreakerListener(self._logger)],
        )
        if not configured:
            log_warning(
                self._logger,
                "integration.not_configured",
                dependency=name,
            )

    @property
    def is_configured(self) -> bool:
        return self._configured

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def retry_policy(self) -> RetryBackoffPolicy:
        return self._retry_policy

    @abstractmethod
    async def _transport(self, request: RequestT) -> ResponseT:
        """Perform exactly one raw call against the dependency."""

    @abstractmethod
    async def _probe(self) -> Mapping[str, object]:
        """Perform one lightweight liveness call against the dependency."""

    def _validate(self, request: RequestT) -> None:
        """Reject a request that no attempt could ever deliver.

        Runs before the breaker, so a malformed request costs no attempt and
        never counts against the dependency. Raise ``InvalidRequestError``.
        """

    async def call(
        self,
        request: RequestT,
        *,
        max_attempts: int | None = None,
        on_attempt: AttemptCallback | None = None,
    ) -> CallResult[ResponseT]:
        """Run one logical operation against the dependency.

        Raises:
            ConfigurationError: When the client is not configured. No transport
                attempt is made and breaker state is untouched.
            InvalidRequestError: When the request itself is malformed. No
                transport attempt is made and breaker state is untouched.
            CircuitOpenError: When the breaker rejects the call.
            ClassifiedTransportError: When the operation finally failed.
        """
        if not self._configured:
            log_warning(
                self._logger,
                "integration.call_rejected_not_configured",
                dependency=self.name,
            )
            raise ConfigurationError(
                f"{self.name} service is not configured",
                dependency=self.name,
            )
        self._validate(request)

        policy = self._retry_policy
        if max_attempts is not None:
            policy = policy.with_attempts(max_attempts)

        result = await self._breaker.call(
            self._executor.run,
            partial(self._attempt, request),
            policy=policy,
            dependency=self.name,
            on_attempt=self._build_attempt_hook(on_attempt),
        )
        return CallResult(data=result.value, attempts=result.attempts)

    def health_status(self) -> HealthSnapshot:
        """Return the current health snapshot. Never mutates state."""
        return self._monitor.snapshot()

    async def perform_health_check(self) -> ProbeResult:
        """Probe the dependency directly, bypassing breaker and retries."""
        if not self._configured:
            return ProbeResult(healthy=False, reason="Service not configured")

        start = time.monotonic()
        try:
            data = await asyncio.wait_for(
                self._probe(),
                timeout=self._health_check_timeout_seconds,
            )
        except Exception as exc:
            classification = classify(exc)
            self._monitor.record_probe(healthy=False)
            log_error(
                self._logger,
                "integration.health_check_failed",
                dependency=self.name,
                reason=classification.reason,
                error=f"{exc.__class__.__name__}: {exc}",
            )
            return ProbeResult(
                healthy=False,
                reason=f"{classification.reason}: {exc.__class__.__name__}: {exc}",
            )

        response_time_ms = (time.monotonic() - start) * 1000.0
        self._monitor.record_probe(healthy=True, response_time_ms=response_time_ms)
        log_info(
            self._logger,
            "integration.health_check_passed",
            dependency=self.name,
            response_time_ms=round(response_time_ms, 2),
        )
        return ProbeResult(
            healthy=True,
            response_time_ms=response_time_ms,
            data=data,
        )

    async def _attempt(self, request: RequestT) -> ResponseT:
        return await asyncio.wait_for(
            self._transport(request),
            timeout=self._timeout_seconds,
        )

    def _build_attempt_hook(
        self,
        on_attempt: AttemptCallback | None,
    ) -> AttemptCallback:
        def _hook(record: AttemptRecord) -> None:
            self._monitor.observe(record)
            if on_attempt is not None:
                on_attempt(record)

        return _hook
