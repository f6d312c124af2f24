"""Error taxonomy surfaced by outbound integration clients."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from mediasub_core.circuit_breaker.exceptions import CircuitOpenError

if TYPE_CHECKING:
    from mediasub_core.classifier import ErrorClassification


class IntegrationError(RuntimeError):
    """Base exception for failures of an external dependency."""

    def __init__(self, message: str, *, dependency: str) -> None:
        super().__init__(message)
        self.dependency = dependency


class ConfigurationError(IntegrationError):
    """Raised when a dependency has no endpoint or credentials configured."""


class InvalidRequestError(IntegrationError):
    """Raised before any transport attempt when a request cannot be sent as is."""


class ClassifiedTransportError(IntegrationError):
    """Raised when an outbound call failed after classification.

    Attributes:
        classification: Classifier verdict for the final failed attempt.
        attempts: Number of transport attempts that were made.
        http_status: Upstream HTTP status, when one was observed.
        response_body: Upstream response text, when one was observed.
    """

    def __init__(
        self,
        message: str,
        *,
        dependency: str,
        classification: ErrorClassification,
        attempts: int,
        http_status: int | None = None,
        response_body: str | None = None,
    ) -> None:
        super().__init__(message, dependency=dependency)
        self.classification = classification
        self.attempts = attempts
        self.http_status = http_status
        self.response_body = response_body

    @property
    def reason(self) -> str:
        return self.classification.reason


class QueueJobExhaustedError(IntegrationError):
    """Recorded when a delivery job failed on every permitted attempt."""

    def __init__(
        self,
        message: str,
        *,
        dependency: str,
        job_id: str,
        attempts: int,
    ) -> None:
        super().__init__(message, dependency=dependency)
        self.job_id = job_id
        self.attempts = attempts


@dataclass(frozen=True)
class ErrorDetails:
    """Stable, user-facing description of an integration failure."""

    code: str
    message: str
    status_code: int


_REASON_CODES: dict[str, tuple[str, int]] = {
    "unavailable": ("UNAVAILABLE", 503),
    "timeout": ("TIMEOUT", 504),
    "auth-failure": ("AUTH_FAILURE", 401),
    "bad-request": ("BAD_REQUEST", 400),
    "server-error": ("ERROR", 500),
}


def _prefix(dependency: str) -> str:
    return dependency.strip().upper().replace("-", "_").replace(" ", "_")


def describe_error(error: BaseException) -> ErrorDetails:
    """Map an integration failure onto a stable error code and HTTP status."""
    if isinstance(error, ConfigurationError):
        return ErrorDetails(
            code=f"{_prefix(error.dependency)}_NOT_CONFIGURED",
            message=f"{error.dependency} service is not configured",
            status_code=503,
        )
    if isinstance(error, InvalidRequestError):
        return ErrorDetails(
            code=f"{_prefix(error.dependency)}_BAD_REQUEST",
            message=str(error),
            status_code=400,
        )
    if isinstance(error, CircuitOpenError):
        return ErrorDetails(
            code=f"{_prefix(error.breaker_name)}_CIRCUIT_OPEN",
            message=f"{error.breaker_name} service is temporarily unavailable",
            status_code=503,
        )
    if isinstance(error, ClassifiedTransportError):
        suffix, status_code = _REASON_CODES.get(error.reason, ("ERROR", 500))
        if error.reason == "bad-request" and error.http_status is not None:
            status_code = error.http_status
        return ErrorDetails(
            code=f"{_prefix(error.dependency)}_{suffix}",
            message=str(error),
            status_code=status_code,
        )
    return ErrorDetails(
        code="INTEGRATION_ERROR",
        message=str(error) or error.__class__.__name__,
        status_code=500,
    )
