"""Classify outbound-call failures into retry and circuit semantics.

Rules are applied in order and the first match wins:

  1. connection refused / DNS failure / host unreachable -> non-retryable
     ``unavailable`` (still a circuit failure)
  2. connect or read timeout -> retryable ``timeout``
  3. HTTP 401/403 or SMTP auth rejection -> non-retryable ``auth-failure``
  4. HTTP 5xx or an unspecified transport error -> retryable ``server-error``
  5. any other HTTP 4xx -> non-retryable ``bad-request``
"""

from __future__ import annotations

import asyncio
import errno
import smtplib
import socket
from dataclasses import dataclass
from enum import StrEnum

import httpx

from mediasub_core.errors import (
    ClassifiedTransportError,
    ConfigurationError,
    InvalidRequestError,
)

REASON_UNAVAILABLE = "unavailable"
REASON_TIMEOUT = "timeout"
REASON_AUTH_FAILURE = "auth-failure"
REASON_SERVER_ERROR = "server-error"
REASON_BAD_REQUEST = "bad-request"
REASON_NOT_CONFIGURED = "not-configured"
REASON_CANCELLED = "cancelled"

_UNREACHABLE_ERRNOS = frozenset(
    {errno.ECONNREFUSED, errno.EHOSTUNREACH, errno.ENETUNREACH}
)


class ClassificationKind(StrEnum):
    """Retry semantics of a classified failure."""

    RETRYABLE = "retryable"
    NON_RETRYABLE = "non_retryable"
    FATAL = "fatal"


@dataclass(frozen=True)
class ErrorClassification:
    """Tagged classifier verdict."""

    kind: ClassificationKind
    reason: str

    @classmethod
    def retryable(cls, reason: str) -> ErrorClassification:
        return cls(ClassificationKind.RETRYABLE, reason)

    @classmethod
    def non_retryable(cls, reason: str) -> ErrorClassification:
        return cls(ClassificationKind.NON_RETRYABLE, reason)

    @classmethod
    def fatal(cls, reason: str) -> ErrorClassification:
        return cls(ClassificationKind.FATAL, reason)

    @property
    def is_retryable(self) -> bool:
        return self.kind is ClassificationKind.RETRYABLE


def _is_unreachable(error: BaseException) -> bool:
    if isinstance(error, httpx.ConnectError):
        return True
    if isinstance(error, smtplib.SMTPConnectError):
        return True
    if isinstance(error, (ConnectionRefusedError, socket.gaierror)):
        return True
    return isinstance(error, OSError) and error.errno in _UNREACHABLE_ERRNOS


def _is_timeout(error: BaseException) -> bool:
    return isinstance(error, (httpx.TimeoutException, TimeoutError))


def _http_status(error: BaseException) -> int | None:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    return None


def classify(error: BaseException) -> ErrorClassification:
    """Classify one outbound-call failure. Pure and deterministic."""
    if isinstance(error, ConfigurationError):
        return ErrorClassification.fatal(REASON_NOT_CONFIGURED)
    if isinstance(error, ClassifiedTransportError):
        return error.classification
    if isinstance(error, InvalidRequestError):
        return ErrorClassification.non_retryable(REASON_BAD_REQUEST)
    if isinstance(error, asyncio.CancelledError):
        return ErrorClassification.non_retryable(REASON_CANCELLED)

    if _is_unreachable(error):
        return ErrorClassification.non_retryable(REASON_UNAVAILABLE)
    if _is_timeout(error):
        return ErrorClassification.retryable(REASON_TIMEOUT)

    status = _http_status(error)
    if status in {401, 403} or isinstance(error, smtplib.SMTPAuthenticationError):
        return ErrorClassification.non_retryable(REASON_AUTH_FAILURE)
    if status is not None and status >= 500:
        return ErrorClassification.retryable(REASON_SERVER_ERROR)
    if status is not None and 400 <= status < 500:
        return ErrorClassification.non_retryable(REASON_BAD_REQUEST)

    # Permanent SMTP replies are the mail equivalent of a rejected request.
    if isinstance(error, smtplib.SMTPResponseException) and error.smtp_code >= 500:
        return ErrorClassification.non_retryable(REASON_BAD_REQUEST)
    if isinstance(error, smtplib.SMTPRecipientsRefused):
        return ErrorClassification.non_retryable(REASON_BAD_REQUEST)

    return ErrorClassification.retryable(REASON_SERVER_ERROR)


def is_retryable(error: BaseException) -> bool:
    """Return true when ``error`` is worth another attempt."""
    return classify(error).is_retryable
