from __future__ import annotations

import asyncio
import smtplib
import time
from collections.abc import Mapping
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from functools import partial

from mediasub_core.circuit_breaker import CircuitBreakerConfig
from mediasub_core.clients.base import OutboundClient
from mediasub_core.errors import InvalidRequestError
from mediasub_core.logging import StructuredLogger
from mediasub_core.retry import RetryBackoffPolicy, RetryExecutor

MAIL_DEPENDENCY = "mail"


@dataclass(frozen=True)
class MailMessage:
    """One outbound HTML notification."""

    to: str
    subject: str
    html: str


@dataclass(frozen=True)
class MailReceipt:
    """Accepted message as reported back by the SMTP relay."""

    message_id: str
    recipient: str


class _SessionDeadline:
    """Time budget shared by every blocking step of one SMTP session."""

    def __init__(self, seconds: float) -> None:
        self._expires_at = time.monotonic() + seconds

    def remaining(self) -> float:
        left = self._expires_at - time.monotonic()
        if left <= 0:
            raise TimeoutError("SMTP session exceeded its time budget")
        return left

    def arm(self, smtp: smtplib.SMTP) -> None:
        """Bound the next socket operation by what is left of the budget."""
        remaining = self.remaining()
        if smtp.sock is not None:
            smtp.sock.settimeout(remaining)


class MailTransportClient(OutboundClient[MailMessage, MailReceipt]):
    """SMTP client with breaker, retries and health accounting.

    ``smtplib`` is blocking, so each transport call and probe runs in the
    loop's default executor. A fresh connection is opened per message.

    A worker thread cannot be cancelled, so the per-attempt timeout is owned
    by the session itself: connect, STARTTLS, login and send share one
    deadline, and an attempt only ends once its thread has returned. A retry
    therefore never overlaps a session that is still talking to the relay.
    """

    def __init__(
        self,
        *,
        host: str | None,
        user: str | None,
        password: str | None,
        port: int = 587,
        secure: bool = False,
        starttls: bool = True,
        from_name: str = "Rflix API",
        from_address: str | None = None,
        timeout_seconds: float = 20.0,
        health_check_timeout_seconds: float = 10.0,
        retry_policy: RetryBackoffPolicy | None = None,
        breaker_config: CircuitBreakerConfig | None = None,
        executor: RetryExecutor | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        super().__init__(
            MAIL_DEPENDENCY,
            configured=bool(host and user and password),
            timeout_seconds=timeout_seconds,
            health_check_timeout_seconds=health_check_timeout_seconds,
            retry_policy=retry_policy,
            breaker_config=breaker_config,
            executor=executor,
            logger=logger,
        )
        self._host = host or ""
        self._port = port
        self._user = user or ""
        self._password = password or ""
        self._secure = secure
        self._starttls = starttls
        self._from = formataddr((from_name, from_address or self._user))

    def _connect(self, deadline: _SessionDeadline) -> smtplib.SMTP:
        smtp: smtplib.SMTP
        if self._secure:
            smtp = smtplib.SMTP_SSL(
                self._host, self._port, timeout=deadline.remaining()
            )
        else:
            smtp = smtplib.SMTP(self._host, self._port, timeout=deadline.remaining())
        try:
            if not self._secure and self._starttls:
                deadline.arm(smtp)
                smtp.starttls()
            deadline.arm(smtp)
            smtp.login(self._user, self._password)
        except BaseException:
            smtp.close()
            raise
        return smtp

    def build_message(self, message: MailMessage) -> EmailMessage:
        """Render ``message`` as a MIME message.

        Raises:
            InvalidRequestError: If a header value cannot be encoded, such as
                a subject or recipient containing CR or LF.
        """
        email = EmailMessage()
        try:
            email["Subject"] = message.subject
            email["From"] = self._from
            email["To"] = message.to
        except ValueError as exc:
            raise InvalidRequestError(
                f"mail message rejected: {exc}",
                dependency=self.name,
            ) from exc
        email["Message-ID"] = make_msgid()
        email.set_content(message.html, subtype="html")
        return email

    def _validate(self, request: MailMessage) -> None:
        self.build_message(request)

    def _send_blocking(self, message: MailMessage) -> MailReceipt:
        email = self.build_message(message)
        deadline = _SessionDeadline(self._timeout_seconds)
        with self._connect(deadline) as smtp:
            deadline.arm(smtp)
            smtp.send_message(email)
        return MailReceipt(message_id=str(email["Message-ID"]), recipient=message.to)

    def _verify_blocking(self) -> dict[str, object]:
        deadline = _SessionDeadline(self._health_check_timeout_seconds)
        with self._connect(deadline) as smtp:
            deadline.arm(smtp)
            code, _ = smtp.noop()
        return {"noop_code": code}

    async def _attempt(self, request: MailMessage) -> MailReceipt:
        return await self._transport(request)

    async def _transport(self, request: MailMessage) -> MailReceipt:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(self._send_blocking, request))

    async def _probe(self) -> Mapping[str, object]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._verify_blocking)
