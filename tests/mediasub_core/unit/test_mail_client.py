from __future__ import annotations

import smtplib
import threading
import time
from email.message import EmailMessage

import pytest

from mediasub_core.circuit_breaker import CircuitBreakerConfig, CircuitState
from mediasub_core.classifier import (
    REASON_AUTH_FAILURE,
    REASON_SERVER_ERROR,
    REASON_TIMEOUT,
)
from mediasub_core.clients import MailMessage, MailReceipt, MailTransportClient
from mediasub_core.delivery import DeliveryOutcome, DeliveryQueue, QueueStats
from mediasub_core.errors import (
    ClassifiedTransportError,
    ConfigurationError,
    InvalidRequestError,
)
from mediasub_core.health import HealthStatus
from mediasub_core.retry import RetryBackoffPolicy, RetryExecutor
from tests.mediasub_core.support.fakes import FakeLogger, RecordingSleep

pytestmark = pytest.mark.asyncio


class _FakeSMTP:
    """In-memory stand-in for ``smtplib.SMTP`` and ``smtplib.SMTP_SSL``."""

    instances: list[_FakeSMTP] = []
    login_error: Exception | None = None
    send_errors: list[Exception] = []
    sock: object | None = None

    def __init__(self, host: str, port: int, timeout: float) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        self.calls: list[str] = []
        self.sent: list[EmailMessage] = []
        self.closed = False
        _FakeSMTP.instances.append(self)

    def __enter__(self) -> _FakeSMTP:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def starttls(self) -> None:
        self.calls.append("starttls")

    def login(self, user: str, password: str) -> None:
        self.calls.append(f"login:{user}")
        if _FakeSMTP.login_error is not None:
            raise _FakeSMTP.login_error

    def send_message(self, message: EmailMessage) -> dict[str, object]:
        self.calls.append("send_message")
        if _FakeSMTP.send_errors:
            raise _FakeSMTP.send_errors.pop(0)
        self.sent.append(message)
        return {}

    def noop(self) -> tuple[int, bytes]:
        self.calls.append("noop")
        return 250, b"OK"

    def close(self) -> None:
        self.closed = True


class _FakeSMTPSSL(_FakeSMTP):
    pass


@pytest.fixture(autouse=True)
def fake_smtp(monkeypatch: pytest.MonkeyPatch) -> type[_FakeSMTP]:
    _FakeSMTP.instances = []
    _FakeSMTP.login_error = None
    _FakeSMTP.send_errors = []
    monkeypatch.setattr(smtplib, "SMTP", _FakeSMTP)
    monkeypatch.setattr(smtplib, "SMTP_SSL", _FakeSMTPSSL)
    return _FakeSMTP


def _build_client(
    *,
    host: str | None = "smtp.test",
    secure: bool = False,
    attempts: int = 3,
    sleep: RecordingSleep | None = None,
    timeout_seconds: float = 20.0,
    breaker_config: CircuitBreakerConfig | None = None,
) -> MailTransportClient:
    logger = FakeLogger()
    return MailTransportClient(
        host=host,
        user="mailer@example.com",
        password="app-password",
        port=465 if secure else 587,
        secure=secure,
        from_name="Rflix API",
        timeout_seconds=timeout_seconds,
        breaker_config=breaker_config,
        retry_policy=RetryBackoffPolicy(attempts=attempts, base_delay_seconds=1.0),
        executor=RetryExecutor(
            sleep=RecordingSleep() if sleep is None else sleep,
            logger=logger,
        ),
        logger=logger,
    )


_MESSAGE = MailMessage(to="user@example.com", subject="Hi", html="<p>Hello</p>")


async def test_send_uses_starttls_login_and_returns_receipt() -> None:
    client = _build_client()

    result = await client.call(_MESSAGE)

    assert isinstance(result.data, MailReceipt)
    assert result.data.recipient == "user@example.com"
    smtp = _FakeSMTP.instances[0]
    assert (smtp.host, smtp.port) == ("smtp.test", 587)
    assert 19.0 < smtp.timeout <= 20.0
    assert smtp.calls == ["starttls", "login:mailer@example.com", "send_message"]
    assert smtp.closed is True
    sent = smtp.sent[0]
    assert sent["To"] == "user@example.com"
    assert sent["From"] == "Rflix API <mailer@example.com>"
    assert sent["Message-ID"] == result.data.message_id
    assert sent.get_content_subtype() == "html"


async def test_secure_connection_skips_starttls() -> None:
    client = _build_client(secure=True)

    await client.call(_MESSAGE)

    smtp = _FakeSMTP.instances[0]
    assert isinstance(smtp, _FakeSMTPSSL)
    assert "starttls" not in smtp.calls


async def test_missing_host_means_not_configured() -> None:
    client = _build_client(host=None)

    with pytest.raises(ConfigurationError):
        await client.call(_MESSAGE)

    assert _FakeSMTP.instances == []
    assert client.health_status().status == HealthStatus.NOT_CONFIGURED


async def test_transient_disconnect_is_retried_on_a_fresh_connection() -> None:
    _FakeSMTP.send_errors = [smtplib.SMTPServerDisconnected("dropped")]
    sleep = RecordingSleep()
    client = _build_client(sleep=sleep)

    result = await client.call(_MESSAGE)

    assert result.attempts == 2
    assert sleep.delays == [1.0]
    assert len(_FakeSMTP.instances) == 2
    assert all(smtp.closed for smtp in _FakeSMTP.instances)


async def test_exhausted_retries_raise_classified_error() -> None:
    _FakeSMTP.send_errors = [smtplib.SMTPServerDisconnected("dropped")] * 2
    client = _build_client(attempts=2)

    with pytest.raises(ClassifiedTransportError) as exc_info:
        await client.call(_MESSAGE)

    assert exc_info.value.reason == REASON_SERVER_ERROR
    assert exc_info.value.attempts == 2
    assert client.health_status().failed_requests == 2


async def test_login_rejection_is_auth_failure_and_closes_connection() -> None:
    _FakeSMTP.login_error = smtplib.SMTPAuthenticationError(535, b"bad creds")
    client = _build_client()

    with pytest.raises(ClassifiedTransportError) as exc_info:
        await client.call(_MESSAGE)

    assert exc_info.value.reason == REASON_AUTH_FAILURE
    assert exc_info.value.attempts == 1
    assert _FakeSMTP.instances[0].closed is True


async def test_health_check_verifies_with_noop() -> None:
    client = _build_client()

    probe = await client.perform_health_check()

    assert probe.healthy is True
    assert dict(probe.data) == {"noop_code": 250}
    assert _FakeSMTP.instances[0].calls[-1] == "noop"
    assert client.health_status().status == HealthStatus.HEALTHY


async def test_health_check_failure_is_unhealthy() -> None:
    _FakeSMTP.login_error = smtplib.SMTPAuthenticationError(535, b"bad creds")
    client = _build_client()

    probe = await client.perform_health_check()

    assert probe.healthy is False
    assert probe.reason is not None
    assert probe.reason.startswith("auth-failure: SMTPAuthenticationError")
    assert client.health_status().status == HealthStatus.UNHEALTHY


async def test_build_message_defaults_sender_address_to_user() -> None:
    message = _build_client().build_message(_MESSAGE)

    assert message["Subject"] == "Hi"
    assert "mailer@example.com" in message["From"]


class _SlowSMTP(_FakeSMTP):
    """Relay that accepts mail only after a delay longer than the timeout."""

    send_delay = 0.3
    in_flight = 0
    max_in_flight = 0
    _lock = threading.Lock()

    def send_message(self, message: EmailMessage) -> dict[str, object]:
        with _SlowSMTP._lock:
            _SlowSMTP.in_flight += 1
            _SlowSMTP.max_in_flight = max(_SlowSMTP.max_in_flight, _SlowSMTP.in_flight)
        try:
            time.sleep(self.send_delay)
            return super().send_message(message)
        finally:
            with _SlowSMTP._lock:
                _SlowSMTP.in_flight -= 1


class _SlowLoginSMTP(_FakeSMTP):
    def login(self, user: str, password: str) -> None:
        time.sleep(0.2)
        super().login(user, password)


async def test_slow_relay_sends_each_message_once_and_in_order(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _SlowSMTP.in_flight = 0
    _SlowSMTP.max_in_flight = 0
    monkeypatch.setattr(smtplib, "SMTP", _SlowSMTP)
    client = _build_client(attempts=2, timeout_seconds=0.1)
    outcomes: list[DeliveryOutcome] = []
    queue: DeliveryQueue[MailMessage] = DeliveryQueue(
        client,
        on_outcome=outcomes.append,
        logger=FakeLogger(),
    )

    queue.enqueue(MailMessage(to="a@example.com", subject="A", html="<p>a</p>"))
    queue.enqueue(MailMessage(to="b@example.com", subject="B", html="<p>b</p>"))
    await queue.join()

    recipients = [
        str(sent["To"]) for smtp in _FakeSMTP.instances for sent in smtp.sent
    ]
    assert recipients == ["a@example.com", "b@example.com"]
    assert _SlowSMTP.max_in_flight == 1
    assert [outcome.attempts for outcome in outcomes] == [1, 1]
    assert queue.stats() == QueueStats(
        size=0,
        processing=False,
        delivered=2,
        failed=0,
    )


async def test_session_past_its_deadline_fails_as_timeout_without_sending(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(smtplib, "SMTP", _SlowLoginSMTP)
    client = _build_client(attempts=1, timeout_seconds=0.1)

    with pytest.raises(ClassifiedTransportError) as exc_info:
        await client.call(_MESSAGE)

    assert exc_info.value.reason == REASON_TIMEOUT
    smtp = _FakeSMTP.instances[0]
    assert "send_message" not in smtp.calls
    assert smtp.sent == []
    assert smtp.closed is True


async def test_header_injection_is_rejected_before_any_attempt() -> None:
    client = _build_client(
        attempts=3,
        breaker_config=CircuitBreakerConfig(volume_threshold=2),
    )
    message = MailMessage(
        to="user@example.com",
        subject="Limit Warning - x\r\nBcc: evil@example.com",
        html="<p>Hello</p>",
    )

    for _ in range(3):
        with pytest.raises(InvalidRequestError):
            await client.call(message)

    assert _FakeSMTP.instances == []
    assert client.breaker.state == CircuitState.CLOSED
    assert client.health_status().total_requests == 0
