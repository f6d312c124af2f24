from __future__ import annotations

import httpx
import pytest
from pytest_httpx import HTTPXMock

from mediasub_core.health import HealthStatus
from mediasub_core.integrations import build_integrations, open_integrations
from mediasub_core.readiness import REASON_NOT_CONFIGURED
from mediasub_core.settings import (
    BreakerSettings,
    DirectorySettings,
    MailSettings,
    RetrySettings,
)
from tests.mediasub_core.support.fakes import FakeLogger

pytestmark = pytest.mark.asyncio

_BASE_URL = "http://directory.test:8096"


def _directory_settings(**overrides: object) -> DirectorySettings:
    values: dict[str, object] = {
        "url": _BASE_URL,
        "api_key": "key",
        "timeout_ms": 2_000,
        "health_check_timeout_ms": 1_000,
        "breaker": BreakerSettings(volume_threshold=2),
        "retry": RetrySettings(max_attempts=2, base_delay_ms=0),
    }
    values.update(overrides)
    return DirectorySettings.model_validate(values)


def _mail_settings(**overrides: object) -> MailSettings:
    return MailSettings.model_validate(overrides)


async def test_build_integrations_wires_clients_from_settings() -> None:
    async with httpx.AsyncClient() as http_client:
        integrations = build_integrations(
            http_client=http_client,
            directory_settings=_directory_settings(),
            mail_settings=_mail_settings(host="smtp.test", user="u", password="p"),
            logger=FakeLogger(),
        )

        assert integrations.directory.is_configured is True
        assert integrations.directory.retry_policy.attempts == 2
        assert integrations.directory.breaker.config.volume_threshold == 2
        assert integrations.mail.is_configured is True
        assert integrations.mail_queue.stats().size == 0
        await integrations.aclose()


async def test_unconfigured_mail_does_not_block_readiness(
    httpx_mock: HTTPXMock,
) -> None:
    httpx_mock.add_response(
        method="GET",
        url=f"{_BASE_URL}/System/Info/Public",
        json={"ServerName": "media", "Version": "10.8"},
    )

    async with httpx.AsyncClient() as http_client:
        integrations = build_integrations(
            http_client=http_client,
            directory_settings=_directory_settings(),
            mail_settings=_mail_settings(),
            logger=FakeLogger(),
        )
        snapshot = await integrations.readiness.refresh()
        await integrations.aclose()

    assert snapshot.ready is True
    mail_result = snapshot.dependency("mail")
    assert mail_result is not None
    assert mail_result.reason == REASON_NOT_CONFIGURED
    assert integrations.mail.health_status().status == HealthStatus.NOT_CONFIGURED


async def test_open_integrations_closes_owned_http_client(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    for key in ("MEDIA_DIRECTORY_URL", "MEDIA_DIRECTORY_API_KEY", "SMTP_HOST"):
        monkeypatch.delenv(key, raising=False)
    closed: list[bool] = []
    original_aclose = httpx.AsyncClient.aclose

    async def _tracking_aclose(self: httpx.AsyncClient) -> None:
        closed.append(True)
        await original_aclose(self)

    monkeypatch.setattr(httpx.AsyncClient, "aclose", _tracking_aclose)

    async with open_integrations(logger=FakeLogger()) as integrations:
        assert integrations.directory.is_configured is False
        assert integrations.mail.is_configured is False

    assert closed == [True]


async def test_open_integrations_leaves_caller_client_open() -> None:
    async with httpx.AsyncClient() as http_client:
        async with open_integrations(
            directory_settings=_directory_settings(),
            mail_settings=_mail_settings(),
            logger=FakeLogger(),
            http_client=http_client,
        ):
            pass

        assert http_client.is_closed is False
