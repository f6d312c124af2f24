"""Wiring of the external integrations for one application process."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx

from mediasub_core.clients.directory import DirectoryClient
from mediasub_core.clients.mail import MailMessage, MailTransportClient
from mediasub_core.delivery import DeliveryQueue, OutcomeCallback
from mediasub_core.logging import StructuredLogger
from mediasub_core.notifications import Notifier
from mediasub_core.readiness import ReadinessManager, make_client_check
from mediasub_core.retry import RetryExecutor
from mediasub_core.settings import DirectorySettings, MailSettings

DEFAULT_READINESS_INTERVAL_SECONDS = 30.0


@dataclass(frozen=True)
class Integrations:
    """Clients, mail queue and readiness state shared by the application."""

    directory: DirectoryClient
    mail: MailTransportClient
    mail_queue: DeliveryQueue[MailMessage]
    notifier: Notifier
    readiness: ReadinessManager

    async def aclose(self) -> None:
        await self.readiness.stop()
        await self.mail_queue.close()


def build_integrations(
    *,
    http_client: httpx.AsyncClient,
    directory_settings: DirectorySettings,
    mail_settings: MailSettings,
    executor: RetryExecutor | None = None,
    logger: StructuredLogger | None = None,
    app_url: str = "http://localhost:3000",
    on_mail_outcome: OutcomeCallback | None = None,
    readiness_interval_seconds: float = DEFAULT_READINESS_INTERVAL_SECONDS,
) -> Integrations:
    """Build both dependency clients from settings.

    The directory is a required readiness dependency; mail is optional and
    only annotates readiness when it is not configured.
    """
    shared_executor = RetryExecutor(logger=logger) if executor is None else executor
    directory = DirectoryClient(
        client=http_client,
        base_url=directory_settings.url,
        api_key=directory_settings.api_key,
        timeout_seconds=directory_settings.timeout_ms / 1000.0,
        health_check_timeout_seconds=(
            directory_settings.health_check_timeout_ms / 1000.0
        ),
        retry_policy=directory_settings.retry.to_policy(),
        breaker_config=directory_settings.breaker.to_config(),
        executor=shared_executor,
        logger=logger,
    )
    mail = MailTransportClient(
        host=mail_settings.host,
        user=mail_settings.user,
        password=mail_settings.password,
        port=mail_settings.port,
        secure=mail_settings.secure,
        starttls=mail_settings.starttls,
        from_name=mail_settings.from_name,
        from_address=mail_settings.from_address,
        timeout_seconds=mail_settings.timeout_ms / 1000.0,
        health_check_timeout_seconds=mail_settings.health_check_timeout_ms / 1000.0,
        retry_policy=mail_settings.retry.to_policy(),
        breaker_config=mail_settings.breaker.to_config(),
        executor=shared_executor,
        logger=logger,
    )
    mail_queue = DeliveryQueue(mail, on_outcome=on_mail_outcome, logger=logger)
    readiness = ReadinessManager(
        (make_client_check(directory), make_client_check(mail, required=False)),
        interval_seconds=readiness_interval_seconds,
        logger=logger,
    )
    return Integrations(
        directory=directory,
        mail=mail,
        mail_queue=mail_queue,
        notifier=Notifier(mail_queue, app_url=app_url),
        readiness=readiness,
    )


@asynccontextmanager
async def open_integrations(
    *,
    directory_settings: DirectorySettings | None = None,
    mail_settings: MailSettings | None = None,
    logger: StructuredLogger | None = None,
    app_url: str = "http://localhost:3000",
    http_client: httpx.AsyncClient | None = None,
) -> AsyncIterator[Integrations]:
    """Build integrations and release the HTTP client and mail queue on exit.

    Settings default to the process environment. A caller-supplied
    ``http_client`` is left open.
    """
    owns_client = http_client is None
    client = httpx.AsyncClient() if http_client is None else http_client
    try:
        integrations = build_integrations(
            http_client=client,
            directory_settings=directory_settings or DirectorySettings(),
            mail_settings=mail_settings or MailSettings(),
            logger=logger,
            app_url=app_url,
        )
        try:
            yield integrations
        finally:
            await integrations.aclose()
    finally:
        if owns_client:
            await client.aclose()
