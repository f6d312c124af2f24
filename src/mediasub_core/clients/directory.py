from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, cast
from urllib.parse import quote

import httpx

from mediasub_core.circuit_breaker import CircuitBreakerConfig
from mediasub_core.clients.base import CallResult, OutboundClient
from mediasub_core.logging import StructuredLogger
from mediasub_core.retry import RetryBackoffPolicy, RetryExecutor

DIRECTORY_DEPENDENCY = "directory"
AUTH_HEADER = "X-Emby-Token"
HEALTH_PATH = "/System/Info/Public"



def _segment(value: str) -> str:
    return quote(value, safe="")

@dataclass(frozen=True)
class DirectoryRequest:
    """Descriptor of one media-directory API call."""

    method: str
    path: str
    json: Mapping[str, object] | None = None
    params: Mapping[str, str] | None = None


class DirectoryClient(OutboundClient[DirectoryRequest, Any]):
    """Media-directory API client with breaker, retries and health accounting."""

    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        base_url: str | None,
        api_key: str | None,
        timeout_seconds: float = 10.0,
        health_check_timeout_seconds: float = 5.0,
        retry_policy: RetryBackoffPolicy | None = None,
        breaker_config: CircuitBreakerConfig | None = None,
        executor: RetryExecutor | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        """Create a directory client.

        Args:
            client: Shared async HTTP client.
            base_url: Directory server root URL. ``None`` means not configured.
            api_key: API key sent in the ``X-Emby-Token`` header.
            timeout_seconds: Per-request timeout.
            health_check_timeout_seconds: Timeout of the public-info probe.
            retry_policy: Default retry attempts and backoff base.
            breaker_config: Circuit breaker thresholds.
            executor: Shared retry executor.
            logger: Structured logger.
        """
        super().__init__(
            DIRECTORY_DEPENDENCY,
            configured=bool(base_url and api_key),
            timeout_seconds=timeout_seconds,
            health_check_timeout_seconds=health_check_timeout_seconds,
            retry_policy=retry_policy,
            breaker_config=breaker_config,
            executor=executor,
            logger=logger,
        )
        self._client = client
        self._base_url = (base_url or "").rstrip("/")
        self._api_key = api_key or ""

    def _headers(self) -> dict[str, str]:
        return {AUTH_HEADER: self._api_key, "Content-Type": "application/json"}

    async def _transport(self, request: DirectoryRequest) -> Any:
        response = await self._client.request(
            request.method,
            f"{self._base_url}{request.path}",
            json=None if request.json is None else dict(request.json),
            params=None if request.params is None else dict(request.params),
            headers=self._headers(),
            timeout=self._timeout_seconds,
        )
        response.raise_for_status()
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def _probe(self) -> Mapping[str, object]:
        response = await self._client.get(
            f"{self._base_url}{HEALTH_PATH}",
            headers=self._headers(),
            timeout=self._health_check_timeout_seconds,
        )
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, dict):
            return {}
        info = cast(dict[str, object], payload)
        return {
            "server_name": info.get("ServerName"),
            "version": info.get("Version"),
        }

    async def create_user(self, name: str, password: str) -> CallResult[Any]:
        return await self.call(
            DirectoryRequest(
                "POST", "/Users/New", json={"Name": name, "Password": password}
            )
        )

    async def update_user_password(
        self, user_id: str, new_password: str
    ) -> CallResult[Any]:
        return await self.call(
            DirectoryRequest(
                "POST",
                f"/Users/{_segment(user_id)}/Password",
                json={"CurrentPassword": "", "NewPassword": new_password},
            )
        )

    async def get_user(self, user_id: str) -> CallResult[Any]:
        return await self.call(DirectoryRequest("GET", f"/Users/{_segment(user_id)}"))

    async def list_users(self) -> CallResult[Any]:
        return await self.call(DirectoryRequest("GET", "/Users"))

    async def update_user_policy(
        self, user_id: str, policy: Mapping[str, object]
    ) -> CallResult[Any]:
        return await self.call(
            DirectoryRequest(
                "POST", f"/Users/{_segment(user_id)}/Policy", json=policy
            )
        )

    async def disable_user(self, user_id: str) -> CallResult[Any]:
        return await self.update_user_policy(user_id, {"IsDisabled": True})

    async def enable_user(self, user_id: str) -> CallResult[Any]:
        return await self.update_user_policy(user_id, {"IsDisabled": False})

    async def delete_user(self, user_id: str) -> CallResult[Any]:
        return await self.call(
            DirectoryRequest("DELETE", f"/Users/{_segment(user_id)}")
        )

    async def list_sessions(
        self, *, active_within_seconds: int | None = None
    ) -> CallResult[Any]:
        params = None
        if active_within_seconds is not None:
            params = {"ActiveWithinSeconds": str(active_within_seconds)}
        return await self.call(DirectoryRequest("GET", "/Sessions", params=params))

    async def get_user_stats(self) -> CallResult[Any]:
        return await self.call(DirectoryRequest("GET", "/Statistics/Users"))

    async def get_playback_stats(self) -> CallResult[Any]:
        return await self.call(DirectoryRequest("GET", "/Statistics/Playback"))

    async def get_user_views(self, user_id: str) -> CallResult[Any]:
        return await self.call(
            DirectoryRequest("GET", f"/Users/{_segment(user_id)}/Views")
        )

    async def get_item_playback_info(self, item_id: str) -> CallResult[Any]:
        return await self.call(
            DirectoryRequest("GET", f"/Items/{_segment(item_id)}/PlaybackInfo")
        )
