"""Push delivery backends."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Optional, Protocol

import httpx

from aircrm_api.core.settings import settings


@dataclass(slots=True)
class PushTarget:
    """Browser push subscription as handed to a delivery backend."""

    endpoint: str
    p256dh_key: str
    auth_key: str

    def as_subscription(self) -> dict[str, Any]:
        return {"endpoint": self.endpoint, "keys": {"p256dh": self.p256dh_key, "auth": self.auth_key}}


class PushDeliveryError(Exception):
    """Raised when the push service rejects a delivery."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def subscription_gone(self) -> bool:
        return self.status_code in {404, 410}


class PushBackend(Protocol):
    """Protocol for push notification connectors."""

    async def send_push(self, target: PushTarget, payload: dict[str, Any]) -> None:
        ...


class HttpPushBackend:
    """Forward push payloads to a web-push gateway over HTTP."""

    def __init__(
        self,
        *,
        gateway_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._gateway_url = gateway_url or settings.push_gateway_url
        self._api_key = api_key if api_key is not None else settings.push_gateway_api_key
        self._timeout = timeout or settings.push_timeout_seconds
        self._http_client = http_client

    async def send_push(self, target: PushTarget, payload: dict[str, Any]) -> None:
        if not self._gateway_url:
            raise PushDeliveryError("Push gateway URL is not configured")

        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        body = {"subscription": target.as_subscription(), "payload": payload}

        close_client = False
        client = self._http_client
        if client is None:
            client = httpx.AsyncClient(timeout=self._timeout)
            close_client = True

        try:
            response = await client.post(self._gateway_url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise PushDeliveryError(f"Push gateway unreachable: {exc}") from exc
        finally:
            if close_client:
                await client.aclose()

        if response.status_code >= 300:
            raise PushDeliveryError(
                f"Push gateway responded with {response.status_code}",
                status_code=response.status_code,
            )


@dataclass
class InMemoryPushBackend:
    """In-memory push dispatcher for validation."""

    sent_messages: List[dict[str, Any]]
    failures: dict[str, int]

    def __init__(self, failures: Optional[dict[str, int]] = None) -> None:
        self.sent_messages = []
        self.failures = dict(failures or {})

    async def send_push(self, target: PushTarget, payload: dict[str, Any]) -> None:
        status_code = self.failures.get(target.endpoint)
        if status_code is not None:
            raise PushDeliveryError(f"Simulated push failure {status_code}", status_code=status_code)
        self.sent_messages.append({"endpoint": target.endpoint, "payload": payload})


__all__ = [
    "HttpPushBackend",
    "InMemoryPushBackend",
    "PushBackend",
    "PushDeliveryError",
    "PushTarget",
]
