"""
Push Notifier - fire-and-forget "notify(user, title, body)" collaborator.

Delivery happens out of band (a push relay owns device tokens); callers
must never let a notification failure affect the operation that caused it.
"""

from typing import Protocol

import httpx
from structlog import get_logger

logger = get_logger(__name__)


class Notifier(Protocol):
    async def notify(self, account_id: str, title: str, body: str, url_path: str = "/") -> None:
        """Deliver a notification; may raise on failure."""
        ...

    async def close(self) -> None: ...


class HttpPushNotifier:
    """Posts notifications as JSON to a push relay service."""

    def __init__(
        self,
        relay_url: str,
        timeout_seconds: float = 5.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.relay_url = relay_url
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Lazy-initialized HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    async def notify(self, account_id: str, title: str, body: str, url_path: str = "/") -> None:
        response = await self.http_client.post(
            self.relay_url,
            json={
                "account_id": account_id,
                "title": title,
                "body": body,
                "url": url_path,
            },
        )
        response.raise_for_status()
        logger.info("push_notification_sent", account_id=account_id)

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
