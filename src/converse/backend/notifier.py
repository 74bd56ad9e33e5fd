"""
Invalidation webhook client.

Backend-side mutation hooks call InvalidationNotifier.notify() after a write
so this service drops the affected cache entries. Notification failures are
logged and never raised: the write that triggered them has already
succeeded, and the stale entries expire with their TTL.
"""

from __future__ import annotations

from typing import Any

import httpx

from converse.cache.invalidation import InvalidationEvent, event_to_body
from converse.logging import get_logger

logger = get_logger(__name__)

WEBHOOK_PATH = "/cache/invalidate"


class InvalidationNotifier:
    """Posts invalidation events to the cache service webhook."""

    def __init__(
        self,
        app_url: str,
        webhook_secret: str | None = None,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.app_url = app_url.rstrip("/")
        self.webhook_secret = webhook_secret
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.webhook_secret:
                headers["X-Webhook-Secret"] = self.webhook_secret
            self._client = httpx.AsyncClient(
                base_url=self.app_url,
                headers=headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def notify(self, event_type: str, **fields: Any) -> bool:
        """Send one event. Returns False when the webhook call failed."""
        body = {"type": event_type, **fields}
        try:
            client = await self._get_client()
            response = await client.post(WEBHOOK_PATH, json=body)
        except httpx.HTTPError as e:
            logger.error("Cache invalidation error", type=event_type, error=str(e))
            return False

        if response.is_error:
            logger.error(
                "Cache invalidation failed",
                type=event_type,
                status_code=response.status_code,
                body=response.text[:200],
            )
            return False
        return True

    async def notify_event(self, event: InvalidationEvent) -> bool:
        """Send a typed event."""
        body = event_to_body(event)
        event_type = body.pop("type")
        return await self.notify(event_type, **body)
