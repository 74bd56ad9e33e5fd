"""
Client-side polling of cached endpoints.

CachedPoller keeps one endpoint's latest payload fresh for a long-running
client: it fetches on start, re-fetches every ``interval`` seconds (when
non-zero) and on refresh(), collapses fetches that land inside
``dedupe_interval`` and calls ``on_update`` only when the payload changed.

The service's cache store stays authoritative. The poller holds the last
payload only to detect changes and never writes anything back.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from typing import Any, Callable

import httpx

from converse.logging import get_logger

logger = get_logger(__name__)

UpdateCallback = Callable[[Any], Any]
ErrorCallback = Callable[[Exception], Any]


async def _call(callback: Callable[..., Any] | None, *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class CachedPoller:
    """Polls one cached endpoint on an asyncio task."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        path: str,
        interval: float = 0.0,
        dedupe_interval: float = 2.0,
        on_update: UpdateCallback | None = None,
        on_error: ErrorCallback | None = None,
        params: dict[str, Any] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the poller.

        Args:
            client: HTTP client pointed at the cache service, carrying auth headers.
            path: Endpoint path, e.g. "/conversations".
            interval: Seconds between polls; 0 fetches only on start and refresh().
            dedupe_interval: Fetches within this many seconds of the last one
                reuse its result.
            on_update: Called with the new payload whenever it changes.
            on_error: Called with the exception when a fetch fails.
            params: Query parameters sent with every fetch.
            clock: Monotonic time source, injectable for tests.
        """
        self.client = client
        self.path = path
        self.interval = interval
        self.dedupe_interval = dedupe_interval
        self.on_update = on_update
        self.on_error = on_error
        self.params = params
        self._clock = clock

        self.data: Any = None
        self.error: Exception | None = None
        self.fetch_count = 0
        self._has_data = False
        self._last_fetch: float | None = None
        self._inflight: asyncio.Task[Any] | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _deduped(self) -> bool:
        if self._last_fetch is None:
            return False
        return self._clock() - self._last_fetch < self.dedupe_interval

    async def _fetch_once(self) -> Any:
        self._last_fetch = self._clock()
        self.fetch_count += 1
        try:
            response = await self.client.get(self.path, params=self.params)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            self.error = e
            logger.warning("Poll failed", path=self.path, error=str(e))
            await _call(self.on_error, e)
            return self.data

        self.error = None
        if not self._has_data or payload != self.data:
            self.data = payload
            self._has_data = True
            await _call(self.on_update, payload)
        return self.data

    async def fetch(self, force: bool = False) -> Any:
        """Fetch the endpoint unless a fetch just happened.

        Concurrent callers share one in-flight request.

        Args:
            force: Skip the dedupe window.

        Returns:
            The latest payload (the previous one if this fetch failed).
        """
        if self._inflight is not None and not self._inflight.done():
            return await asyncio.shield(self._inflight)
        if not force and self._deduped():
            return self.data

        inflight = self._inflight = asyncio.ensure_future(self._fetch_once())
        try:
            return await asyncio.shield(inflight)
        finally:
            if self._inflight is inflight and inflight.done():
                self._inflight = None

    async def refresh(self) -> Any:
        """Revalidate now, as on window focus or reconnect."""
        return await self.fetch()

    async def _run(self) -> None:
        await self.fetch(force=True)
        if self.interval <= 0:
            return
        while True:
            await asyncio.sleep(self.interval)
            await self.fetch()

    def start(self) -> None:
        """Start polling on a background task."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"poll:{self.path}")

    async def stop(self) -> None:
        """Cancel the polling task and any in-flight fetch."""
        for task in (self._task, self._inflight):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._task = None
        self._inflight = None

    async def __aenter__(self) -> CachedPoller:
        self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()


# Endpoint factories with per-endpoint polling defaults


def conversations_poller(client: httpx.AsyncClient, **kwargs: Any) -> CachedPoller:
    kwargs.setdefault("dedupe_interval", 2.0)
    return CachedPoller(client, "/conversations", **kwargs)


def current_user_poller(client: httpx.AsyncClient, **kwargs: Any) -> CachedPoller:
    kwargs.setdefault("dedupe_interval", 5.0)
    return CachedPoller(client, "/user/current", **kwargs)


def friends_poller(client: httpx.AsyncClient, **kwargs: Any) -> CachedPoller:
    kwargs.setdefault("dedupe_interval", 3.0)
    return CachedPoller(client, "/friends", **kwargs)


def friend_requests_poller(client: httpx.AsyncClient, **kwargs: Any) -> CachedPoller:
    kwargs.setdefault("dedupe_interval", 2.0)
    return CachedPoller(client, "/friends/requests", **kwargs)


def messages_poller(
    client: httpx.AsyncClient, conversation_id: str, **kwargs: Any
) -> CachedPoller:
    kwargs.setdefault("dedupe_interval", 1.0)
    return CachedPoller(client, f"/messages/{conversation_id}", **kwargs)


def presence_poller(client: httpx.AsyncClient, user_id: str, **kwargs: Any) -> CachedPoller:
    kwargs.setdefault("interval", 30.0)
    kwargs.setdefault("dedupe_interval", 1.0)
    return CachedPoller(client, f"/presence/{user_id}", **kwargs)


def stories_poller(client: httpx.AsyncClient, **kwargs: Any) -> CachedPoller:
    kwargs.setdefault("dedupe_interval", 5.0)
    return CachedPoller(client, "/stories", **kwargs)


def rooms_poller(client: httpx.AsyncClient, room_type: str = "user", **kwargs: Any) -> CachedPoller:
    kwargs.setdefault("dedupe_interval", 3.0)
    kwargs.setdefault("params", {"type": room_type})
    return CachedPoller(client, "/rooms", **kwargs)
