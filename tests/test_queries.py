"""
Tests for cached backend reads and cache warming.
"""

from __future__ import annotations

from typing import TYPE_CHECKING
from unittest.mock import MagicMock

import pytest

from converse import queries as queries_module
from converse.backend.client import BackendClient
from converse.cache.invalidation import InvalidationDispatcher
from converse.cache.kv_cache import InMemoryKVCache
from converse.cache.service import CacheService
from converse.exceptions import NotFoundError
from converse.queries import CachedQueries, user_id_of
from converse.types import Caller
from converse.warmer import refresh_user_cache, warm_user_cache

if TYPE_CHECKING:
    from tests.conftest import BackendStub

CALLER = Caller(auth_id="auth|ada", token="good-token")


@pytest.fixture
def queries(cache_service: CacheService, backend_client: BackendClient) -> CachedQueries:
    return CachedQueries(cache_service, backend_client)


class TestCachedQueries:
    @pytest.mark.asyncio
    async def test_presence_many_loads_missing_in_one_call(
        self, queries: CachedQueries, backend_stub: BackendStub
    ) -> None:
        backend_stub.values["presence:getUserStatus"] = {"status": "away"}
        backend_stub.values["presence:getUsersStatuses"] = lambda args: [
            {"status": f"online:{uid}"} for uid in args["userIds"]
        ]
        await queries.presence("u2", CALLER)

        statuses = await queries.presence_many(["u1", "u2", "u3"], CALLER)

        assert statuses == [{"status": "online:u1"}, {"status": "away"}, {"status": "online:u3"}]
        assert backend_stub.count("presence:getUsersStatuses") == 1
        assert backend_stub.calls[-1]["args"] == {"userIds": ["u1", "u3"]}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reply", [[{"status": "online"}], None, {"status": "online"}])
    async def test_presence_many_short_reply_pads_with_none(
        self,
        queries: CachedQueries,
        backend_stub: BackendStub,
        memory_store: InMemoryKVCache,
        monkeypatch: pytest.MonkeyPatch,
        reply: object,
    ) -> None:
        logger = MagicMock()
        monkeypatch.setattr(queries_module, "logger", logger)
        backend_stub.values["presence:getUsersStatuses"] = reply

        statuses = await queries.presence_many(["u1", "u2"], CALLER)

        expected_first = reply[0] if isinstance(reply, list) else None
        assert statuses == [expected_first, None]
        assert memory_store.entry("presence:u2") is None
        logger.warning.assert_called_once()
        assert logger.warning.call_args.kwargs["path"] == "presence:getUsersStatuses"
        assert logger.warning.call_args.kwargs["expected"] == 2

    @pytest.mark.asyncio
    async def test_link_preview_shared_across_callers(
        self, queries: CachedQueries, backend_stub: BackendStub
    ) -> None:
        backend_stub.values["linkPreviews:fetchLinkPreview"] = {"title": "Example"}
        other = Caller(auth_id="auth|bob", token="other-token")

        await queries.link_preview("https://example.com", CALLER)
        preview = await queries.link_preview("https://example.com", other)

        assert preview == {"title": "Example"}
        assert backend_stub.count("linkPreviews:fetchLinkPreview") == 1

    @pytest.mark.asyncio
    async def test_message_pages(
        self, queries: CachedQueries, backend_stub: BackendStub, memory_store: InMemoryKVCache
    ) -> None:
        backend_stub.values["messages:get"] = []

        await queries.messages("c1", 0, CALLER)
        await queries.messages("c1", 1, CALLER)

        assert backend_stub.calls[0]["args"] == {"id": "c1", "page": 0, "limit": 50}
        assert memory_store.entry("messages_recent:c1") is not None
        assert memory_store.entry("messages:c1:1") is not None

    @pytest.mark.asyncio
    async def test_unread_count_expires_after_a_day(
        self, queries: CachedQueries, backend_stub: BackendStub, memory_store: InMemoryKVCache
    ) -> None:
        backend_stub.values["conversations:get"] = [
            {"conversation": {"_id": "c1"}, "unreadCount": 4}
        ]

        assert await queries.unread_count("u1", "c1", CALLER) == 4
        assert memory_store.entry("unread:u1:c1").ttl_seconds == 86400

    @pytest.mark.asyncio
    async def test_missing_room(self, queries: CachedQueries, backend_stub: BackendStub) -> None:
        backend_stub.values["rooms:getRoomDetails"] = None

        with pytest.raises(NotFoundError):
            await queries.room("r1", CALLER)

    def test_user_id_of(self) -> None:
        assert user_id_of({"_id": "u1"}) == "u1"
        with pytest.raises(NotFoundError):
            user_id_of({"name": "Ada"})


class TestWarmer:
    @pytest.mark.asyncio
    async def test_warm_continues_past_failures(
        self, queries: CachedQueries, backend_stub: BackendStub
    ) -> None:
        backend_stub.values.update(
            {
                "conversations:get": [{"conversation": {"_id": "c1"}, "unreadCount": 0}],
                "friends:get": [],
                "messages:get": [],
            }
        )

        result = await warm_user_cache(queries, "u1", CALLER)

        assert {"user", "conversations", "friends", "messages:c1"} <= set(result.warmed)
        assert "stories" in result.failed
        assert set(result.warmed).isdisjoint(result.failed)

    @pytest.mark.asyncio
    async def test_refresh_replaces_stale_entries(
        self,
        queries: CachedQueries,
        cache_service: CacheService,
        backend_stub: BackendStub,
    ) -> None:
        backend_stub.values.update(
            {
                "conversations:get": [],
                "requests:get": [],
                "requests:count": 2,
                "presence:getUserStatus": {"status": "online"},
            }
        )
        await cache_service.set("friend_request_count:u1", 0)

        result = await refresh_user_cache(
            queries, InvalidationDispatcher(cache_service), "u1", CALLER
        )

        assert result.failed == []
        assert await cache_service.get("friend_request_count:u1") == 2
