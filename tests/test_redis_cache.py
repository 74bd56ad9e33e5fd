"""
Tests for the Redis cache store, against a mocked redis.asyncio client.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import orjson
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from converse.cache.redis_cache import RedisKVCache
from converse.exceptions import CacheError


@pytest.fixture
def redis_client() -> MagicMock:
    client = MagicMock()
    client.get = AsyncMock(return_value=None)
    client.mget = AsyncMock(return_value=[])
    client.set = AsyncMock(return_value=True)
    client.delete = AsyncMock(return_value=1)
    client.exists = AsyncMock(return_value=1)
    client.ping = AsyncMock(return_value=True)
    client.aclose = AsyncMock()
    return client


@pytest.fixture
def store(redis_client: MagicMock) -> RedisKVCache:
    return RedisKVCache(client=redis_client)


class TestRedisKVCache:
    def test_requires_url_or_client(self) -> None:
        with pytest.raises(CacheError):
            RedisKVCache()

    @pytest.mark.asyncio
    async def test_set_uses_native_expiry(
        self, store: RedisKVCache, redis_client: MagicMock
    ) -> None:
        await store.set("presence:u1", {"status": "online"}, 45)

        redis_client.set.assert_awaited_once_with(
            "presence:u1", orjson.dumps({"status": "online"}), ex=45
        )

    @pytest.mark.asyncio
    async def test_set_without_ttl(self, store: RedisKVCache, redis_client: MagicMock) -> None:
        await store.set("unread:u1:c1", 0, None)

        redis_client.set.assert_awaited_once_with("unread:u1:c1", b"0", ex=None)

    @pytest.mark.asyncio
    async def test_get_decodes_json(self, store: RedisKVCache, redis_client: MagicMock) -> None:
        redis_client.get.return_value = b'{"status":"away"}'

        assert await store.get("presence:u1") == {"status": "away"}

    @pytest.mark.asyncio
    async def test_get_miss(self, store: RedisKVCache) -> None:
        assert await store.get("presence:u1") is None

    @pytest.mark.asyncio
    async def test_get_many(self, store: RedisKVCache, redis_client: MagicMock) -> None:
        redis_client.mget.return_value = [b"1", None, b'"x"']

        assert await store.get_many(["a", "b", "c"]) == [1, None, "x"]
        assert await store.get_many([]) == []

    @pytest.mark.asyncio
    async def test_delete(self, store: RedisKVCache, redis_client: MagicMock) -> None:
        assert await store.delete("k") is True
        redis_client.delete.return_value = 0
        assert await store.delete("k") is False

    @pytest.mark.asyncio
    async def test_scan_decodes_keys(self, store: RedisKVCache, redis_client: MagicMock) -> None:
        async def scan_iter(match: str, count: int):
            for key in (b"search:u1:all:a", b"search:u1:conv.c1:b"):
                yield key

        redis_client.scan_iter = scan_iter

        assert await store.scan("search:u1:*") == ["search:u1:all:a", "search:u1:conv.c1:b"]

    @pytest.mark.asyncio
    async def test_errors_are_wrapped(self, store: RedisKVCache, redis_client: MagicMock) -> None:
        redis_client.get.side_effect = RedisConnectionError("connection refused")
        redis_client.set.side_effect = RedisConnectionError("connection refused")
        redis_client.delete.side_effect = RedisConnectionError("connection refused")

        with pytest.raises(CacheError) as exc_info:
            await store.get("presence:u1")
        assert exc_info.value.context["operation"] == "get"

        with pytest.raises(CacheError):
            await store.set("presence:u1", 1, 45)
        with pytest.raises(CacheError):
            await store.delete("presence:u1")

    @pytest.mark.asyncio
    async def test_ping_failure_returns_false(
        self, store: RedisKVCache, redis_client: MagicMock
    ) -> None:
        redis_client.ping.side_effect = RedisConnectionError("down")

        assert await store.ping() is False

    @pytest.mark.asyncio
    async def test_close(self, store: RedisKVCache, redis_client: MagicMock) -> None:
        await store.close()

        redis_client.aclose.assert_awaited_once()
