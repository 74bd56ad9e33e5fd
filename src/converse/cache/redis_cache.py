"""
Redis-backed cache store.

Values are stored as JSON strings with a native Redis expiry (SET ... EX),
so TTL enforcement is done by the server. Pattern operations use SCAN with
MATCH rather than KEYS to avoid blocking the server on large keyspaces.
"""

from __future__ import annotations

from typing import Any

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from converse.cache.base import CacheProtocol, dumps, loads, normalize_ttl
from converse.exceptions import CacheError
from converse.logging import get_logger

logger = get_logger(__name__)

SCAN_BATCH_SIZE = 500


class RedisKVCache(CacheProtocol):
    """Cache store backed by a Redis server."""

    name = "redis"

    def __init__(self, url: str | None = None, client: aioredis.Redis | None = None) -> None:
        """Initialize Redis cache.

        Args:
            url: Redis connection URL (redis:// or rediss://).
            client: Pre-built client, used instead of url when given.
        """
        if client is None and not url:
            raise CacheError("Redis cache needs a URL or a client")
        self.url = url
        self._client = client

    def _get_client(self) -> aioredis.Redis:
        """Get or create the Redis client."""
        if self._client is None:
            self._client = aioredis.from_url(self.url, decode_responses=False)
            logger.info("Redis client created")
        return self._client

    def _wrap(self, operation: str, key: str, error: Exception) -> CacheError:
        return CacheError(
            f"Redis {operation} failed",
            context={"key": key, "operation": operation, "error": str(error)},
        )

    async def get(self, key: str) -> Any | None:
        try:
            data = await self._get_client().get(key)
        except RedisError as e:
            raise self._wrap("get", key, e) from e
        if data is None:
            return None
        return loads(key, data)

    async def get_many(self, keys: list[str]) -> list[Any | None]:
        if not keys:
            return []
        try:
            values = await self._get_client().mget(keys)
        except RedisError as e:
            raise self._wrap("mget", ",".join(keys[:5]), e) from e
        return [loads(key, data) if data is not None else None for key, data in zip(keys, values)]

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        payload = dumps(key, value)
        ttl = normalize_ttl(ttl_seconds)
        try:
            await self._get_client().set(key, payload, ex=ttl)
        except RedisError as e:
            raise self._wrap("set", key, e) from e

    async def delete(self, key: str) -> bool:
        try:
            removed = await self._get_client().delete(key)
        except RedisError as e:
            raise self._wrap("delete", key, e) from e
        return removed > 0

    async def exists(self, key: str) -> bool:
        try:
            return await self._get_client().exists(key) == 1
        except RedisError as e:
            raise self._wrap("exists", key, e) from e

    async def scan(self, pattern: str = "*") -> list[str]:
        keys: list[str] = []
        try:
            async for raw in self._get_client().scan_iter(match=pattern, count=SCAN_BATCH_SIZE):
                keys.append(raw.decode("utf-8") if isinstance(raw, bytes) else raw)
        except RedisError as e:
            raise self._wrap("scan", pattern, e) from e
        return keys

    async def ping(self) -> bool:
        try:
            return bool(await self._get_client().ping())
        except RedisError as e:
            logger.warning("Redis ping failed", error=str(e))
            return False

    async def close(self) -> None:
        """Close the Redis connection pool."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
