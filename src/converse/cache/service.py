"""
Cache access facade.

CacheService wraps a CacheProtocol store with the read-through contract used
by every read endpoint:

- get_or_set(): return a live cached value, or call the loader once, store
  its result and return it. Loader errors propagate unchanged and nothing is
  written. Store errors never fail the caller: a failed read is a miss and a
  failed write only loses the cache entry.
- delete helpers used by the invalidation dispatcher, which raise CacheError
  so the dispatcher can log and count failures.

An optional short-lived in-process cache sits in front of the shared store.
It is best-effort and never authoritative: every delete clears it too.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, TypeVar

from converse.cache.base import CacheProtocol
from converse.cache.kv_cache import InMemoryKVCache
from converse.exceptions import CacheError
from converse.logging import get_logger
from converse.types import CacheStats

logger = get_logger(__name__)

T = TypeVar("T")

Loader = Callable[[], Awaitable[T]]


class CacheService:
    """Read-through cache facade over a cache store."""

    def __init__(
        self,
        store: CacheProtocol,
        local_ttl_seconds: int = 0,
        local_max_entries: int = 1000,
    ) -> None:
        """Initialize the cache service.

        Args:
            store: The shared cache store.
            local_ttl_seconds: TTL of the in-process secondary cache, 0 disables it.
            local_max_entries: Size bound of the in-process secondary cache.
        """
        self.store = store
        self.local_ttl_seconds = local_ttl_seconds
        self._local: InMemoryKVCache | None = (
            InMemoryKVCache(max_entries=local_max_entries) if local_ttl_seconds > 0 else None
        )
        self.stats = CacheStats()

    def _local_ttl(self, ttl_seconds: int | None) -> int:
        if ttl_seconds is None or ttl_seconds <= 0:
            return self.local_ttl_seconds
        return min(ttl_seconds, self.local_ttl_seconds)

    async def _read(self, key: str) -> Any | None:
        if self._local is not None:
            value = await self._local.get(key)
            if value is not None:
                return value

        try:
            value = await self.store.get(key)
        except CacheError as e:
            self.stats.errors += 1
            logger.warning("Cache read failed, treating as miss", key=key, error=str(e))
            return None

        return value

    async def _write(self, key: str, value: Any, ttl_seconds: int | None) -> bool:
        try:
            if self._local is not None:
                await self._local.set(key, value, self._local_ttl(ttl_seconds))
            await self.store.set(key, value, ttl_seconds)
        except CacheError as e:
            self.stats.errors += 1
            logger.warning("Cache write failed", key=key, error=str(e))
            return False
        return True

    async def get_or_set(
        self,
        key: str,
        loader: Loader[T],
        ttl_seconds: int | None,
    ) -> T:
        """Return the cached value for key, loading and storing it on a miss.

        Args:
            key: Cache key.
            loader: Zero-argument coroutine function producing the authoritative value.
            ttl_seconds: TTL for a newly stored value (None or 0 = no expiry).

        Returns:
            The cached or freshly loaded value.

        Raises:
            Exception: Whatever the loader raised, unchanged. Nothing is cached.
        """
        cached = await self._read(key)
        if cached is not None:
            self.stats.hits += 1
            logger.debug("Cache hit", key=key)
            return cached

        self.stats.misses += 1
        logger.debug("Cache miss", key=key)

        value = await loader()

        # None is indistinguishable from a miss, so it is returned but not stored
        if value is not None:
            await self._write(key, value, ttl_seconds)

        return value

    async def get_or_set_many(
        self,
        keys: list[str],
        loader: Callable[[list[int]], Awaitable[list[Any]]],
        ttl_seconds: int | None,
    ) -> list[Any]:
        """Batch read-through for several keys.

        Args:
            keys: Cache keys, in result order.
            loader: Called once with the indexes of the missing keys; must return
                values for exactly those indexes, in the same order.
            ttl_seconds: TTL for newly stored values.

        Returns:
            Values for every key, in order.
        """
        try:
            results = await self.store.get_many(keys)
        except CacheError as e:
            self.stats.errors += 1
            logger.warning("Cache batch read failed, treating as miss", error=str(e))
            results = [None] * len(keys)

        missing = [i for i, value in enumerate(results) if value is None]
        self.stats.hits += len(keys) - len(missing)
        self.stats.misses += len(missing)
        if not missing:
            return results

        fresh = await loader(missing)
        if len(fresh) != len(missing):
            raise ValueError(
                f"Batch loader returned {len(fresh)} values for {len(missing)} missing keys"
            )

        for index, value in zip(missing, fresh):
            results[index] = value
            if value is not None:
                await self._write(keys[index], value, ttl_seconds)

        return results

    async def get(self, key: str) -> Any | None:
        """Get a cached value, None on miss or store failure."""
        return await self._read(key)

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> bool:
        """Store a value. Returns False if the store rejected the write."""
        return await self._write(key, value, ttl_seconds)

    async def get_many(self, keys: list[str]) -> list[Any | None]:
        """Get several values, None for each miss. A store failure misses all."""
        try:
            return await self.store.get_many(keys)
        except CacheError as e:
            self.stats.errors += 1
            logger.warning("Cache batch read failed", count=len(keys), error=str(e))
            return [None] * len(keys)

    async def set_many(self, entries: dict[str, Any], ttl_seconds: int | None = None) -> int:
        """Store several values. Returns how many writes succeeded."""
        stored = 0
        for key, value in entries.items():
            if await self._write(key, value, ttl_seconds):
                stored += 1
        return stored

    async def exists(self, key: str) -> bool:
        try:
            return await self.store.exists(key)
        except CacheError as e:
            logger.warning("Cache exists check failed", key=key, error=str(e))
            return False

    async def delete(self, key: str) -> bool:
        """Delete a key.

        Raises:
            CacheError: If the store could not delete the key.
        """
        if self._local is not None:
            await self._local.delete(key)
        return await self.store.delete(key)

    async def delete_many(self, keys: list[str]) -> int:
        """Delete several keys.

        Returns:
            Number of keys removed.

        Raises:
            CacheError: On the first key the store could not delete.
        """
        removed = 0
        for key in keys:
            if await self.delete(key):
                removed += 1
        return removed

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern.

        Returns:
            Number of keys removed.

        Raises:
            CacheError: If the store could not scan or delete.
        """
        if self._local is not None:
            for key in await self._local.scan(pattern):
                await self._local.delete(key)

        removed = 0
        for key in await self.store.scan(pattern):
            if await self.store.delete(key):
                removed += 1
        return removed

    async def scan(self, pattern: str = "*") -> list[str]:
        return await self.store.scan(pattern)

    async def health_check(self) -> bool:
        """Check that the shared store is reachable."""
        try:
            return await self.store.ping()
        except CacheError:
            return False

    async def close(self) -> None:
        await self.store.close()
