"""
Base classes for caching.

This module implements:
- CacheProtocol: Abstract interface for cache store implementations
- CacheEntry: Wrapper for cached values with metadata (TTL, stored_at)
- dumps/loads: JSON serialization shared by the persistent backends

Cache backends support:
- get/set/delete operations
- TTL-based expiration (lazy, checked at read time)
- Glob pattern scans for bulk invalidation
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import orjson

from converse.exceptions import CacheError


@dataclass(frozen=True)
class CacheEntry:
    """A cached value with its storage metadata.

    ttl_seconds of None means the entry never expires on its own and is
    only removed by invalidation.
    """

    value: Any
    stored_at: float
    ttl_seconds: int | None = None

    @property
    def expires_at(self) -> float | None:
        if self.ttl_seconds is None:
            return None
        return self.stored_at + self.ttl_seconds

    def is_expired(self, now: float) -> bool:
        """Check whether the entry is past its TTL at ``now``."""
        expires_at = self.expires_at
        return expires_at is not None and now >= expires_at


def normalize_ttl(ttl_seconds: int | None) -> int | None:
    """Treat zero or negative TTLs as "no expiry"."""
    if ttl_seconds is None or ttl_seconds <= 0:
        return None
    return int(ttl_seconds)


def dumps(key: str, value: Any) -> bytes:
    """Serialize a cache value to JSON bytes."""
    try:
        return orjson.dumps(value)
    except TypeError as e:
        raise CacheError(
            "Value is not JSON serializable",
            context={"key": key, "operation": "set", "error": str(e)},
        ) from e


def loads(key: str, data: bytes | str) -> Any:
    """Deserialize JSON bytes from the store."""
    try:
        return orjson.loads(data)
    except orjson.JSONDecodeError as e:
        raise CacheError(
            "Stored value is not valid JSON",
            context={"key": key, "operation": "get", "error": str(e)},
        ) from e


class CacheProtocol(ABC):
    """Abstract interface for cache store implementations.

    All operations are per-key atomic in the underlying store and writes are
    last-writer-wins overwrites.
    """

    name: str = "cache"

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Get a value from the cache, None on miss or expiry."""
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        """Set a value in the cache."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a value from the cache. Returns True if a key was removed."""
        ...

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check if a live key exists in the cache."""
        ...

    @abstractmethod
    async def scan(self, pattern: str = "*") -> list[str]:
        """List live keys matching a glob pattern."""
        ...

    async def get_many(self, keys: list[str]) -> list[Any | None]:
        """Get several values, preserving order."""
        return [await self.get(key) for key in keys]

    async def ping(self) -> bool:
        """Check that the store is reachable."""
        return True

    async def close(self) -> None:
        """Release connections held by the store."""
        return None
