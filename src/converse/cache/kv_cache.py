"""
Key-value cache implementations.

This module implements:
- InMemoryKVCache: Simple dict-based cache for tests, local development
  and the in-process secondary cache
  - LRU eviction when size limit reached
  - TTL support
- SQLiteKVCache: Async SQLite-backed key-value cache using aiosqlite
  - JSON serialization for complex values
  - TTL support with lazy expiry and purge_expired()
  - Index on expiry for fast cleanup

Both expire lazily: an entry past its TTL is dropped when it is next read.
"""

from __future__ import annotations

import fnmatch
from collections import OrderedDict
from pathlib import Path
from typing import Any, Callable

import aiosqlite

from converse.cache.base import CacheEntry, CacheProtocol, dumps, loads, normalize_ttl
from converse.exceptions import CacheError
from converse.logging import get_logger
from converse.types import epoch_seconds

logger = get_logger(__name__)


class InMemoryKVCache(CacheProtocol):
    """Dict-backed cache with lazy TTL expiry and optional LRU bound."""

    name = "memory"

    def __init__(
        self,
        max_entries: int | None = None,
        clock: Callable[[], float] = epoch_seconds,
    ) -> None:
        """Initialize in-memory cache.

        Args:
            max_entries: Evict least recently used entries beyond this size.
            clock: Time source in seconds, injectable for tests.
        """
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def _live_entry(self, key: str) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._entries[key]
            return None
        return entry

    async def get(self, key: str) -> Any | None:
        entry = self._live_entry(key)
        if entry is None:
            return None
        self._entries.move_to_end(key)
        return entry.value

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        # Round-trip through JSON so callers never share mutable state with the cache
        value = loads(key, dumps(key, value))
        self._entries[key] = CacheEntry(
            value=value,
            stored_at=self._clock(),
            ttl_seconds=normalize_ttl(ttl_seconds),
        )
        self._entries.move_to_end(key)

        if self.max_entries is not None:
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Evicted cache entry", key=evicted)

    async def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    async def exists(self, key: str) -> bool:
        return self._live_entry(key) is not None

    async def scan(self, pattern: str = "*") -> list[str]:
        return [
            key
            for key in list(self._entries)
            if fnmatch.fnmatchcase(key, pattern) and self._live_entry(key) is not None
        ]

    def entry(self, key: str) -> CacheEntry | None:
        """Return the raw entry for a key (expired entries included)."""
        return self._entries.get(key)

    def clear(self) -> None:
        self._entries.clear()


class SQLiteKVCache(CacheProtocol):
    """Async SQLite-backed cache.

    Stores JSON values in {cache_dir}/cache.db.
    """

    name = "sqlite"

    def __init__(
        self,
        cache_dir: str | Path,
        clock: Callable[[], float] = epoch_seconds,
    ) -> None:
        """Initialize SQLite cache.

        Args:
            cache_dir: Base directory for cache storage.
            clock: Time source in seconds, injectable for tests.
        """
        self.cache_dir = Path(cache_dir)
        self.db_path = self.cache_dir / "cache.db"
        self._clock = clock
        self._db: aiosqlite.Connection | None = None

    async def init(self) -> None:
        """Initialize the store - create directory and database schema."""
        self.cache_dir.mkdir(parents=True, exist_ok=True)

        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS cache_entries (
                key TEXT PRIMARY KEY,
                value BLOB NOT NULL,
                stored_at REAL NOT NULL,
                ttl_seconds INTEGER,
                expires_at REAL
            )
        """)
        await self._db.execute(
            "CREATE INDEX IF NOT EXISTS idx_cache_expires ON cache_entries(expires_at)"
        )
        await self._db.commit()
        logger.info("SQLite cache initialized", db_path=str(self.db_path))

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    def _conn(self) -> aiosqlite.Connection:
        if not self._db:
            raise CacheError(
                "SQLiteKVCache not initialized. Call init() first.",
                context={"db_path": str(self.db_path)},
            )
        return self._db

    async def get(self, key: str) -> Any | None:
        db = self._conn()
        try:
            async with db.execute(
                "SELECT value, expires_at FROM cache_entries WHERE key = ?", (key,)
            ) as cursor:
                row = await cursor.fetchone()

            if row is None:
                return None

            if row["expires_at"] is not None and self._clock() >= row["expires_at"]:
                await db.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
                await db.commit()
                return None
        except aiosqlite.Error as e:
            raise CacheError(
                "SQLite get failed",
                context={"key": key, "operation": "get", "error": str(e)},
            ) from e

        return loads(key, row["value"])

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        db = self._conn()
        ttl = normalize_ttl(ttl_seconds)
        stored_at = self._clock()
        expires_at = stored_at + ttl if ttl is not None else None
        payload = dumps(key, value)

        try:
            await db.execute(
                """
                INSERT INTO cache_entries (key, value, stored_at, ttl_seconds, expires_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    stored_at = excluded.stored_at,
                    ttl_seconds = excluded.ttl_seconds,
                    expires_at = excluded.expires_at
                """,
                (key, payload, stored_at, ttl, expires_at),
            )
            await db.commit()
        except aiosqlite.Error as e:
            raise CacheError(
                "SQLite set failed",
                context={"key": key, "operation": "set", "error": str(e)},
            ) from e

    async def delete(self, key: str) -> bool:
        db = self._conn()
        try:
            cursor = await db.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
            await db.commit()
        except aiosqlite.Error as e:
            raise CacheError(
                "SQLite delete failed",
                context={"key": key, "operation": "delete", "error": str(e)},
            ) from e
        return cursor.rowcount > 0

    async def exists(self, key: str) -> bool:
        db = self._conn()
        try:
            async with db.execute(
                """
                SELECT 1 FROM cache_entries
                WHERE key = ? AND (expires_at IS NULL OR expires_at > ?)
                """,
                (key, self._clock()),
            ) as cursor:
                return await cursor.fetchone() is not None
        except aiosqlite.Error as e:
            raise CacheError(
                "SQLite exists failed",
                context={"key": key, "operation": "exists", "error": str(e)},
            ) from e

    async def scan(self, pattern: str = "*") -> list[str]:
        db = self._conn()
        try:
            async with db.execute(
                """
                SELECT key FROM cache_entries
                WHERE key GLOB ? AND (expires_at IS NULL OR expires_at > ?)
                ORDER BY key
                """,
                (pattern, self._clock()),
            ) as cursor:
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise CacheError(
                "SQLite scan failed",
                context={"pattern": pattern, "operation": "scan", "error": str(e)},
            ) from e
        return [row["key"] for row in rows]

    async def purge_expired(self) -> int:
        """Delete every expired entry.

        Returns:
            Number of entries removed.
        """
        db = self._conn()
        cursor = await db.execute(
            "DELETE FROM cache_entries WHERE expires_at IS NOT NULL AND expires_at <= ?",
            (self._clock(),),
        )
        await db.commit()
        if cursor.rowcount:
            logger.info("Purged expired cache entries", count=cursor.rowcount)
        return cursor.rowcount

    async def ping(self) -> bool:
        try:
            async with self._conn().execute("SELECT 1") as cursor:
                await cursor.fetchone()
            return True
        except (CacheError, aiosqlite.Error):
            return False
