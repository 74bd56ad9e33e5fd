"""
Cache package.

This package provides:
- Key registry (keys.py): deterministic keys and per-namespace TTLs
- Stores (kv_cache.py, redis_cache.py): in-memory, SQLite and Redis backends
- CacheService (service.py): read-through facade used by the routes
- Invalidation (invalidation.py): event parsing, routing and dispatch
"""

from converse.cache.base import CacheProtocol
from converse.cache.factory import create_cache_backend
from converse.cache.keys import CacheKeys, Namespace, ttl_for
from converse.cache.kv_cache import InMemoryKVCache, SQLiteKVCache
from converse.cache.redis_cache import RedisKVCache
from converse.cache.service import CacheService

__all__ = [
    "CacheKeys",
    "CacheProtocol",
    "CacheService",
    "InMemoryKVCache",
    "Namespace",
    "RedisKVCache",
    "SQLiteKVCache",
    "create_cache_backend",
    "ttl_for",
]
