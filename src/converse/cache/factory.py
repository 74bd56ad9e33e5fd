"""Cache store and service construction from settings."""

from __future__ import annotations

from converse.cache.base import CacheProtocol
from converse.cache.kv_cache import InMemoryKVCache, SQLiteKVCache
from converse.cache.redis_cache import RedisKVCache
from converse.cache.service import CacheService
from converse.config import Settings
from converse.exceptions import ConfigurationError
from converse.logging import get_logger

logger = get_logger(__name__)


async def create_cache_backend(settings: Settings) -> CacheProtocol:
    """Build the store selected by CACHE_BACKEND.

    The SQLite store is initialized before it is returned.

    Raises:
        ConfigurationError: If the backend name is unknown.
    """
    backend = settings.CACHE_BACKEND
    if backend == "redis":
        store: CacheProtocol = RedisKVCache(url=settings.REDIS_URL)
    elif backend == "sqlite":
        sqlite_store = SQLiteKVCache(settings.CACHE_DIR)
        await sqlite_store.init()
        store = sqlite_store
    elif backend == "memory":
        store = InMemoryKVCache()
    else:
        raise ConfigurationError(
            f"Unknown cache backend: {backend}", context={"CACHE_BACKEND": backend}
        )

    logger.info("Cache store ready", backend=store.name)
    return store


async def create_cache_service(settings: Settings) -> CacheService:
    """Build the CacheService for the configured store."""
    store = await create_cache_backend(settings)
    return CacheService(
        store,
        local_ttl_seconds=settings.LOCAL_CACHE_TTL_SECONDS,
        local_max_entries=settings.LOCAL_CACHE_MAX_ENTRIES,
    )
