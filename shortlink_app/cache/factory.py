"""
Factory for creating cache instances.

Each call builds a fresh instance; the application owns it and drives its
connect/close lifecycle.
"""

from enum import Enum

import redis.asyncio as redis
import structlog

from .strategies import CacheStrategy, RedisCache, InMemoryCache, NullCache
from shortlink_app.config import Settings

logger = structlog.get_logger(__name__)


class CacheBackend(Enum):
    """Available cache backends"""
    REDIS = "redis"
    MEMORY = "memory"
    NULL = "null"


class CacheFactory:
    """Simple factory for creating cache instances from settings."""

    @classmethod
    def create(cls, backend: CacheBackend, settings: Settings) -> CacheStrategy:
        """
        Create a cache instance.

        Args:
            backend: Type of cache backend (from enum)
            settings: Application settings (Redis URL, timeouts)

        Returns:
            New cache instance (not yet connected)
        """
        config = settings.cache_config()

        if backend == CacheBackend.REDIS:
            # from_url is lazy; nothing touches the network until connect()
            redis_client = redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=config.timeout_seconds,
                socket_timeout=config.timeout_seconds,
            )
            instance = RedisCache(redis_client, timeout=config.timeout_seconds)

        elif backend == CacheBackend.MEMORY:
            instance = InMemoryCache()

        elif backend == CacheBackend.NULL:
            instance = NullCache()

        else:
            raise ValueError(f"Unknown cache backend: {backend}")

        logger.info("cache created", backend=backend.value)
        return instance
