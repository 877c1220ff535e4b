"""
Cache strategies using Strategy Pattern.
Allows switching between different cache backends (Redis, In-Memory, Null).

Contract shared by every backend: a cache call never raises. Backend
failures and timeouts become a miss (reads) or a no-op (writes) and are
logged, so the link store stays correct with the cache gone entirely.
"""

import asyncio
import fnmatch
import time
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import redis.asyncio as redis
import structlog

from shortlink_app.exceptions import CacheDegraded

logger = structlog.get_logger(__name__)

DEFAULT_TTL = 3600


class CacheStrategy(ABC):
    """
    Abstract base class for cache strategies.

    Values are strings; callers serialize their own payloads.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the cached value, or None on miss or backend failure."""

    @abstractmethod
    async def set(self, key: str, value: str, ttl: int = DEFAULT_TTL) -> bool:
        """Store value for ttl seconds. False if the backend failed."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """
        Remove key.

        Returns True once the key is known to be gone (whether or not it
        existed) and False only when the backend failed, so callers can
        retry an invalidation.
        """

    @abstractmethod
    async def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    async def get_many(self, keys: Sequence[str]) -> List[Optional[str]]:
        """Batch get; result is aligned with keys, None for misses."""

    @abstractmethod
    async def set_many(self, items: Dict[str, str], ttl: int = DEFAULT_TTL) -> bool:
        pass

    @abstractmethod
    async def clear_pattern(self, pattern: str) -> int:
        """
        Delete every key matching a glob pattern. Returns number deleted.

        Administrative only; it scans the keyspace.
        """

    @abstractmethod
    async def clear(self) -> bool:
        pass

    async def connect(self) -> None:
        """Open connections (startup hook)."""

    async def close(self) -> None:
        """Release connections (shutdown hook)."""

    async def get_or_set(
        self,
        key: str,
        loader: Callable[[], Awaitable[Optional[str]]],
        ttl: int = DEFAULT_TTL,
    ) -> Optional[str]:
        """
        Return the cached value, or run loader and cache what it returns.

        There is no single-flight: concurrent misses on the same key each run
        the loader and the last write wins. Exceptions from the loader are
        the caller's and propagate; a None result is not cached.
        """
        value = await self.get(key)
        if value is not None:
            return value

        value = await loader()
        if value is not None:
            await self.set(key, value, ttl=ttl)
        return value


class RedisCache(CacheStrategy):
    """
    Redis cache implementation (redis.asyncio).

    Every command is bounded by a short timeout; a slow Redis is treated
    exactly like a missing one.
    """

    def __init__(self, redis_client: redis.Redis, timeout: float = 0.2):
        """
        Args:
            redis_client: redis.asyncio client
            timeout: Per-command timeout in seconds
        """
        self.redis = redis_client
        self.timeout = timeout

    async def _call(self, operation: str, awaitable):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise CacheDegraded(f"{operation} timed out") from e
        except Exception as e:
            raise CacheDegraded(f"{operation} failed: {e}") from e

    @staticmethod
    def _degraded(operation: str, error: CacheDegraded, **context) -> None:
        logger.warning("cache degraded", operation=operation, error=str(error), **context)

    async def connect(self) -> None:
        try:
            await self._call("ping", self.redis.ping())
            logger.info("redis cache connected")
        except CacheDegraded as e:
            # Keep going: every call degrades to a miss until Redis is back
            self._degraded("ping", e)

    async def close(self) -> None:
        try:
            await self.redis.aclose()
        except Exception as e:
            logger.warning("redis cache close failed", error=str(e))

    async def get(self, key: str) -> Optional[str]:
        try:
            value = await self._call("get", self.redis.get(key))
        except CacheDegraded as e:
            self._degraded("get", e, key=key)
            return None
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def set(self, key: str, value: str, ttl: int = DEFAULT_TTL) -> bool:
        try:
            return bool(await self._call("set", self.redis.setex(key, ttl, value)))
        except CacheDegraded as e:
            self._degraded("set", e, key=key)
            return False

    async def delete(self, key: str) -> bool:
        try:
            await self._call("delete", self.redis.delete(key))
            return True
        except CacheDegraded as e:
            self._degraded("delete", e, key=key)
            return False

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self._call("exists", self.redis.exists(key)))
        except CacheDegraded as e:
            self._degraded("exists", e, key=key)
            return False

    async def get_many(self, keys: Sequence[str]) -> List[Optional[str]]:
        if not keys:
            return []
        try:
            values = await self._call("mget", self.redis.mget(list(keys)))
        except CacheDegraded as e:
            self._degraded("mget", e, count=len(keys))
            return [None] * len(keys)
        return [v.decode("utf-8") if isinstance(v, bytes) else v for v in values]

    async def set_many(self, items: Dict[str, str], ttl: int = DEFAULT_TTL) -> bool:
        if not items:
            return True
        pipeline = self.redis.pipeline(transaction=False)
        for key, value in items.items():
            pipeline.setex(key, ttl, value)
        try:
            await self._call("mset", pipeline.execute())
            return True
        except CacheDegraded as e:
            self._degraded("mset", e, count=len(items))
            return False

    async def clear_pattern(self, pattern: str) -> int:
        deleted = 0
        try:
            batch = []
            async for key in self.redis.scan_iter(match=pattern, count=500):
                batch.append(key)
                if len(batch) >= 500:
                    deleted += await self._call("clear_pattern", self.redis.delete(*batch))
                    batch = []
            if batch:
                deleted += await self._call("clear_pattern", self.redis.delete(*batch))
        except CacheDegraded as e:
            self._degraded("clear_pattern", e, pattern=pattern)
        except Exception as e:
            # scan_iter itself is not wrapped by _call
            self._degraded("clear_pattern", CacheDegraded(str(e)), pattern=pattern)
        logger.info("cache pattern cleared", pattern=pattern, deleted=deleted)
        return deleted

    async def clear(self) -> bool:
        try:
            await self._call("flushdb", self.redis.flushdb())
            return True
        except CacheDegraded as e:
            self._degraded("flushdb", e)
            return False


class InMemoryCache(CacheStrategy):
    """
    In-memory cache implementation using Python dict.

    Good for development, tests and single-process deployments. TTLs are
    enforced lazily on read.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._cache: Dict[str, Tuple[str, float]] = {}
        self._clock = clock

    def _live(self, key: str) -> Optional[str]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._cache[key]
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        return self._live(key)

    async def set(self, key: str, value: str, ttl: int = DEFAULT_TTL) -> bool:
        self._cache[key] = (value, self._clock() + ttl)
        return True

    async def delete(self, key: str) -> bool:
        self._cache.pop(key, None)
        return True

    async def exists(self, key: str) -> bool:
        return self._live(key) is not None

    async def get_many(self, keys: Sequence[str]) -> List[Optional[str]]:
        return [self._live(key) for key in keys]

    async def set_many(self, items: Dict[str, str], ttl: int = DEFAULT_TTL) -> bool:
        expires_at = self._clock() + ttl
        for key, value in items.items():
            self._cache[key] = (value, expires_at)
        return True

    async def clear_pattern(self, pattern: str) -> int:
        matched = [key for key in self._cache if fnmatch.fnmatchcase(key, pattern)]
        for key in matched:
            del self._cache[key]
        return len(matched)

    async def clear(self) -> bool:
        self._cache.clear()
        return True


class NullCache(CacheStrategy):
    """
    Null Object Pattern - cache that does nothing.

    Every read is a miss, so every resolve goes to the store.
    """

    async def get(self, key: str) -> Optional[str]:
        return None

    async def set(self, key: str, value: str, ttl: int = DEFAULT_TTL) -> bool:
        return True

    async def delete(self, key: str) -> bool:
        return True

    async def exists(self, key: str) -> bool:
        return False

    async def get_many(self, keys: Sequence[str]) -> List[Optional[str]]:
        return [None] * len(keys)

    async def set_many(self, items: Dict[str, str], ttl: int = DEFAULT_TTL) -> bool:
        return True

    async def clear_pattern(self, pattern: str) -> int:
        return 0

    async def clear(self) -> bool:
        return True
