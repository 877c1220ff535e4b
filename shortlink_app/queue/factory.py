"""
Factory for creating queue instances.
"""

from enum import Enum

import redis.asyncio as redis
import structlog

from .strategies import QueueStrategy, RedisStreamQueue, InMemoryQueue
from shortlink_app.config import Settings

logger = structlog.get_logger(__name__)


class QueueBackend(Enum):
    """Available queue backends"""
    REDIS_STREAMS = "redis_streams"
    MEMORY = "memory"


class QueueFactory:
    """Simple factory for creating queue instances from settings."""

    @classmethod
    def create(cls, backend: QueueBackend, settings: Settings) -> QueueStrategy:
        """
        Create a queue instance.

        Args:
            backend: Type of queue backend (from enum)
            settings: Application settings

        Returns:
            New queue instance
        """
        if backend == QueueBackend.REDIS_STREAMS:
            redis_client = redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=2,
            )
            instance = RedisStreamQueue(
                redis_client,
                consumer_group=settings.queue_consumer_group,
                max_length=settings.queue_max_length,
            )

        elif backend == QueueBackend.MEMORY:
            instance = InMemoryQueue(max_length=settings.queue_max_length)

        else:
            raise ValueError(f"Unknown queue backend: {backend}")

        logger.info("queue created", backend=backend.value)
        return instance
