"""
Queue strategies using Strategy Pattern.
Allows switching between different queue backends (Redis Streams, In-Memory).

Delivery is at-least-once: a consumed message stays pending until it is
acked, and a nacked (or never acked) message is delivered again.
"""

import asyncio
import itertools
import socket
from abc import ABC, abstractmethod
from collections import deque
from typing import Deque, Dict, List, Sequence

import redis.asyncio as redis
import structlog
from pydantic import ValidationError

from .models import ClickEvent, Delivery

logger = structlog.get_logger(__name__)


class QueueUnavailable(Exception):
    """The queue backend could not be reached; the publish may be retried."""


class QueueStrategy(ABC):
    """
    Abstract base class for queue strategies.

    This is the Strategy Pattern interface - allows multiple queue implementations
    without changing the recorder/worker code.
    """

    @abstractmethod
    async def publish(self, queue_name: str, message: ClickEvent) -> bool:
        """
        Publish a message to the queue.

        Returns:
            True if queued, False if the queue is at capacity (message dropped)

        Raises:
            QueueUnavailable: backend failure; safe to retry
        """

    @abstractmethod
    async def consume(
        self,
        queue_name: str,
        batch_size: int = 1,
        block_time: int = 1000
    ) -> List[Delivery]:
        """
        Consume up to batch_size messages, waiting up to block_time ms.

        Consumed messages stay pending until ack() or nack().
        """

    @abstractmethod
    async def ack(self, queue_name: str, message_ids: Sequence[str]) -> bool:
        """Mark messages as processed so they are never delivered again."""

    @abstractmethod
    async def nack(self, queue_name: str, message_ids: Sequence[str]) -> None:
        """Give messages back so a later consume() delivers them again."""

    @abstractmethod
    async def get_queue_length(self, queue_name: str) -> int:
        """Number of messages not yet acked (waiting + pending)."""

    async def close(self) -> None:
        """Release connections (shutdown hook)."""


class RedisStreamQueue(QueueStrategy):
    """
    Redis Streams implementation for the click queue.

    How it works:
    1. Producer publishes messages using XADD
    2. Consumer reads its own pending messages first (XREADGROUP id 0),
       then stale messages of dead consumers (XAUTOCLAIM), then new ones (>)
    3. Consumer acknowledges with XACK and removes the entry with XDEL, so
       the stream length is the backlog used for backpressure
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        consumer_group: str = "click_workers",
        consumer_name: str = None,
        max_length: int = 100_000,
        claim_idle_ms: int = 60_000,
    ):
        """
        Args:
            redis_client: redis.asyncio client
            consumer_group: Name of consumer group for workers
            consumer_name: This consumer's name inside the group
            max_length: Backlog size beyond which publish() drops events
            claim_idle_ms: Pending age after which another consumer's
                messages are taken over
        """
        self.redis = redis_client
        self.consumer_group = consumer_group
        self.consumer_name = consumer_name or f"worker-{socket.gethostname()}-{id(self)}"
        self.max_length = max_length
        self.claim_idle_ms = claim_idle_ms
        self._initialized_streams = set()

    async def _ensure_stream_exists(self, queue_name: str):
        """Create the stream and consumer group if they don't exist."""
        if queue_name in self._initialized_streams:
            return

        try:
            await self.redis.xgroup_create(
                name=queue_name,
                groupname=self.consumer_group,
                id="0",
                mkstream=True
            )
            logger.info("redis stream created", stream=queue_name, group=self.consumer_group)
        except redis.ResponseError as e:
            # Group might already exist, that's OK
            if "BUSYGROUP" not in str(e):
                raise

        self._initialized_streams.add(queue_name)

    async def publish(self, queue_name: str, message: ClickEvent) -> bool:
        try:
            await self._ensure_stream_exists(queue_name)

            if await self.redis.xlen(queue_name) >= self.max_length:
                return False

            await self.redis.xadd(queue_name, {"data": message.model_dump_json()})
            return True

        except redis.RedisError as e:
            raise QueueUnavailable(str(e)) from e

    async def consume(
        self,
        queue_name: str,
        batch_size: int = 1,
        block_time: int = 1000
    ) -> List[Delivery]:
        try:
            await self._ensure_stream_exists(queue_name)

            # Messages delivered to us before but never acked
            entries = await self._read(queue_name, "0", batch_size, block=None)

            if not entries:
                entries = await self._claim_stale(queue_name, batch_size)

            if not entries:
                # XREADGROUP BLOCK 0 would wait forever
                entries = await self._read(queue_name, ">", batch_size, block=block_time or None)

        except redis.RedisError as e:
            logger.error("redis consume failed", stream=queue_name, error=str(e))
            return []

        return await self._parse(queue_name, entries)

    async def _read(self, queue_name: str, stream_id: str, count: int, block):
        response = await self.redis.xreadgroup(
            groupname=self.consumer_group,
            consumername=self.consumer_name,
            streams={queue_name: stream_id},
            count=count,
            block=block
        )
        entries = []
        for _stream, stream_messages in response or []:
            entries.extend(stream_messages)
        return entries

    async def _claim_stale(self, queue_name: str, count: int):
        response = await self.redis.xautoclaim(
            queue_name,
            self.consumer_group,
            self.consumer_name,
            min_idle_time=self.claim_idle_ms,
            start_id="0-0",
            count=count,
        )
        # [next_start_id, [(id, fields), ...], (deleted ids on Redis 7+)]
        return response[1] if response and len(response) > 1 else []

    async def _parse(self, queue_name: str, entries) -> List[Delivery]:
        deliveries = []
        poison = []
        for message_id, fields in entries:
            message_id = _text(message_id)
            if not fields:
                # Entry was deleted after delivery; nothing left to process
                poison.append(message_id)
                continue
            raw = fields.get("data", fields.get(b"data"))
            try:
                event = ClickEvent.model_validate_json(_text(raw))
            except (ValidationError, TypeError, ValueError) as e:
                logger.warning("unparseable click message dropped", message_id=message_id, error=str(e))
                poison.append(message_id)
                continue
            deliveries.append(Delivery(message_id, event))

        if poison:
            await self.ack(queue_name, poison)
        return deliveries

    async def ack(self, queue_name: str, message_ids: Sequence[str]) -> bool:
        if not message_ids:
            return True
        try:
            await self.redis.xack(queue_name, self.consumer_group, *message_ids)
            await self.redis.xdel(queue_name, *message_ids)
            return True
        except redis.RedisError as e:
            logger.error("redis ack failed", stream=queue_name, error=str(e))
            return False

    async def nack(self, queue_name: str, message_ids: Sequence[str]) -> None:
        # Un-acked entries stay in our pending list and are read back with id 0
        return None

    async def get_queue_length(self, queue_name: str) -> int:
        try:
            return int(await self.redis.xlen(queue_name))
        except redis.RedisError:
            return 0

    async def close(self) -> None:
        try:
            await self.redis.aclose()
        except Exception as e:
            logger.warning("redis queue close failed", error=str(e))


class InMemoryQueue(QueueStrategy):
    """
    In-memory queue implementation using Python deque.

    Single-process only and lost on restart; used in development, tests and
    when no Redis is configured. Keeps the same pending/ack semantics as the
    Redis implementation.
    """

    def __init__(self, max_length: int = 100_000, poll_interval: float = 0.01):
        self.max_length = max_length
        self.poll_interval = poll_interval
        self._queues: Dict[str, Deque[Delivery]] = {}
        self._pending: Dict[str, Dict[str, Delivery]] = {}
        self._ids = itertools.count(1)

    def _get_queue(self, queue_name: str) -> Deque[Delivery]:
        if queue_name not in self._queues:
            self._queues[queue_name] = deque()
            self._pending[queue_name] = {}
        return self._queues[queue_name]

    async def publish(self, queue_name: str, message: ClickEvent) -> bool:
        queue = self._get_queue(queue_name)
        if len(queue) + len(self._pending[queue_name]) >= self.max_length:
            return False
        queue.append(Delivery(str(next(self._ids)), message))
        return True

    async def consume(
        self,
        queue_name: str,
        batch_size: int = 1,
        block_time: int = 1000
    ) -> List[Delivery]:
        queue = self._get_queue(queue_name)

        waited = 0.0
        while not queue and waited * 1000 < block_time:
            await asyncio.sleep(self.poll_interval)
            waited += self.poll_interval

        pending = self._pending[queue_name]
        messages = []
        while queue and len(messages) < batch_size:
            delivery = queue.popleft()
            pending[delivery.message_id] = delivery
            messages.append(delivery)
        return messages

    async def ack(self, queue_name: str, message_ids: Sequence[str]) -> bool:
        self._get_queue(queue_name)
        pending = self._pending[queue_name]
        for message_id in message_ids:
            pending.pop(message_id, None)
        return True

    async def nack(self, queue_name: str, message_ids: Sequence[str]) -> None:
        queue = self._get_queue(queue_name)
        pending = self._pending[queue_name]
        # Put back at the front, preserving their original order
        for message_id in reversed(list(message_ids)):
            delivery = pending.pop(message_id, None)
            if delivery is not None:
                queue.appendleft(delivery)

    async def get_queue_length(self, queue_name: str) -> int:
        queue = self._get_queue(queue_name)
        return len(queue) + len(self._pending[queue_name])


def _text(value) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value
