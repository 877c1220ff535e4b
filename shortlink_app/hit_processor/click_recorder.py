"""
Click recorder: the producer side of click tracking.

The redirect path hands events to record(), which only appends to a bounded
in-process buffer and returns. A background pump moves buffered events onto
the queue, so redirect latency never depends on queue or storage health.

Guarantees:
- record() never blocks and never raises
- A full buffer or a full queue drops the event with a warning (backpressure)
- Queue transport failures are retried with backoff until the event is
  accepted (at-least-once from recorder to queue)
- Any other publish error drops that one event; the pump keeps running
"""

import asyncio
from typing import Dict, Optional

import structlog

from shortlink_app.queue.models import ClickEvent
from shortlink_app.queue.strategies import QueueStrategy, QueueUnavailable

logger = structlog.get_logger(__name__)

MAX_BACKOFF_SECONDS = 5.0


class ClickRecorder:
    """Fire-and-forget click sink in front of a QueueStrategy."""

    def __init__(
        self,
        queue: QueueStrategy,
        queue_name: str,
        buffer_size: int = 10_000,
        retry_backoff: float = 0.1,
    ):
        """
        Args:
            queue: Queue strategy events are published to
            queue_name: Target queue/stream name
            buffer_size: Events held in memory before record() starts dropping
            retry_backoff: Initial delay (seconds) between publish retries
        """
        self.queue = queue
        self.queue_name = queue_name
        self.retry_backoff = retry_backoff
        self._buffer: asyncio.Queue = asyncio.Queue(maxsize=buffer_size)
        self._task: Optional[asyncio.Task] = None

        self.recorded = 0
        self.published = 0
        self.dropped = 0

    def record(self, event: ClickEvent) -> bool:
        """
        Buffer an event for publishing.

        Returns:
            True if buffered, False if it was dropped
        """
        try:
            self._buffer.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "click event dropped",
                reason="buffer_full",
                short_code=event.short_code,
                dropped=self.dropped,
            )
            return False

        self.recorded += 1
        return True

    async def start(self) -> None:
        """Start the background pump (idempotent)."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._pump())
            logger.info("click recorder started", queue=self.queue_name)

    async def _pump(self) -> None:
        while True:
            event = await self._buffer.get()
            try:
                await self._publish(event)
            finally:
                self._buffer.task_done()

    async def _publish(self, event: ClickEvent) -> None:
        attempt = 0
        while True:
            try:
                accepted = await self.queue.publish(self.queue_name, event)
            except QueueUnavailable as e:
                attempt += 1
                delay = min(self.retry_backoff * 2 ** (attempt - 1), MAX_BACKOFF_SECONDS)
                logger.warning("click publish failed, retrying", attempt=attempt, delay=delay, error=str(e))
                await asyncio.sleep(delay)
                continue
            except Exception as e:
                # Not a transport error: drop this event only
                self.dropped += 1
                logger.exception(
                    "click event dropped",
                    reason="publish_error",
                    short_code=event.short_code,
                    dropped=self.dropped,
                    error=str(e),
                )
                return

            if accepted:
                self.published += 1
            else:
                self.dropped += 1
                logger.warning(
                    "click event dropped",
                    reason="queue_full",
                    short_code=event.short_code,
                    dropped=self.dropped,
                )
            return

    async def flush(self, timeout: Optional[float] = None) -> None:
        """
        Wait until every buffered event has been handed to the queue.

        Without a running pump the buffer is published inline.
        """
        if self._task is None or self._task.done():
            while not self._buffer.empty():
                event = self._buffer.get_nowait()
                try:
                    await self._publish(event)
                finally:
                    self._buffer.task_done()
            return

        await asyncio.wait_for(self._buffer.join(), timeout=timeout)

    async def stop(self, timeout: float = 5.0) -> None:
        """Flush what is buffered (bounded by timeout), then stop the pump."""
        try:
            await self.flush(timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("click recorder stopped with buffered events", pending=self._buffer.qsize())

        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("click recorder stopped", **self.stats)

    @property
    def pending(self) -> int:
        return self._buffer.qsize()

    @property
    def stats(self) -> Dict[str, int]:
        return {
            "recorded": self.recorded,
            "published": self.published,
            "dropped": self.dropped,
            "pending": self.pending,
        }
