"""
Click Worker

Consumes click events from the queue in batches and makes them durable.

Architecture:
- Consumes messages from the queue in batches
- Appends click rows via the click storage strategy
- Applies the batch's per-link counts to links.click_count as atomic
  increments (merge-on-flush, no read-then-write)
- Acks only after both writes succeeded; otherwise nacks so the batch is
  delivered again

A crash between the writes and the ack redelivers the batch, so a click
can be counted twice. Losing a click is not possible short of dropping it
at the recorder.

Usage:
    python -m shortlink_app.hit_processor.click_worker
"""

import asyncio
import signal
import sys
from collections import Counter
from typing import List, Optional

import structlog

from shortlink_app.exceptions import StoreUnavailable
from shortlink_app.queue.strategies import QueueStrategy
from shortlink_app.storage.link_store import LinkStore
from shortlink_app.storage.strategies import ClickStorageStrategy

logger = structlog.get_logger(__name__)

MAX_ERROR_BACKOFF_SECONDS = 30.0


class ClickWorker:
    """
    Batch click processor.

    Runs as a task inside the API process or standalone via main().
    """

    def __init__(
        self,
        queue: QueueStrategy,
        click_storage: ClickStorageStrategy,
        link_store: LinkStore,
        queue_name: str,
        batch_size: int = 100,
        block_time: int = 1000,
        error_backoff: float = 1.0,
    ):
        """
        Args:
            queue: Queue strategy to consume from
            click_storage: Where click rows are written
            link_store: Store receiving click_count increments
            queue_name: Queue/stream name
            batch_size: Max events per batch
            block_time: How long (ms) one consume waits for events
            error_backoff: First pause (seconds) after a failed batch, doubled
                per consecutive failure up to MAX_ERROR_BACKOFF_SECONDS
        """
        self.queue = queue
        self.click_storage = click_storage
        self.link_store = link_store
        self.queue_name = queue_name
        self.batch_size = batch_size
        self.block_time = block_time
        self.error_backoff = error_backoff

        self.running = False
        self._task: Optional[asyncio.Task] = None

        self.processed_count = 0
        self.failed_batches = 0

    async def process_batch(self, block_time: Optional[int] = None) -> int:
        """
        Consume, persist and ack one batch.

        Returns:
            Number of events persisted (0 if nothing was consumed or the
            batch failed and was nacked)
        """
        deliveries = await self.queue.consume(
            self.queue_name,
            batch_size=self.batch_size,
            block_time=self.block_time if block_time is None else block_time,
        )
        if not deliveries:
            return 0

        events = [delivery.event for delivery in deliveries]
        message_ids: List[str] = [delivery.message_id for delivery in deliveries]

        try:
            await self.click_storage.store_clicks(events)
            await self.link_store.increment_click_counts(Counter(event.link_id for event in events))
        except StoreUnavailable as e:
            self.failed_batches += 1
            logger.error("click batch failed, will be redelivered", batch=len(events), error=str(e))
            await self.queue.nack(self.queue_name, message_ids)
            return 0
        except Exception:
            await self.queue.nack(self.queue_name, message_ids)
            raise

        if not await self.queue.ack(self.queue_name, message_ids):
            # Persisted but still pending: the batch will be counted again
            logger.warning("click batch ack failed", batch=len(events))

        self.processed_count += len(events)
        logger.debug("click batch processed", batch=len(events), total=self.processed_count)
        return len(events)

    async def drain(self) -> int:
        """Process whatever is queued right now without waiting for more."""
        total = 0
        while True:
            processed = await self.process_batch(block_time=0)
            if processed == 0:
                return total
            total += processed

    async def run(self) -> None:
        """Consume until stop() is called."""
        self.running = True
        logger.info("click worker started", queue=self.queue_name, batch_size=self.batch_size)

        delay = self.error_backoff
        while self.running:
            failed_before = self.failed_batches
            try:
                await self.process_batch()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.failed_batches += 1
                logger.exception("click worker error", error=str(e))

            if self.failed_batches == failed_before:
                delay = self.error_backoff
                continue

            # The nacked batch comes straight back, so wait before reading it again
            logger.warning("click worker backing off", delay=delay, failed_batches=self.failed_batches)
            await asyncio.sleep(delay)
            delay = min(delay * 2, MAX_ERROR_BACKOFF_SECONDS)

        logger.info("click worker stopped", processed=self.processed_count, failed_batches=self.failed_batches)

    async def start(self) -> None:
        """Run the consumer loop as a background task."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())

    def request_stop(self) -> None:
        """Let the loop exit after the current batch."""
        self.running = False

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the background task, waiting for the batch in flight."""
        self.request_stop()
        if self._task is None:
            return

        wait = timeout if timeout is not None else self.block_time / 1000 + 5
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=wait)
        except asyncio.TimeoutError:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None


async def main():
    """Main entry point for the standalone click worker."""
    from shortlink_app.config import settings
    from shortlink_app.database.connection import create_db_engine, create_session_factory, init_db
    from shortlink_app.logging_config import configure_logging
    from shortlink_app.queue.factory import QueueBackend, QueueFactory
    from shortlink_app.storage.factory import ClickStorageBackend, ClickStorageFactory
    from shortlink_app.storage.link_store import SQLAlchemyLinkStore

    configure_logging(settings)
    logger.info(
        "starting click worker",
        environment=settings.environment,
        queue_backend=settings.queue_backend,
        storage_backend=settings.click_storage_backend,
    )

    engine = create_db_engine(settings.database_url)
    init_db(engine)
    session_factory = create_session_factory(engine)

    queue = QueueFactory.create(QueueBackend(settings.queue_backend), settings)
    click_storage = ClickStorageFactory.create(
        ClickStorageBackend(settings.click_storage_backend), settings, session_factory
    )
    link_store = SQLAlchemyLinkStore(session_factory, timeout=settings.store_config().timeout_seconds)

    worker = ClickWorker(
        queue=queue,
        click_storage=click_storage,
        link_store=link_store,
        queue_name=settings.queue_name,
        batch_size=settings.queue_batch_size,
        block_time=int(settings.queue_worker_interval * 1000),
    )

    # Graceful shutdown: finish the batch in flight, then exit
    def _signal_handler(signum, frame):
        logger.info("shutdown signal received", signal=signum)
        worker.request_stop()

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    try:
        await worker.run()
    except Exception as e:
        logger.exception("click worker crashed", error=str(e))
        sys.exit(1)
    finally:
        await queue.close()
        engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
