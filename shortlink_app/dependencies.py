"""
Component wiring and FastAPI dependencies.

build_components() constructs every collaborator explicitly from settings;
the application owns the result (on app.state) and drives its lifecycle:

    start()  -> connect cache, start click recorder and worker
    close()  -> flush recorder, wait for webhooks, stop and drain worker,
                close connections

Nothing here is a module-level singleton, so tests and the standalone
worker build their own components.
"""

from dataclasses import dataclass
from typing import Optional

import structlog
from fastapi import Request
from sqlalchemy.engine import Engine

from shortlink_app.cache.factory import CacheBackend, CacheFactory
from shortlink_app.cache.strategies import CacheStrategy
from shortlink_app.config import Settings
from shortlink_app.database.connection import create_db_engine, create_session_factory, init_db
from shortlink_app.hit_processor.click_recorder import ClickRecorder
from shortlink_app.hit_processor.click_worker import ClickWorker
from shortlink_app.queue.factory import QueueBackend, QueueFactory
from shortlink_app.queue.strategies import QueueStrategy
from shortlink_app.services.code_generator import CodeGenerator, RandomShortCodeStrategy
from shortlink_app.services.link_service import LinkService
from shortlink_app.services.webhooks import WebhookNotifier
from shortlink_app.storage.factory import ClickStorageBackend, ClickStorageFactory
from shortlink_app.storage.link_store import SQLAlchemyLinkStore

logger = structlog.get_logger(__name__)


@dataclass
class Components:
    """Everything one process needs, built once and torn down once."""

    settings: Settings
    engine: Engine
    cache: CacheStrategy
    queue: QueueStrategy
    recorder: ClickRecorder
    link_service: LinkService
    webhooks: WebhookNotifier
    worker: Optional[ClickWorker] = None

    async def start(self) -> None:
        await self.cache.connect()
        await self.recorder.start()
        if self.worker is not None:
            await self.worker.start()
        logger.info("components started", worker=self.worker is not None)

    async def close(self) -> None:
        await self.recorder.stop()
        await self.webhooks.close()
        if self.worker is not None:
            await self.worker.stop()
            await self.worker.drain()
        await self.cache.close()
        await self.queue.close()
        self.engine.dispose()
        logger.info("components closed")


def build_components(settings: Settings) -> Components:
    """
    Build the link core from settings.

    Tables are created here; the caller still has to await start().
    """
    store_config = settings.store_config()
    cache_config = settings.cache_config()

    engine = create_db_engine(settings.database_url)
    init_db(engine)
    session_factory = create_session_factory(engine)
    link_store = SQLAlchemyLinkStore(session_factory, timeout=store_config.timeout_seconds)

    cache = CacheFactory.create(CacheBackend(settings.cache_backend), settings)
    queue = QueueFactory.create(QueueBackend(settings.queue_backend), settings)

    recorder = ClickRecorder(
        queue,
        queue_name=settings.queue_name,
        buffer_size=settings.recorder_buffer_size,
        retry_backoff=settings.recorder_retry_backoff_ms / 1000,
    )

    worker = None
    if settings.run_click_worker:
        click_storage = ClickStorageFactory.create(
            ClickStorageBackend(settings.click_storage_backend), settings, session_factory
        )
        worker = ClickWorker(
            queue=queue,
            click_storage=click_storage,
            link_store=link_store,
            queue_name=settings.queue_name,
            batch_size=settings.queue_batch_size,
            block_time=int(settings.queue_worker_interval * 1000),
        )

    webhooks = WebhookNotifier(
        timeout=settings.webhook_timeout_ms / 1000,
        max_pending=settings.webhook_max_pending,
    )

    code_generator = CodeGenerator(
        RandomShortCodeStrategy(length=settings.short_code_length),
        max_retries=settings.max_retries,
    )

    link_service = LinkService(
        link_store=link_store,
        cache=cache,
        recorder=recorder,
        code_generator=code_generator,
        cache_ttl=cache_config.ttl_seconds,
        read_retries=store_config.max_retries,
        read_backoff=settings.store_retry_backoff_ms / 1000,
        invalidate_retries=cache_config.max_retries,
        webhooks=webhooks,
        password_rounds=settings.password_hash_rounds,
    )

    return Components(
        settings=settings,
        engine=engine,
        cache=cache,
        queue=queue,
        recorder=recorder,
        link_service=link_service,
        webhooks=webhooks,
        worker=worker,
    )


def get_link_service(request: Request) -> LinkService:
    """
    Get the LinkService of the running application.

    Controllers depend on the service only; infrastructure stays behind it.
    """
    return request.app.state.components.link_service
