"""
Test configuration and fixtures for the link core.

Every test gets its own SQLite file and in-memory cache/queue, so tests are
isolated and need neither Redis nor a running worker.
"""

import pytest
from fastapi.testclient import TestClient

from main import create_app
from shortlink_app.cache.strategies import InMemoryCache
from shortlink_app.config import Settings
from shortlink_app.database.connection import create_db_engine, create_session_factory, init_db
from shortlink_app.hit_processor.click_recorder import ClickRecorder
from shortlink_app.hit_processor.click_worker import ClickWorker
from shortlink_app.queue.strategies import InMemoryQueue
from shortlink_app.services.code_generator import CodeGenerator, RandomShortCodeStrategy
from shortlink_app.services.link_service import LinkService
from shortlink_app.storage.link_store import SQLAlchemyLinkStore
from shortlink_app.storage.strategies import DatabaseClickStorage

QUEUE_NAME = "test_clicks"


@pytest.fixture(scope="function")
def test_settings(tmp_path):
    """Settings pointing at a throwaway database and in-memory backends."""
    return Settings(
        _env_file=None,
        environment="test",
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        cache_backend="memory",
        queue_backend="memory",
        queue_name=QUEUE_NAME,
        queue_worker_interval=0.05,
        run_click_worker=True,
        password_hash_rounds=4,
        log_json=False,
    )


@pytest.fixture(scope="function")
def engine(test_settings):
    engine = create_db_engine(test_settings.database_url)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture(scope="function")
def link_store(session_factory):
    return SQLAlchemyLinkStore(session_factory, timeout=5.0)


@pytest.fixture(scope="function")
def click_storage(session_factory):
    return DatabaseClickStorage(session_factory)


@pytest.fixture(scope="function")
def cache():
    return InMemoryCache()


@pytest.fixture(scope="function")
def queue():
    return InMemoryQueue(max_length=10_000, poll_interval=0.001)


@pytest.fixture(scope="function")
def recorder(queue):
    return ClickRecorder(queue, queue_name=QUEUE_NAME, buffer_size=1_000, retry_backoff=0.001)


@pytest.fixture(scope="function")
def worker(queue, click_storage, link_store):
    return ClickWorker(
        queue=queue,
        click_storage=click_storage,
        link_store=link_store,
        queue_name=QUEUE_NAME,
        batch_size=50,
        block_time=0,
        error_backoff=0.01,
    )


@pytest.fixture(scope="function")
def link_service(link_store, cache, recorder):
    """LinkService wired to the per-test store and in-memory backends."""
    return LinkService(
        link_store=link_store,
        cache=cache,
        recorder=recorder,
        code_generator=CodeGenerator(RandomShortCodeStrategy(length=7), max_retries=5),
        cache_ttl=3600,
        read_retries=2,
        read_backoff=0.001,
        invalidate_retries=2,
        password_rounds=4,
    )


@pytest.fixture(scope="function")
def client(test_settings):
    """
    Test client running the full application lifespan.
    This is the main fixture that API tests use.
    """
    app = create_app(test_settings)
    with TestClient(app) as test_client:
        yield test_client
