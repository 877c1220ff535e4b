"""
Factory for creating click storage instances.
"""

from enum import Enum

import requests
import structlog
from sqlalchemy.orm import sessionmaker

from .strategies import ClickStorageStrategy, DatabaseClickStorage, ClickHouseClickStorage
from shortlink_app.config import Settings

logger = structlog.get_logger(__name__)


class ClickStorageBackend(Enum):
    """Available click storage backends"""
    DATABASE = "database"
    CLICKHOUSE = "clickhouse"


class ClickStorageFactory:
    """Simple factory for creating click storage instances from settings."""

    @classmethod
    def create(
        cls,
        backend: ClickStorageBackend,
        settings: Settings,
        session_factory: sessionmaker,
    ) -> ClickStorageStrategy:
        """
        Create a click storage instance.

        Args:
            backend: Type of storage backend (from enum)
            settings: Application settings
            session_factory: Session factory of the links database, used by
                the database backend

        Returns:
            New click storage instance
        """
        timeout = settings.store_config().timeout_seconds

        if backend == ClickStorageBackend.DATABASE:
            instance = DatabaseClickStorage(session_factory, timeout=max(timeout, 5.0))

        elif backend == ClickStorageBackend.CLICKHOUSE:
            instance = ClickHouseClickStorage(
                url=settings.click_storage_clickhouse_url,
                timeout=max(timeout, 5.0),
            )
            try:
                instance.ensure_schema()
            except requests.RequestException as e:
                # Retried before the first insert
                logger.error("clickhouse schema setup failed", error=str(e))

        else:
            raise ValueError(f"Unknown click storage backend: {backend}")

        logger.info("click storage created", backend=backend.value)
        return instance
