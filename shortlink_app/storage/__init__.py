"""
Storage module for the link core.

LinkStore is the authoritative short code mapping; click storage strategies
are the append-only sink the click worker writes to.
"""

from .link_store import LinkStore, SQLAlchemyLinkStore
from .strategies import ClickStorageStrategy, DatabaseClickStorage, ClickHouseClickStorage
from .factory import ClickStorageFactory, ClickStorageBackend

__all__ = [
    "LinkStore",
    "SQLAlchemyLinkStore",
    "ClickStorageStrategy",
    "DatabaseClickStorage",
    "ClickHouseClickStorage",
    "ClickStorageFactory",
    "ClickStorageBackend",
]
