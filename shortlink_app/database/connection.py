"""
Database engine and session factory.

The engine is built from an explicit URL so the API process, the standalone
worker and the tests each own their engine instead of sharing a module global.
"""

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker


class Base(DeclarativeBase):
    pass


def create_db_engine(database_url: str) -> Engine:
    """Create an engine; SQLite connections are shared with worker threads."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": 15}
    return create_engine(database_url, connect_args=connect_args, pool_pre_ping=True)


def create_session_factory(engine: Engine) -> sessionmaker:
    # Records are converted to pydantic snapshots after commit, so keep
    # attributes loaded instead of expiring them.
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create tables for all registered models."""
    # Import models to ensure they're registered with Base
    from shortlink_app import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
