"""
Link store: the authoritative short code -> link mapping.

The service layer only sees LinkRecord snapshots and LinkError subclasses;
SQLAlchemy sessions and driver errors stay inside this module.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, List, Mapping, Optional, Tuple, TypeVar

import structlog
from sqlalchemy import case, func, or_, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from shortlink_app.exceptions import CodeAlreadyTaken, StoreUnavailable
from shortlink_app.models import Link
from shortlink_app.schemas import LinkRecord, UserStats

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class LinkStore(ABC):
    """What the link service needs from persistence."""

    @abstractmethod
    async def insert(self, values: Mapping[str, Any]) -> LinkRecord:
        """
        Insert a link; the unique index on short_code decides conflicts.

        Raises:
            CodeAlreadyTaken: short_code already exists
            StoreUnavailable: store failure or timeout
        """

    @abstractmethod
    async def get_by_short_code(self, short_code: str) -> Optional[LinkRecord]:
        """Point lookup, including inactive links."""

    @abstractmethod
    async def get_by_id(self, link_id: str) -> Optional[LinkRecord]:
        pass

    @abstractmethod
    async def update_fields(
        self, link_id: str, owner_id: str, fields: Mapping[str, Any]
    ) -> Optional[LinkRecord]:
        """Update an active link owned by owner_id; None if no row matched."""

    @abstractmethod
    async def deactivate(self, link_id: str, owner_id: str) -> Optional[LinkRecord]:
        """Soft delete; None if no active row owned by owner_id matched."""

    @abstractmethod
    async def increment_click_counts(self, counts: Mapping[str, int]) -> None:
        """Atomically add counts[link_id] to each link's click_count."""

    @abstractmethod
    async def list_for_owner(
        self,
        owner_id: str,
        offset: int,
        limit: int,
        campaign: Optional[str] = None,
        search: Optional[str] = None,
        include_inactive: bool = False,
    ) -> Tuple[List[LinkRecord], int]:
        """Newest first. Returns (links, total matching)."""

    @abstractmethod
    async def stats_for_owner(self, owner_id: str) -> UserStats:
        pass


class SQLAlchemyLinkStore(LinkStore):
    """
    LinkStore on a synchronous SQLAlchemy engine.

    Each operation opens its own session in a worker thread so concurrent
    requests never share one, and is bounded by ``timeout`` seconds. A timed
    out write may still commit in the background, which is why writes are
    never retried by the service.
    """

    def __init__(self, session_factory: sessionmaker, timeout: float = 2.0):
        self.session_factory = session_factory
        self.timeout = timeout

    async def _run(self, operation: str, work: Callable[[Session], T]) -> T:
        def call() -> T:
            with self.session_factory() as session:
                return work(session)

        try:
            return await asyncio.wait_for(asyncio.to_thread(call), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error("link store timeout", operation=operation, timeout=self.timeout)
            raise StoreUnavailable() from e
        except (DBAPIError, SQLAlchemyError) as e:
            logger.error("link store failure", operation=operation, error=str(e))
            raise StoreUnavailable() from e

    async def insert(self, values: Mapping[str, Any]) -> LinkRecord:
        def work(session: Session) -> LinkRecord:
            link = Link(**values)
            session.add(link)
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise CodeAlreadyTaken(values["short_code"]) from e
            return LinkRecord.model_validate(link)

        return await self._run("insert", work)

    async def get_by_short_code(self, short_code: str) -> Optional[LinkRecord]:
        def work(session: Session) -> Optional[LinkRecord]:
            link = session.scalar(select(Link).where(Link.short_code == short_code))
            return LinkRecord.model_validate(link) if link else None

        return await self._run("get_by_short_code", work)

    async def get_by_id(self, link_id: str) -> Optional[LinkRecord]:
        def work(session: Session) -> Optional[LinkRecord]:
            link = session.get(Link, link_id)
            return LinkRecord.model_validate(link) if link else None

        return await self._run("get_by_id", work)

    async def update_fields(
        self, link_id: str, owner_id: str, fields: Mapping[str, Any]
    ) -> Optional[LinkRecord]:
        def work(session: Session) -> Optional[LinkRecord]:
            # Ownership and liveness are part of the WHERE clause, so the
            # check and the write happen in one statement
            result = session.execute(
                update(Link)
                .where(Link.id == link_id, Link.owner_id == owner_id, Link.is_active == True)  # noqa: E712
                .values(**fields, updated_at=datetime.now(timezone.utc))
            )
            if result.rowcount == 0:
                session.rollback()
                return None
            session.commit()
            return LinkRecord.model_validate(session.get(Link, link_id, populate_existing=True))

        return await self._run("update_fields", work)

    async def deactivate(self, link_id: str, owner_id: str) -> Optional[LinkRecord]:
        return await self.update_fields(link_id, owner_id, {"is_active": False})

    async def increment_click_counts(self, counts: Mapping[str, int]) -> None:
        def work(session: Session) -> None:
            for link_id, count in counts.items():
                session.execute(
                    update(Link)
                    .where(Link.id == link_id)
                    .values(click_count=Link.click_count + count)
                )
            session.commit()

        if counts:
            await self._run("increment_click_counts", work)

    async def list_for_owner(
        self,
        owner_id: str,
        offset: int,
        limit: int,
        campaign: Optional[str] = None,
        search: Optional[str] = None,
        include_inactive: bool = False,
    ) -> Tuple[List[LinkRecord], int]:
        def work(session: Session) -> Tuple[List[LinkRecord], int]:
            conditions = [Link.owner_id == owner_id]
            if not include_inactive:
                conditions.append(Link.is_active == True)  # noqa: E712
            if campaign:
                conditions.append(Link.campaign == campaign)
            if search:
                pattern = f"%{search}%"
                conditions.append(or_(Link.title.ilike(pattern), Link.original_url.ilike(pattern)))

            total = session.scalar(select(func.count(Link.id)).where(*conditions)) or 0
            links = session.scalars(
                select(Link)
                .where(*conditions)
                .order_by(Link.created_at.desc(), Link.id)
                .offset(offset)
                .limit(limit)
            ).all()
            return [LinkRecord.model_validate(link) for link in links], total

        return await self._run("list_for_owner", work)

    async def stats_for_owner(self, owner_id: str) -> UserStats:
        def work(session: Session) -> UserStats:
            row = session.execute(
                select(
                    func.count(Link.id),
                    func.count(case((Link.is_active == True, 1))),  # noqa: E712
                    func.coalesce(func.sum(Link.click_count), 0),
                    func.count(Link.campaign),
                ).where(Link.owner_id == owner_id)
            ).one()
            return UserStats(
                owner_id=owner_id,
                total_links=row[0],
                active_links=row[1],
                total_clicks=row[2],
                campaign_links=row[3],
            )

        return await self._run("stats_for_owner", work)
