"""
Click storage strategies using Strategy Pattern.

Where the click worker writes click events:
- Database: the clicks table next to links (default, zero setup)
- ClickHouse: columnar store for high click volumes

Only writes live here; aggregation/reporting is done by whatever reads
these tables.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Sequence

import requests
import structlog
from sqlalchemy import func, insert, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from shortlink_app.exceptions import StoreUnavailable
from shortlink_app.models import Click
from shortlink_app.queue.models import ClickEvent

logger = structlog.get_logger(__name__)


class ClickStorageStrategy(ABC):
    """
    Abstract base class for click storage strategies.

    store_clicks() must raise on failure: the worker only acks a batch once
    it returned, which is what makes delivery at-least-once.
    """

    @abstractmethod
    async def store_clicks(self, events: Sequence[ClickEvent]) -> None:
        """
        Append click events in one batch.

        Raises:
            StoreUnavailable: nothing (or not everything) was written
        """


class DatabaseClickStorage(ClickStorageStrategy):
    """Click rows in the relational database, via SQLAlchemy."""

    def __init__(self, session_factory: sessionmaker, timeout: float = 5.0):
        self.session_factory = session_factory
        self.timeout = timeout

    async def store_clicks(self, events: Sequence[ClickEvent]) -> None:
        if not events:
            return

        rows = [event.model_dump() for event in events]

        def work() -> None:
            with self.session_factory() as session:
                session.execute(insert(Click), rows)
                session.commit()

        try:
            await asyncio.wait_for(asyncio.to_thread(work), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise StoreUnavailable("Click storage timed out") from e
        except SQLAlchemyError as e:
            logger.error("click storage failure", error=str(e), batch=len(events))
            raise StoreUnavailable("Click storage failed") from e

    async def count_clicks(self, link_id: str) -> int:
        """Number of stored click rows for a link."""
        def work() -> int:
            with self.session_factory() as session:
                return session.scalar(
                    select(func.count(Click.id)).where(Click.link_id == link_id)
                ) or 0

        return await asyncio.to_thread(work)


class ClickHouseClickStorage(ClickStorageStrategy):
    """
    ClickHouse implementation over its HTTP interface.

    Table design:
    - MergeTree engine
    - Partitioned by month
    - Ordered by (link_id, timestamp)
    """

    COLUMNS = (
        "timestamp", "event_id", "link_id", "short_code", "ip_address", "user_agent",
        "referrer", "country", "device_type", "browser", "os", "is_bot",
    )

    def __init__(self, url: str = "http://localhost:8123", table: str = "shortlink.clicks", timeout: float = 5.0):
        """
        Args:
            url: ClickHouse HTTP endpoint
            table: Fully qualified target table
            timeout: HTTP timeout in seconds
        """
        self.url = url
        self.table = table
        self.timeout = timeout
        self._schema_ready = False

    def ensure_schema(self) -> None:
        """
        Create database and table if they don't exist.

        Raises requests.RequestException when ClickHouse is unreachable or
        rejects a statement.
        """
        database = self.table.split(".")[0]
        statements = [
            f"CREATE DATABASE IF NOT EXISTS {database}",
            f"""
            CREATE TABLE IF NOT EXISTS {self.table} (
                timestamp DateTime64(3, 'UTC'),
                event_id String,
                link_id String,
                short_code String,
                ip_address String,
                user_agent String,
                referrer String,
                country String,
                device_type String,
                browser String,
                os String,
                is_bot UInt8
            )
            ENGINE = MergeTree()
            PARTITION BY toYYYYMM(timestamp)
            ORDER BY (link_id, timestamp)
            """,
        ]
        for statement in statements:
            response = requests.post(self.url, data=statement, timeout=self.timeout)
            response.raise_for_status()
        self._schema_ready = True
        logger.info("clickhouse click table ready", table=self.table)

    def _row(self, event: ClickEvent) -> str:
        values = event.model_dump()
        values["timestamp"] = event.timestamp.strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        values["is_bot"] = int(event.is_bot)
        return "\t".join(_escape_tsv(values[column]) for column in self.COLUMNS)

    async def store_clicks(self, events: Sequence[ClickEvent]) -> None:
        if not events:
            return

        if not self._schema_ready:
            try:
                await asyncio.to_thread(self.ensure_schema)
            except requests.RequestException as e:
                logger.error("clickhouse schema setup failed", error=str(e), table=self.table)
                raise StoreUnavailable("Click storage failed") from e

        body = "\n".join(self._row(event) for event in events)
        query = f"INSERT INTO {self.table} ({', '.join(self.COLUMNS)}) FORMAT TabSeparated"

        def post() -> requests.Response:
            return requests.post(
                self.url,
                params={"query": query},
                data=body.encode("utf-8"),
                timeout=self.timeout,
            )

        try:
            response = await asyncio.to_thread(post)
        except requests.RequestException as e:
            logger.error("clickhouse insert failed", error=str(e), batch=len(events))
            raise StoreUnavailable("Click storage failed") from e

        if response.status_code != 200:
            logger.error("clickhouse insert rejected", status=response.status_code, body=response.text[:200])
            raise StoreUnavailable("Click storage failed")


def _escape_tsv(value) -> str:
    if value is None:
        return ""
    text = str(value)
    return (
        text.replace("\\", "\\\\")
        .replace("\t", "\\t")
        .replace("\n", "\\n")
    )

