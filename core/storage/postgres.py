"""
PostgreSQL storage backend implementation.

Row-oriented store: one row per event, with every nested or repeated
child (event params, user params, device, app info, items) serialized
to its own JSONB column.

Provides:
- PostgresDatabase: pooled async engine with time budgets and error mapping
- PostgresEventRepository: append-only writes, transactional batches
- PostgresMetricsReader: totals and grouped metrics
"""

from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence, TypeVar

from pydantic import TypeAdapter
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from core.exceptions import EventStoreError, QueryError, StoreConnectionError
from core.logging import get_logger
from core.storage.base import (
    BATCH_TIMEOUT,
    EVENTS_TABLE,
    EXEC_TIMEOUT,
    PING_TIMEOUT,
    SELECT_TIMEOUT,
    EventRepository,
    with_timeout,
)
from core.storage.query_builder import POSTGRES_DIALECT, SqlMetricsReader
from domain.event import AppInfo, Device, Event, Item, Param


logger = get_logger(__name__)

T = TypeVar("T")

_PARAMS = TypeAdapter(tuple[Param, ...])
_ITEMS = TypeAdapter(tuple[Item, ...])
_DEVICE = TypeAdapter(Device)
_APP_INFO = TypeAdapter(AppInfo)


CREATE_TABLE_STATEMENTS = (
    f"""
    CREATE TABLE IF NOT EXISTS {EVENTS_TABLE} (
        id VARCHAR(64) PRIMARY KEY,
        name VARCHAR(255) NOT NULL,
        channel_type VARCHAR(32) NOT NULL,
        timestamp BIGINT NOT NULL DEFAULT 0,
        previous_timestamp BIGINT NOT NULL DEFAULT 0,
        date TIMESTAMP WITH TIME ZONE NOT NULL,
        event_params JSONB NOT NULL DEFAULT '[]',
        user_id VARCHAR(255) NOT NULL DEFAULT '',
        user_pseudo_id VARCHAR(255) NOT NULL DEFAULT '',
        user_params JSONB NOT NULL DEFAULT '[]',
        device JSONB NOT NULL DEFAULT '{{}}',
        app_info JSONB NOT NULL DEFAULT '{{}}',
        items JSONB NOT NULL DEFAULT '[]'
    )
    """,
    f"""
    CREATE INDEX IF NOT EXISTS idx_{EVENTS_TABLE}_name_date
    ON {EVENTS_TABLE}(name, date)
    """,
    f"""
    CREATE INDEX IF NOT EXISTS idx_{EVENTS_TABLE}_user_id
    ON {EVENTS_TABLE}(user_id)
    """,
)

INSERT_EVENT_SQL = f"""
    INSERT INTO {EVENTS_TABLE} (
        id, name, channel_type, timestamp, previous_timestamp, date,
        event_params, user_id, user_pseudo_id, user_params,
        device, app_info, items
    ) VALUES (
        :id, :name, :channel_type, :timestamp, :previous_timestamp, :date,
        CAST(:event_params AS JSONB), :user_id, :user_pseudo_id, CAST(:user_params AS JSONB),
        CAST(:device AS JSONB), CAST(:app_info AS JSONB), CAST(:items AS JSONB)
    )
"""

SELECT_EVENT_SQL = f"""
    SELECT
        id, name, channel_type, timestamp, previous_timestamp, date,
        event_params, user_id, user_pseudo_id, user_params,
        device, app_info, items
    FROM {EVENTS_TABLE}
    WHERE id = :id
"""


def _is_connection_failure(exc: BaseException) -> bool:
    if isinstance(exc, (OperationalError, InterfaceError, OSError)):
        return True
    return isinstance(exc, DBAPIError) and exc.connection_invalidated


def wrap_error(operation: str, exc: BaseException) -> EventStoreError:
    """Map a driver failure onto the event store taxonomy."""
    if _is_connection_failure(exc):
        return StoreConnectionError(f"{operation}: {exc}")
    return QueryError(operation, exc)


class PostgresDatabase:
    """
    Pooled async PostgreSQL access.

    The pool is sized once here and never changed at runtime.
    Every call runs under one of the fixed time budgets.
    """

    def __init__(
        self,
        url: str,
        *,
        pool_size: int = 5,
        max_overflow: int = 20,
        pool_recycle: int = 300,
        echo: bool = False,
        engine: Optional[AsyncEngine] = None,
    ):
        """
        Initialize the engine (no connection is opened yet).

        Args:
            url: PostgreSQL async connection URI (asyncpg format)
            pool_size: Connections kept open in the pool
            max_overflow: Extra connections allowed above pool_size
            pool_recycle: Seconds before an idle connection is replaced
            echo: Whether to echo SQL statements
            engine: Pre-built engine, mainly for tests
        """
        self._engine = engine or create_async_engine(
            url,
            echo=echo,
            pool_pre_ping=True,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_recycle=pool_recycle,
        )

    async def _guard(self, awaitable: Awaitable[T], timeout: float, operation: str) -> T:
        try:
            return await with_timeout(awaitable, timeout, operation)
        except (SQLAlchemyError, OSError) as exc:
            raise wrap_error(operation, exc) from exc

    async def check_connection(self) -> None:
        """Verify the database is reachable."""

        async def _ping() -> None:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))

        try:
            await with_timeout(_ping(), PING_TIMEOUT, "failed to connect to PostgreSQL")
        except QueryError as exc:
            raise StoreConnectionError(str(exc)) from exc
        except (SQLAlchemyError, OSError) as exc:
            raise StoreConnectionError(f"failed to connect to PostgreSQL: {exc}") from exc

    async def execute(
        self,
        sql: str,
        parameters: Optional[Mapping[str, Any]] = None,
        *,
        operation: str,
    ) -> None:
        """Execute one statement in its own transaction."""

        async def _run() -> None:
            async with self._engine.begin() as conn:
                await conn.execute(text(sql), dict(parameters or {}))

        await self._guard(_run(), EXEC_TIMEOUT, operation)

    async def fetch_one(
        self,
        sql: str,
        parameters: Optional[Mapping[str, Any]] = None,
        *,
        operation: str,
    ) -> Optional[Mapping[str, Any]]:
        async def _run() -> Optional[Mapping[str, Any]]:
            async with self._engine.connect() as conn:
                result = await conn.execute(text(sql), dict(parameters or {}))
                row = result.mappings().first()
                return dict(row) if row is not None else None

        return await self._guard(_run(), EXEC_TIMEOUT, operation)

    async def fetch_all(
        self,
        sql: str,
        parameters: Optional[Mapping[str, Any]] = None,
        *,
        operation: str,
    ) -> list[Mapping[str, Any]]:
        async def _run() -> list[Mapping[str, Any]]:
            async with self._engine.connect() as conn:
                result = await conn.execute(text(sql), dict(parameters or {}))
                return [dict(row) for row in result.mappings().all()]

        return await self._guard(_run(), SELECT_TIMEOUT, operation)

    async def run_in_transaction(
        self,
        fn: Callable[[AsyncConnection], Awaitable[T]],
        *,
        operation: str,
    ) -> T:
        """
        Run ``fn`` inside a single transaction.

        Any exception raised by ``fn`` rolls the whole transaction back.
        """

        async def _run() -> T:
            async with self._engine.begin() as conn:
                return await fn(conn)

        return await self._guard(_run(), BATCH_TIMEOUT, operation)

    async def close(self) -> None:
        await self._engine.dispose()


def to_row(event: Event) -> dict[str, Any]:
    """Serialize an event into the row-store column layout."""
    return {
        "id": event.id,
        "name": event.name,
        "channel_type": event.channel_type.value,
        "timestamp": event.timestamp,
        "previous_timestamp": event.previous_timestamp,
        "date": event.date,
        "event_params": _PARAMS.dump_json(event.event_params).decode(),
        "user_id": event.user_id,
        "user_pseudo_id": event.user_pseudo_id,
        "user_params": _PARAMS.dump_json(event.user_params).decode(),
        "device": _DEVICE.dump_json(event.device).decode(),
        "app_info": _APP_INFO.dump_json(event.app_info).decode(),
        "items": _ITEMS.dump_json(event.items).decode(),
    }


def _load(adapter: TypeAdapter, value: Any) -> Any:
    # asyncpg hands JSONB back as text unless a codec is registered
    if isinstance(value, (str, bytes)):
        return adapter.validate_json(value)
    return adapter.validate_python(value)


def from_row(row: Mapping[str, Any]) -> Event:
    """Rebuild an event from a row-store row."""
    return Event(
        id=row["id"],
        name=row["name"],
        channel_type=row["channel_type"],
        timestamp=row["timestamp"],
        previous_timestamp=row["previous_timestamp"],
        date=row["date"],
        event_params=_load(_PARAMS, row["event_params"]),
        user_id=row["user_id"],
        user_pseudo_id=row["user_pseudo_id"],
        user_params=_load(_PARAMS, row["user_params"]),
        device=_load(_DEVICE, row["device"]),
        app_info=_load(_APP_INFO, row["app_info"]),
        items=_load(_ITEMS, row["items"]),
    )


class PostgresEventRepository(EventRepository):
    """
    PostgreSQL-based event repository.

    ``save_batch`` is atomic: all events are inserted inside one
    transaction and a single failing insert rolls back the whole batch.
    """

    def __init__(self, database: PostgresDatabase):
        self._db = database

    async def setup(self) -> None:
        """Create the events table and indexes if they don't exist."""
        for statement in CREATE_TABLE_STATEMENTS:
            await self._db.execute(statement, operation="failed to create events table")
        logger.info("PostgreSQL event repository initialized", table=EVENTS_TABLE)

    async def save(self, event: Event) -> None:
        await self._db.execute(
            INSERT_EVENT_SQL,
            to_row(event),
            operation="failed to insert event",
        )
        logger.debug("Event saved", event_id=event.id, name=event.name)

    async def save_batch(self, events: Sequence[Event]) -> None:
        if not events:
            return

        rows = [to_row(event) for event in events]
        statement = text(INSERT_EVENT_SQL)

        async def _insert_all(conn: AsyncConnection) -> None:
            for row in rows:
                try:
                    await conn.execute(statement, row)
                except SQLAlchemyError as exc:
                    raise wrap_error("failed to insert event in batch", exc) from exc

        await self._db.run_in_transaction(
            _insert_all,
            operation="failed to batch insert events",
        )
        logger.info("Event batch saved", count=len(rows))

    async def get(self, event_id: str) -> Optional[Event]:
        row = await self._db.fetch_one(
            SELECT_EVENT_SQL,
            {"id": event_id},
            operation="failed to get event",
        )
        if row is None:
            return None
        return from_row(row)

    async def close(self) -> None:
        """Close database engine."""
        await self._db.close()
        logger.info("PostgreSQL event repository closed")


class PostgresMetricsReader(SqlMetricsReader):
    """Metrics over the row store using PostgreSQL date functions."""

    dialect = POSTGRES_DIALECT

    def __init__(self, database: PostgresDatabase):
        self._db = database

    async def _fetch_totals(self, sql: str, parameters: dict[str, Any]) -> Mapping[str, Any]:
        row = await self._db.fetch_one(sql, parameters, operation="failed to query totals")
        return row or {"total_count": 0, "unique_user_count": 0}

    async def _fetch_groups(self, sql: str, parameters: dict[str, Any]) -> list[Mapping[str, Any]]:
        return await self._db.fetch_all(
            sql,
            parameters,
            operation="failed to query grouped metrics",
        )
