"""
ClickHouse storage backend implementation.

Column-oriented analytical store. Repeated sub-entities are flattened
into parallel same-length arrays (``keys[i]`` pairs with
``string_values[i]`` / ``number_values[i]`` / ``boolean_values[i]``),
single nested objects (device, app info) into scalar columns, and
booleans are stored as 0/1 integers.

Provides:
- ClickHouseDatabase: async client with a bounded HTTP pool
- ClickHouseEventRepository: append-only, non-atomic batches
- ClickHouseMetricsReader: totals and grouped metrics
"""

from typing import Any, Awaitable, Mapping, Optional, Sequence, TypeVar

import clickhouse_connect
from clickhouse_connect.driver import httputil
from clickhouse_connect.driver.asyncclient import AsyncClient
from clickhouse_connect.driver.exceptions import ClickHouseError, OperationalError

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
from core.storage.query_builder import CLICKHOUSE_DIALECT, SqlMetricsReader
from domain.event import AppInfo, Device, Event, Item, Param


logger = get_logger(__name__)

T = TypeVar("T")


EVENT_COLUMNS: tuple[str, ...] = (
    "id",
    "name",
    "channel_type",
    "timestamp",
    "previous_timestamp",
    "date",
    "user_id",
    "user_pseudo_id",
    # Event params (parallel arrays)
    "event_param_keys",
    "event_param_string_values",
    "event_param_number_values",
    "event_param_boolean_values",
    # User params (parallel arrays)
    "user_param_keys",
    "user_param_string_values",
    "user_param_number_values",
    "user_param_boolean_values",
    # Device (flattened)
    "device_category",
    "device_mobile_brand_name",
    "device_mobile_model_name",
    "device_operating_system",
    "device_operating_system_version",
    "device_language",
    "device_browser_name",
    "device_browser_version",
    "device_hostname",
    # App info (flattened)
    "app_info_id",
    "app_info_version",
    # Items (parallel arrays)
    "item_ids",
    "item_names",
    "item_brands",
    "item_variants",
    "item_prices_in_usd",
    "item_quantities",
    "item_revenues_in_usd",
)

SELECT_EVENT_SQL = (
    f"SELECT {', '.join(EVENT_COLUMNS)} FROM {EVENTS_TABLE} "
    "WHERE id = %(id)s LIMIT 1"
)


def wrap_error(operation: str, exc: BaseException) -> EventStoreError:
    """Map a driver failure onto the event store taxonomy."""
    if isinstance(exc, (OperationalError, OSError)):
        return StoreConnectionError(f"{operation}: {exc}")
    return QueryError(operation, exc)


class ClickHouseDatabase:
    """
    Async ClickHouse access over clickhouse-connect.

    The HTTP pool is sized once when the client is opened and never
    changed afterwards. Every call runs under one of the fixed time budgets.
    """

    def __init__(
        self,
        *,
        host: str = "localhost",
        port: int = 8123,
        username: str = "default",
        password: str = "",
        database: str = "default",
        pool_size: int = 10,
        client: Optional[AsyncClient] = None,
    ):
        """
        Initialize connection parameters.

        Args:
            host: ClickHouse HTTP host
            port: ClickHouse HTTP port
            username: Login user
            password: Login password
            database: Default database for all statements
            pool_size: Maximum pooled HTTP connections
            client: Pre-built async client, mainly for tests
        """
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._database = database
        self._pool_size = pool_size
        self._client = client

    @property
    def database(self) -> str:
        return self._database

    @property
    def client(self) -> AsyncClient:
        if self._client is None:
            raise RuntimeError(
                "ClickHouse client not initialized. Call open() first."
            )
        return self._client

    async def open(self) -> None:
        """Create the async client (idempotent)."""
        if self._client is not None:
            return

        pool_mgr = httputil.get_pool_manager(maxsize=self._pool_size, num_pools=1)
        try:
            self._client = await with_timeout(
                clickhouse_connect.get_async_client(
                    host=self._host,
                    port=self._port,
                    username=self._username,
                    password=self._password,
                    database=self._database,
                    pool_mgr=pool_mgr,
                ),
                EXEC_TIMEOUT,
                "failed to connect to ClickHouse",
            )
        except QueryError as exc:
            raise StoreConnectionError(str(exc)) from exc
        except (ClickHouseError, OSError) as exc:
            raise StoreConnectionError(f"failed to connect to ClickHouse: {exc}") from exc

        logger.info(
            "ClickHouse client opened",
            host=self._host,
            database=self._database,
        )

    async def _guard(self, awaitable: Awaitable[T], timeout: float, operation: str) -> T:
        try:
            return await with_timeout(awaitable, timeout, operation)
        except (ClickHouseError, OSError) as exc:
            raise wrap_error(operation, exc) from exc

    async def check_connection(self) -> None:
        """Verify the server answers a ping."""
        await self.open()
        try:
            alive = await with_timeout(
                self.client.ping(),
                PING_TIMEOUT,
                "failed to connect to ClickHouse",
            )
        except QueryError as exc:
            raise StoreConnectionError(str(exc)) from exc
        if not alive:
            raise StoreConnectionError("failed to connect to ClickHouse: ping failed")

    async def command(
        self,
        sql: str,
        parameters: Optional[Mapping[str, Any]] = None,
        *,
        operation: str,
        timeout: float = EXEC_TIMEOUT,
    ) -> Any:
        """Execute a statement that returns no rows (DDL, ALTER, INSERT VALUES)."""
        return await self._guard(
            self.client.command(sql, parameters=dict(parameters) if parameters else None),
            timeout,
            operation,
        )

    async def query(
        self,
        sql: str,
        parameters: Optional[Mapping[str, Any]] = None,
        *,
        operation: str,
        timeout: float = SELECT_TIMEOUT,
    ) -> list[dict[str, Any]]:
        """Run a SELECT and return its rows as column-name dicts."""

        async def _run() -> list[dict[str, Any]]:
            result = await self.client.query(
                sql,
                parameters=dict(parameters) if parameters else None,
            )
            return list(result.named_results())

        return await self._guard(_run(), timeout, operation)

    async def insert(
        self,
        table: str,
        rows: Sequence[Sequence[Any]],
        column_names: Sequence[str],
        *,
        operation: str,
        timeout: float = EXEC_TIMEOUT,
    ) -> None:
        """Insert row-oriented data in a single block."""
        await self._guard(
            self.client.insert(table, list(rows), column_names=list(column_names)),
            timeout,
            operation,
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


def _flatten_params(params: Sequence[Param]) -> tuple[list, list, list, list]:
    keys: list[str] = []
    string_values: list[str] = []
    number_values: list[float] = []
    boolean_values: list[int] = []
    for param in params:
        keys.append(param.key)
        string_values.append(param.string_value)
        number_values.append(param.number_value)
        boolean_values.append(1 if param.boolean_value else 0)
    return keys, string_values, number_values, boolean_values


def _zip_params(
    keys: Sequence[str],
    string_values: Sequence[str],
    number_values: Sequence[float],
    boolean_values: Sequence[int],
) -> tuple[Param, ...]:
    return tuple(
        Param(
            key=key,
            string_value=string_value,
            number_value=number_value,
            boolean_value=bool(boolean_value),
        )
        for key, string_value, number_value, boolean_value in zip(
            keys, string_values, number_values, boolean_values, strict=True
        )
    )


def to_row(event: Event) -> list[Any]:
    """Flatten an event into a row ordered like EVENT_COLUMNS."""
    event_param_columns = _flatten_params(event.event_params)
    user_param_columns = _flatten_params(event.user_params)
    items = event.items
    device = event.device

    return [
        event.id,
        event.name,
        event.channel_type.value,
        event.timestamp,
        event.previous_timestamp,
        event.date,
        event.user_id,
        event.user_pseudo_id,
        *event_param_columns,
        *user_param_columns,
        device.category,
        device.mobile_brand_name,
        device.mobile_model_name,
        device.operating_system,
        device.operating_system_version,
        device.language,
        device.browser_name,
        device.browser_version,
        device.hostname,
        event.app_info.id,
        event.app_info.version,
        [item.id for item in items],
        [item.name for item in items],
        [item.brand for item in items],
        [item.variant for item in items],
        [item.price_in_usd for item in items],
        [item.quantity for item in items],
        [item.revenue_in_usd for item in items],
    ]


def from_row(row: Mapping[str, Any]) -> Event:
    """
    Rebuild an event from its columnar row.

    Item list/promotion/location fields and item params are not part of
    the columnar layout and come back empty.
    """
    items = tuple(
        Item(
            id=item_id,
            name=name,
            brand=brand,
            variant=variant,
            price_in_usd=price,
            quantity=quantity,
            revenue_in_usd=revenue,
        )
        for item_id, name, brand, variant, price, quantity, revenue in zip(
            row["item_ids"],
            row["item_names"],
            row["item_brands"],
            row["item_variants"],
            row["item_prices_in_usd"],
            row["item_quantities"],
            row["item_revenues_in_usd"],
            strict=True,
        )
    )

    return Event(
        id=row["id"],
        name=row["name"],
        channel_type=row["channel_type"],
        timestamp=row["timestamp"],
        previous_timestamp=row["previous_timestamp"],
        date=row["date"],
        user_id=row["user_id"],
        user_pseudo_id=row["user_pseudo_id"],
        event_params=_zip_params(
            row["event_param_keys"],
            row["event_param_string_values"],
            row["event_param_number_values"],
            row["event_param_boolean_values"],
        ),
        user_params=_zip_params(
            row["user_param_keys"],
            row["user_param_string_values"],
            row["user_param_number_values"],
            row["user_param_boolean_values"],
        ),
        device=Device(
            category=row["device_category"],
            mobile_brand_name=row["device_mobile_brand_name"],
            mobile_model_name=row["device_mobile_model_name"],
            operating_system=row["device_operating_system"],
            operating_system_version=row["device_operating_system_version"],
            language=row["device_language"],
            browser_name=row["device_browser_name"],
            browser_version=row["device_browser_version"],
            hostname=row["device_hostname"],
        ),
        app_info=AppInfo(id=row["app_info_id"], version=row["app_info_version"]),
        items=items,
    )


class ClickHouseEventRepository(EventRepository):
    """
    ClickHouse-based event repository.

    ``save_batch`` is NOT atomic. Rows are sent in blocks of at most
    ``insert_batch_size``; if a later block fails, blocks already sent
    stay committed and the caller sees the error. Re-sending the batch
    can therefore duplicate rows, since no dedup key exists.
    """

    def __init__(self, database: ClickHouseDatabase, insert_batch_size: int = 10_000):
        if insert_batch_size < 1:
            raise ValueError("insert_batch_size must be positive")
        self._db = database
        self._insert_batch_size = insert_batch_size

    async def setup(self) -> None:
        """Open the client. The schema itself is owned by the migrator."""
        await self._db.open()
        logger.info("ClickHouse event repository initialized", table=EVENTS_TABLE)

    async def save(self, event: Event) -> None:
        await self._db.insert(
            EVENTS_TABLE,
            [to_row(event)],
            EVENT_COLUMNS,
            operation="failed to insert event",
        )
        logger.debug("Event saved", event_id=event.id, name=event.name)

    async def save_batch(self, events: Sequence[Event]) -> None:
        if not events:
            return

        rows = [to_row(event) for event in events]
        await with_timeout(
            self._insert_blocks(rows),
            BATCH_TIMEOUT,
            "failed to batch insert events",
        )
        logger.info("Event batch saved", count=len(rows))

    async def _insert_blocks(self, rows: list[list[Any]]) -> None:
        size = self._insert_batch_size
        for start in range(0, len(rows), size):
            await self._db.insert(
                EVENTS_TABLE,
                rows[start:start + size],
                EVENT_COLUMNS,
                operation="failed to batch insert events",
                timeout=BATCH_TIMEOUT,
            )

    async def get(self, event_id: str) -> Optional[Event]:
        rows = await self._db.query(
            SELECT_EVENT_SQL,
            {"id": event_id},
            operation="failed to get event",
            timeout=EXEC_TIMEOUT,
        )
        if not rows:
            return None
        return from_row(rows[0])

    async def close(self) -> None:
        """Close ClickHouse client."""
        await self._db.close()
        logger.info("ClickHouse event repository closed")


class ClickHouseMetricsReader(SqlMetricsReader):
    """Metrics over the column store using ClickHouse date functions."""

    dialect = CLICKHOUSE_DIALECT

    def __init__(self, database: ClickHouseDatabase):
        self._db = database

    async def _fetch_totals(self, sql: str, parameters: dict[str, Any]) -> Mapping[str, Any]:
        rows = await self._db.query(
            sql,
            parameters,
            operation="failed to query totals",
            timeout=EXEC_TIMEOUT,
        )
        return rows[0] if rows else {"total_count": 0, "unique_user_count": 0}

    async def _fetch_groups(self, sql: str, parameters: dict[str, Any]) -> list[Mapping[str, Any]]:
        return await self._db.query(
            sql,
            parameters,
            operation="failed to query grouped metrics",
        )
