"""
Pytest configuration and fixtures.

The stores are replaced by in-memory fakes:
- FakePostgresDatabase stands in for PostgresDatabase
- FakeClickHouseClient stands in for the clickhouse-connect async client,
  so the real ClickHouseDatabase wrapper is exercised

Both fakes evaluate the metrics SQL produced by the query builder against
the rows they hold, so metrics tests run the real statements end to end.
"""

import copy
import os
import re
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping, Optional

import pytest
from clickhouse_connect.driver.exceptions import DatabaseError
from sqlalchemy.exc import ProgrammingError

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Set test environment
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("DEBUG", "false")

from core.storage.clickhouse import EVENT_COLUMNS, ClickHouseDatabase
from domain.event import ChannelType, Event


# --- Metrics SQL evaluation --------------------------------------------------

_BOUND_RE = {
    ">=": re.compile(r"date >= \W*(p\d+)"),
    "<=": re.compile(r"date <= \W*(p\d+)"),
}


def _group_key(sql: str) -> Optional[Callable[[Mapping[str, Any]], str]]:
    if "GROUP BY channel_type" in sql:
        return lambda row: row["channel_type"]
    if "GROUP BY DATE(date AT TIME ZONE 'UTC')" in sql or "GROUP BY toDate(date, 'UTC')" in sql:
        return lambda row: row["date"].astimezone(timezone.utc).strftime("%Y-%m-%d")
    if (
        "GROUP BY DATE_TRUNC('hour', date AT TIME ZONE 'UTC')" in sql
        or "GROUP BY toStartOfHour(date, 'UTC')" in sql
    ):
        return lambda row: row["date"].astimezone(timezone.utc).strftime("%Y-%m-%d %H:00:00")
    return None


def evaluate_metrics(sql: str, parameters: Mapping[str, Any], rows: list[Mapping[str, Any]]) -> list[dict]:
    """Tiny interpreter for the two statement shapes MetricsQueryBuilder emits."""
    selected = [row for row in rows if row["name"] == parameters["p1"]]
    for operator, pattern in _BOUND_RE.items():
        match = pattern.search(sql)
        if match is None:
            continue
        bound = parameters[match.group(1)]
        if operator == ">=":
            selected = [row for row in selected if row["date"] >= bound]
        else:
            selected = [row for row in selected if row["date"] <= bound]

    key_fn = _group_key(sql)
    if key_fn is None:
        return [{
            "total_count": len(selected),
            "unique_user_count": len({row["user_id"] for row in selected}),
        }]

    groups: dict[str, list[Mapping[str, Any]]] = {}
    for row in selected:
        groups.setdefault(key_fn(row), []).append(row)

    return [
        {
            "group_key": key,
            "total_count": len(members),
            "unique_user_count": len({row["user_id"] for row in members}),
        }
        for key, members in sorted(groups.items())
    ]


# --- PostgreSQL fake ---------------------------------------------------------

class FakeConnection:
    """Connection handed to run_in_transaction callbacks."""

    def __init__(self, database: "FakePostgresDatabase"):
        self._db = database

    async def execute(self, statement: Any, parameters: Mapping[str, Any]) -> None:
        self._db.insert_row(str(statement), parameters)


class FakePostgresDatabase:
    """In-memory stand-in for PostgresDatabase."""

    def __init__(self) -> None:
        self.rows: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self.transactions = 0
        self.rollbacks = 0
        self.fail_on_insert: Optional[int] = None
        self._inserts = 0
        self.closed = False

    def insert_row(self, sql: str, parameters: Mapping[str, Any]) -> None:
        assert "INSERT INTO events" in sql
        self._inserts += 1
        if self.fail_on_insert is not None and self._inserts == self.fail_on_insert:
            raise ProgrammingError(sql, dict(parameters), Exception("insert rejected"))
        self.rows[parameters["id"]] = dict(parameters)

    async def check_connection(self) -> None:
        self.calls.append(("ping", ""))

    async def execute(self, sql: str, parameters: Optional[Mapping[str, Any]] = None, *, operation: str) -> None:
        self.calls.append(("execute", sql))
        if "INSERT INTO events" in sql:
            self.insert_row(sql, parameters or {})

    async def fetch_one(self, sql: str, parameters: Optional[Mapping[str, Any]] = None, *, operation: str):
        self.calls.append(("fetch_one", sql))
        parameters = parameters or {}
        if "WHERE id = :id" in sql:
            row = self.rows.get(parameters["id"])
            return dict(row) if row is not None else None
        return evaluate_metrics(sql, parameters, list(self.rows.values()))[0]

    async def fetch_all(self, sql: str, parameters: Optional[Mapping[str, Any]] = None, *, operation: str):
        self.calls.append(("fetch_all", sql))
        return evaluate_metrics(sql, parameters or {}, list(self.rows.values()))

    async def run_in_transaction(self, fn: Callable[[Any], Awaitable[Any]], *, operation: str) -> Any:
        self.calls.append(("transaction", operation))
        self.transactions += 1
        snapshot = copy.deepcopy(self.rows)
        try:
            return await fn(FakeConnection(self))
        except Exception:
            self.rows = snapshot
            self.rollbacks += 1
            raise

    async def close(self) -> None:
        self.closed = True


# --- ClickHouse fake ---------------------------------------------------------

class FakeQueryResult:
    def __init__(self, rows: list[dict[str, Any]]):
        self._rows = rows

    def named_results(self):
        return iter(self._rows)


class FakeClickHouseClient:
    """
    In-memory stand-in for clickhouse_connect's AsyncClient.

    Keeps the ``events`` rows and the migration ledger; every other
    command is only recorded in ``executed``.
    """

    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []
        self.ledger: dict[str, str] = {}
        self.ledger_exists = False
        self.executed: list[str] = []
        self.inserts = 0
        self.fail_on_insert: Optional[int] = None
        self.fail_on_statement: Optional[str] = None
        self.alive = True
        self.closed = False

    async def ping(self) -> bool:
        return self.alive

    async def close(self) -> None:
        self.closed = True

    async def command(self, sql: str, parameters: Optional[dict] = None) -> Any:
        parameters = parameters or {}
        if "CREATE TABLE IF NOT EXISTS schema_migrations" in sql:
            self.ledger_exists = True
            return None
        if sql.startswith("INSERT INTO schema_migrations"):
            self.ledger[parameters["version"]] = parameters["name"]
            return None
        if sql.startswith("ALTER TABLE schema_migrations DELETE"):
            self.ledger.pop(parameters["version"], None)
            return None

        if self.fail_on_statement is not None and self.fail_on_statement in sql:
            raise DatabaseError(f"Code: 62. Syntax error in: {sql}")
        self.executed.append(sql)
        return None

    async def query(self, sql: str, parameters: Optional[dict] = None) -> FakeQueryResult:
        parameters = parameters or {}
        if "system.tables" in sql:
            return FakeQueryResult([{"n": 1 if self.ledger_exists else 0}])
        if sql.startswith("SELECT version FROM schema_migrations"):
            return FakeQueryResult([{"version": version} for version in self.ledger])
        if "WHERE id = %(id)s" in sql:
            rows = [row for row in self.events if row["id"] == parameters["id"]]
            return FakeQueryResult([dict(row) for row in rows[:1]])
        return FakeQueryResult(evaluate_metrics(sql, parameters, self.events))

    async def insert(self, table: str, data: list, column_names: Optional[list] = None) -> None:
        assert table == "events"
        assert list(column_names) == list(EVENT_COLUMNS)
        self.inserts += 1
        if self.fail_on_insert is not None and self.inserts == self.fail_on_insert:
            raise DatabaseError("Code: 241. Memory limit exceeded")
        for values in data:
            assert len(values) == len(column_names)
            self.events.append(dict(zip(column_names, values)))


# --- Fixtures ----------------------------------------------------------------

@pytest.fixture
def make_event() -> Callable[..., Event]:
    """Factory for events with sensible defaults."""

    def _make(**overrides: Any) -> Event:
        fields: dict[str, Any] = {
            "name": "page_view",
            "channel_type": ChannelType.WEB,
            "date": datetime(2024, 3, 1, 12, 30, tzinfo=timezone.utc),
            "user_id": "u1",
            "user_pseudo_id": "pseudo-1",
        }
        fields.update(overrides)
        return Event.create(**fields)

    return _make


@pytest.fixture
def fake_pg() -> FakePostgresDatabase:
    return FakePostgresDatabase()


@pytest.fixture
def fake_ch_client() -> FakeClickHouseClient:
    return FakeClickHouseClient()


@pytest.fixture
def ch_database(fake_ch_client: FakeClickHouseClient) -> ClickHouseDatabase:
    return ClickHouseDatabase(client=fake_ch_client)
