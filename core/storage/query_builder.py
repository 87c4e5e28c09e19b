"""
Metrics query builder.

Turns a MetricsQuery into parameterized SQL for one of the supported
engines: a totals query that always runs, and an optional grouped query
when an aggregation dimension is requested.

Bind parameters are allocated by the builder itself (``p1``, ``p2``, ...)
in the order predicates are appended, so the rendered placeholders and
the parameter map always agree no matter which bounds are present.

Day and hour buckets are computed in UTC on both engines, independent of
the server or session time zone.
"""

from abc import abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

from core.logging import get_logger
from core.storage.base import EVENTS_TABLE, MetricsReader
from domain.metrics import AggregationType, GroupedMetric, MetricsQuery, MetricsResult


logger = get_logger(__name__)


@dataclass(frozen=True)
class GroupExpression:
    """How one aggregation dimension is grouped and rendered as a key."""
    group_by: str
    key: str


@dataclass(frozen=True)
class SqlDialect:
    """Engine-specific pieces of the metrics SQL."""
    name: str
    placeholder: Callable[[str], str]
    count_expr: str
    unique_users_expr: str
    groups: Mapping[AggregationType, GroupExpression]


POSTGRES_DIALECT = SqlDialect(
    name="postgres",
    # SQLAlchemy text() named binds
    placeholder=lambda name: f":{name}",
    count_expr="COUNT(*)",
    unique_users_expr="COUNT(DISTINCT user_id)",
    groups={
        AggregationType.CHANNEL: GroupExpression(
            group_by="channel_type",
            key="channel_type",
        ),
        AggregationType.DAILY: GroupExpression(
            group_by="DATE(date AT TIME ZONE 'UTC')",
            key="TO_CHAR(DATE(date AT TIME ZONE 'UTC'), 'YYYY-MM-DD')",
        ),
        AggregationType.HOURLY: GroupExpression(
            group_by="DATE_TRUNC('hour', date AT TIME ZONE 'UTC')",
            key="TO_CHAR(DATE_TRUNC('hour', date AT TIME ZONE 'UTC'), 'YYYY-MM-DD HH24:00:00')",
        ),
    },
)

CLICKHOUSE_DIALECT = SqlDialect(
    name="clickhouse",
    # clickhouse-connect client-side (pyformat) binding
    placeholder=lambda name: f"%({name})s",
    count_expr="count()",
    unique_users_expr="uniqExact(user_id)",
    groups={
        AggregationType.CHANNEL: GroupExpression(
            group_by="channel_type",
            key="channel_type",
        ),
        AggregationType.DAILY: GroupExpression(
            group_by="toDate(date, 'UTC')",
            key="toString(toDate(date, 'UTC'))",
        ),
        AggregationType.HOURLY: GroupExpression(
            group_by="toStartOfHour(date, 'UTC')",
            key="toString(toStartOfHour(date, 'UTC'))",
        ),
    },
)


@dataclass
class BuiltMetricsQuery:
    totals_sql: str
    grouped_sql: Optional[str]
    parameters: dict[str, Any] = field(default_factory=dict)


class MetricsQueryBuilder:
    """
    Incrementally builds the WHERE clause and the metrics statements.

    Usage:
        builder = MetricsQueryBuilder(POSTGRES_DIALECT)
        built = builder.build(query)
        totals = await db.fetch_one(built.totals_sql, built.parameters)
    """

    def __init__(self, dialect: SqlDialect, table: str = EVENTS_TABLE):
        self._dialect = dialect
        self._table = table
        self._predicates: list[str] = []
        self._parameters: dict[str, Any] = {}

    @property
    def parameters(self) -> dict[str, Any]:
        return dict(self._parameters)

    def bind(self, value: Any) -> str:
        """Allocate the next parameter name for ``value`` and return its placeholder."""
        name = f"p{len(self._parameters) + 1}"
        self._parameters[name] = value
        return self._dialect.placeholder(name)

    def where(self, column: str, operator: str, value: Any) -> "MetricsQueryBuilder":
        self._predicates.append(f"{column} {operator} {self.bind(value)}")
        return self

    def where_clause(self) -> str:
        if not self._predicates:
            return ""
        return "WHERE " + " AND ".join(self._predicates)

    def build(self, query: MetricsQuery) -> BuiltMetricsQuery:
        """Render the totals and (optional) grouped statements for ``query``."""
        self._predicates.clear()
        self._parameters.clear()

        self.where("name", "=", query.event_name)
        if query.from_ is not None:
            self.where("date", ">=", query.from_)
        if query.to is not None:
            self.where("date", "<=", query.to)

        where_clause = self.where_clause()
        dialect = self._dialect

        totals_sql = (
            f"SELECT {dialect.count_expr} AS total_count, "
            f"{dialect.unique_users_expr} AS unique_user_count "
            f"FROM {self._table} {where_clause}"
        )

        grouped_sql = None
        if query.aggregation is not None:
            group = dialect.groups[query.aggregation]
            grouped_sql = (
                f"SELECT {group.key} AS group_key, "
                f"{dialect.count_expr} AS total_count, "
                f"{dialect.unique_users_expr} AS unique_user_count "
                f"FROM {self._table} {where_clause} "
                f"GROUP BY {group.group_by} "
                f"ORDER BY {group.group_by} ASC"
            )

        return BuiltMetricsQuery(
            totals_sql=totals_sql,
            grouped_sql=grouped_sql,
            parameters=self.parameters,
        )


class SqlMetricsReader(MetricsReader):
    """
    MetricsReader shared by the SQL adapters.

    Subclasses supply the dialect and the two fetch primitives; the
    query shape and result assembly live here once.
    """

    dialect: SqlDialect

    @abstractmethod
    async def _fetch_totals(self, sql: str, parameters: dict[str, Any]) -> Mapping[str, Any]:
        """Run the totals statement and return its single row."""
        pass

    @abstractmethod
    async def _fetch_groups(self, sql: str, parameters: dict[str, Any]) -> list[Mapping[str, Any]]:
        """Run the grouped statement and return all rows in order."""
        pass

    async def get_metrics(self, query: MetricsQuery) -> MetricsResult:
        if query.is_empty_range:
            logger.debug(
                "Inverted date window, returning empty metrics",
                event_name=query.event_name,
            )
            return MetricsResult.empty(query)

        built = MetricsQueryBuilder(self.dialect).build(query)

        totals = await self._fetch_totals(built.totals_sql, built.parameters)

        grouped: tuple[GroupedMetric, ...] = ()
        if built.grouped_sql is not None:
            rows = await self._fetch_groups(built.grouped_sql, built.parameters)
            grouped = tuple(
                GroupedMetric(
                    group_key=str(row["group_key"]),
                    total_count=int(row["total_count"]),
                    unique_user_count=int(row["unique_user_count"]),
                )
                for row in rows
            )

        return MetricsResult(
            event_name=query.event_name,
            from_=query.from_,
            to=query.to,
            total_count=int(totals["total_count"]),
            unique_user_count=int(totals["unique_user_count"]),
            grouped_metrics=grouped,
        )
