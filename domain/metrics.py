"""
Metrics query and result models.

A MetricsQuery selects events by exact name and an optional inclusive
date window; a MetricsResult is derived from it and never persisted.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AggregationType(str, Enum):
    """Dimension used to break metrics down."""
    CHANNEL = "channel"
    DAILY = "daily"
    HOURLY = "hourly"


class MetricsQuery(BaseModel):
    """
    Parameters for a metrics lookup.

    ``from_`` and ``to`` are both inclusive. Leaving ``to`` unset means
    "no upper bound" here; the application service fills it with the
    current time before the query reaches a reader.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    event_name: str = Field(..., min_length=1)
    from_: Optional[datetime] = Field(default=None, alias="from")
    to: Optional[datetime] = None
    aggregation: Optional[AggregationType] = None

    @field_validator("from_", "to")
    @classmethod
    def _normalize_bound(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @property
    def is_empty_range(self) -> bool:
        """True when both bounds are set and the window is inverted."""
        return (
            self.from_ is not None
            and self.to is not None
            and self.from_ > self.to
        )


class GroupedMetric(BaseModel):
    model_config = ConfigDict(frozen=True)

    group_key: str
    total_count: int
    unique_user_count: int


class MetricsResult(BaseModel):
    """Totals for a query, plus a per-group breakdown when requested."""

    model_config = ConfigDict(frozen=True)

    event_name: str
    from_: Optional[datetime] = None
    to: Optional[datetime] = None
    total_count: int = 0
    unique_user_count: int = 0
    grouped_metrics: tuple[GroupedMetric, ...] = ()

    @classmethod
    def empty(cls, query: MetricsQuery) -> "MetricsResult":
        """Zero-count result for a query that cannot match anything."""
        return cls(event_name=query.event_name, from_=query.from_, to=query.to)
