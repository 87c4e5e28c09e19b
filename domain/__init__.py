"""
Domain model for analytics events and metrics.

Pure data: no storage, logging or configuration dependencies.
"""

from domain.event import (
    AppInfo,
    ChannelType,
    Device,
    Event,
    Item,
    Param,
    new_event_id,
)
from domain.metrics import (
    AggregationType,
    GroupedMetric,
    MetricsQuery,
    MetricsResult,
)

__all__ = [
    # Event aggregate
    "AppInfo",
    "ChannelType",
    "Device",
    "Event",
    "Item",
    "Param",
    "new_event_id",
    # Metrics
    "AggregationType",
    "GroupedMetric",
    "MetricsQuery",
    "MetricsResult",
]
