"""
Abstract base classes for storage backends.

This module defines the contracts that all storage implementations must follow,
enabling pluggable backends for event persistence and metrics reads. Callers
depend on these interfaces only and never know which adapter is active.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Awaitable, Optional, Sequence, TypeVar

from core.exceptions import QueryError
from domain.event import Event
from domain.metrics import MetricsQuery, MetricsResult


T = TypeVar("T")

# Hard per-operation time budgets, in seconds
PING_TIMEOUT = 2.0
EXEC_TIMEOUT = 10.0
SELECT_TIMEOUT = 30.0
BATCH_TIMEOUT = 60.0

EVENTS_TABLE = "events"


async def with_timeout(awaitable: Awaitable[T], timeout: float, operation: str) -> T:
    """
    Await ``awaitable`` under a fixed time budget.

    Raises:
        QueryError: If the budget is exceeded
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise QueryError(operation, f"timed out after {timeout:g}s") from exc


class EventRepository(ABC):
    """
    Write side of the event store.

    Events are append-only: there is no update or delete.
    """

    @abstractmethod
    async def setup(self) -> None:
        """
        Initialize the storage (connections, tables).

        This should be idempotent.
        """
        pass

    @abstractmethod
    async def save(self, event: Event) -> None:
        """
        Persist exactly one event.

        Raises:
            QueryError: If the write fails
            StoreConnectionError: If the store is unreachable
        """
        pass

    @abstractmethod
    async def save_batch(self, events: Sequence[Event]) -> None:
        """
        Persist zero or more events.

        An empty sequence returns immediately without touching the store.
        Atomicity depends on the adapter; see its docstring.
        """
        pass

    @abstractmethod
    async def get(self, event_id: str) -> Optional[Event]:
        """Read a stored event back by id, or None if absent."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Clean up resources."""
        pass


class MetricsReader(ABC):
    """Read side: aggregated counts over stored events."""

    @abstractmethod
    async def get_metrics(self, query: MetricsQuery) -> MetricsResult:
        """
        Compute metrics for events matching ``query``.

        Totals are always computed. A grouped breakdown, ordered by
        group key ascending, is added when ``query.aggregation`` is set.
        An inverted date window returns the zero-count result without
        querying the store.
        """
        pass
