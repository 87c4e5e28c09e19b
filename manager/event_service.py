"""
Event application service.

Bridge between the (external) transport layer and the storage port:
assigns event ids, converts commands into domain events and fills in
query defaults. It never knows which storage backend is active.
"""

from datetime import datetime, timezone
from typing import Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from core.logging import get_logger
from core.storage.base import EventRepository, MetricsReader
from domain.event import AppInfo, ChannelType, Device, Event, Item, Param, new_event_id
from domain.metrics import MetricsQuery, MetricsResult


logger = get_logger(__name__)


class CreateEventCommand(BaseModel):
    """Everything needed to create an event, except its id."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1)
    channel_type: ChannelType
    timestamp: int = 0
    previous_timestamp: int = 0
    date: datetime
    user_id: str = ""
    user_pseudo_id: str = ""
    event_params: tuple[Param, ...] = ()
    user_params: tuple[Param, ...] = ()
    device: Device = Field(default_factory=Device)
    app_info: AppInfo = Field(default_factory=AppInfo)
    items: tuple[Item, ...] = ()

    def to_event(self, event_id: str) -> Event:
        return Event(id=event_id, **self.model_dump())


class EventService:
    """
    Event use cases.

    Errors raised by the repository or reader are already typed
    (QueryError, StoreConnectionError) and are propagated unchanged.
    """

    def __init__(self, repository: EventRepository, metrics_reader: MetricsReader):
        self._repository = repository
        self._metrics_reader = metrics_reader

    async def create_event(self, command: CreateEventCommand) -> str:
        """Persist one event and return its newly assigned id."""
        event = command.to_event(new_event_id())
        await self._repository.save(event)

        logger.info("Event created", event_id=event.id, name=event.name)
        return event.id

    async def create_events(self, commands: Sequence[CreateEventCommand]) -> list[str]:
        """Persist a batch of events and return their ids in input order."""
        if not commands:
            return []

        events = [command.to_event(new_event_id()) for command in commands]
        await self._repository.save_batch(events)

        logger.info("Events created", count=len(events))
        return [event.id for event in events]

    async def get_metrics(
        self,
        query: MetricsQuery,
        now: Optional[datetime] = None,
    ) -> MetricsResult:
        """
        Fetch metrics, defaulting the upper bound to the current time.

        Args:
            query: Metrics query as received from the caller
            now: Reference time used when ``query.to`` is unset
        """
        if query.to is None:
            query = MetricsQuery(
                event_name=query.event_name,
                from_=query.from_,
                to=now or datetime.now(timezone.utc),
                aggregation=query.aggregation,
            )

        return await self._metrics_reader.get_metrics(query)
