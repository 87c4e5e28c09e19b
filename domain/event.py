"""
Event aggregate and its value objects.

An Event is one immutable analytics record of a user/client action.
It is constructed once at the boundary, handed to a repository and
never updated or deleted afterwards: the store is an append-only log.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ChannelType(str, Enum):
    """Client platform an event originated from."""
    WEB = "web"
    MOBILE = "mobile"
    DESKTOP = "desktop"
    TV = "tv"
    CONSOLE = "console"
    OTHER = "other"


class _ValueObject(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class Param(_ValueObject):
    """
    Key/value parameter attached to an event, a user or an item.

    Only one of the three value fields carries meaning for a given key;
    readers must know which one to look at. The others keep their zero
    values so every adapter can store the param in a fixed shape.
    """
    key: str
    string_value: str = ""
    number_value: float = 0.0
    boolean_value: bool = False


class Device(_ValueObject):
    """Flattened client, browser and OS descriptors."""
    category: str = ""
    mobile_brand_name: str = ""
    mobile_model_name: str = ""
    operating_system: str = ""
    operating_system_version: str = ""
    language: str = ""
    browser_name: str = ""
    browser_version: str = ""
    hostname: str = ""


class AppInfo(_ValueObject):
    id: str = ""
    version: str = ""


class Item(_ValueObject):
    """Commerce line attached to an event (cart, purchase, ...)."""
    id: str = ""
    name: str = ""
    brand: str = ""
    variant: str = ""
    price_in_usd: float = 0.0
    quantity: int = 0
    revenue_in_usd: float = 0.0
    location_id: str = ""
    list_id: str = ""
    list_name: str = ""
    promotion_id: str = ""
    promotion_name: str = ""
    params: tuple[Param, ...] = ()


class Event(_ValueObject):
    """
    Immutable analytics event.

    List fields are tuples so insertion order is preserved and the
    aggregate cannot be mutated after construction. ``date`` is always
    stored as an aware UTC datetime.
    """
    id: str
    name: str
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

    @field_validator("date")
    @classmethod
    def _normalize_date(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @classmethod
    def create(cls, **fields: Any) -> "Event":
        """Build a new event with a freshly generated id."""
        if "id" in fields:
            raise TypeError("Event.create() assigns the id; do not pass one")
        return cls(id=new_event_id(), **fields)


def new_event_id() -> str:
    """Generate a globally unique event id (UUID4)."""
    return str(uuid.uuid4())
