"""
Tests for the ClickHouse column-store adapter.

The real ClickHouseDatabase wrapper runs on top of FakeClickHouseClient.
"""

from datetime import datetime, timezone

import pytest
from clickhouse_connect.driver.exceptions import DatabaseError, OperationalError

from core.exceptions import QueryError, StoreConnectionError
from core.storage.clickhouse import (
    EVENT_COLUMNS,
    ClickHouseDatabase,
    ClickHouseEventRepository,
    ClickHouseMetricsReader,
    to_row,
    wrap_error,
)
from domain.event import AppInfo, Device, Item, Param
from domain.metrics import GroupedMetric, MetricsQuery


@pytest.fixture
def repository(ch_database):
    return ClickHouseEventRepository(ch_database)


@pytest.fixture
def reader(ch_database):
    return ClickHouseMetricsReader(ch_database)


@pytest.fixture
def rich_event(make_event):
    return make_event(
        timestamp=1_709_296_200,
        event_params=[
            Param(key="page_title", string_value="Checkout"),
            Param(key="value", number_value=59.97),
            Param(key="is_returning", boolean_value=True),
        ],
        user_params=[Param(key="tier", string_value="gold")],
        device=Device(
            category="mobile",
            mobile_brand_name="Apple",
            mobile_model_name="iPhone 15",
            operating_system="iOS",
            operating_system_version="17.4",
            language="en-us",
        ),
        app_info=AppInfo(id="com.example.ios", version="5.0.0"),
        items=[
            Item(id="sku-1", name="Mug", brand="Acme", price_in_usd=9.99, quantity=3, revenue_in_usd=29.97),
            Item(id="sku-2", name="Cap", variant="blue", price_in_usd=30.0, quantity=1, revenue_in_usd=30.0),
        ],
    )


def _column(row, name):
    return row[EVENT_COLUMNS.index(name)]


def test_to_row_flattens_into_parallel_arrays(rich_event):
    row = to_row(rich_event)

    assert len(row) == len(EVENT_COLUMNS) == 34
    assert _column(row, "channel_type") == "web"
    assert _column(row, "event_param_keys") == ["page_title", "value", "is_returning"]
    assert _column(row, "event_param_string_values") == ["Checkout", "", ""]
    assert _column(row, "event_param_number_values") == [0.0, 59.97, 0.0]
    assert _column(row, "event_param_boolean_values") == [0, 0, 1]
    assert _column(row, "user_param_keys") == ["tier"]
    assert _column(row, "device_mobile_model_name") == "iPhone 15"
    assert _column(row, "app_info_version") == "5.0.0"
    assert _column(row, "item_ids") == ["sku-1", "sku-2"]
    assert _column(row, "item_variants") == ["", "blue"]
    assert _column(row, "item_quantities") == [3, 1]


def test_to_row_with_no_children_has_empty_arrays(make_event):
    row = to_row(make_event())

    for name in ("event_param_keys", "user_param_boolean_values", "item_ids", "item_revenues_in_usd"):
        assert _column(row, name) == []


@pytest.mark.asyncio
async def test_save_then_get_round_trips(repository, rich_event):
    await repository.save(rich_event)

    stored = await repository.get(rich_event.id)

    assert stored.id == rich_event.id
    assert stored.event_params == rich_event.event_params
    assert stored.event_params[2].boolean_value is True
    assert stored.user_params == rich_event.user_params
    assert stored.device == rich_event.device
    assert stored.app_info == rich_event.app_info
    assert [item.name for item in stored.items] == ["Mug", "Cap"]
    assert stored.items[0].revenue_in_usd == 29.97


@pytest.mark.asyncio
async def test_get_missing_event_returns_none(repository):
    assert await repository.get("nope") is None


@pytest.mark.asyncio
async def test_save_batch_empty_is_noop(repository, fake_ch_client):
    await repository.save_batch([])

    assert fake_ch_client.inserts == 0


@pytest.mark.asyncio
async def test_save_batch_sends_blocks(ch_database, fake_ch_client, make_event):
    repository = ClickHouseEventRepository(ch_database, insert_batch_size=2)
    events = [make_event(user_id=f"u{i}") for i in range(5)]

    await repository.save_batch(events)

    assert fake_ch_client.inserts == 3
    assert [row["id"] for row in fake_ch_client.events] == [event.id for event in events]


@pytest.mark.asyncio
async def test_save_batch_is_not_atomic(ch_database, fake_ch_client, make_event):
    """Blocks sent before a failing block stay committed."""
    repository = ClickHouseEventRepository(ch_database, insert_batch_size=2)
    fake_ch_client.fail_on_insert = 2
    events = [make_event(user_id=f"u{i}") for i in range(5)]

    with pytest.raises(QueryError) as exc_info:
        await repository.save_batch(events)

    assert exc_info.value.operation == "failed to batch insert events"
    assert [row["id"] for row in fake_ch_client.events] == [events[0].id, events[1].id]


def test_insert_batch_size_must_be_positive(ch_database):
    with pytest.raises(ValueError):
        ClickHouseEventRepository(ch_database, insert_batch_size=0)


@pytest.mark.asyncio
async def test_close_closes_client(repository, ch_database, fake_ch_client):
    await repository.close()

    assert fake_ch_client.closed
    with pytest.raises(RuntimeError):
        ch_database.client


# --- Metrics -----------------------------------------------------------------

@pytest.mark.asyncio
async def test_metrics_grouped_by_channel(repository, reader, make_event):
    await repository.save_batch([
        make_event(channel_type="web", user_id="u1"),
        make_event(channel_type="mobile", user_id="u2"),
        make_event(name="purchase", channel_type="web", user_id="u3"),
    ])

    result = await reader.get_metrics(MetricsQuery(event_name="page_view", aggregation="channel"))

    assert (result.total_count, result.unique_user_count) == (2, 2)
    assert result.grouped_metrics == (
        GroupedMetric(group_key="mobile", total_count=1, unique_user_count=1),
        GroupedMetric(group_key="web", total_count=1, unique_user_count=1),
    )


@pytest.mark.asyncio
async def test_metrics_grouped_daily(repository, reader, make_event):
    await repository.save_batch([
        make_event(date=datetime(2024, 3, 2, 23, 59, tzinfo=timezone.utc), user_id="a"),
        make_event(date=datetime(2024, 3, 1, 0, 0, tzinfo=timezone.utc), user_id="a"),
        make_event(date=datetime(2024, 3, 1, 18, 0, tzinfo=timezone.utc), user_id="b"),
    ])

    result = await reader.get_metrics(
        MetricsQuery(
            event_name="page_view",
            from_=datetime(2024, 3, 1, tzinfo=timezone.utc),
            aggregation="daily",
        )
    )

    assert result.total_count == 3
    assert result.unique_user_count == 2
    assert result.grouped_metrics == (
        GroupedMetric(group_key="2024-03-01", total_count=2, unique_user_count=2),
        GroupedMetric(group_key="2024-03-02", total_count=1, unique_user_count=1),
    )


@pytest.mark.asyncio
async def test_metrics_for_unknown_event_are_zero(reader):
    result = await reader.get_metrics(MetricsQuery(event_name="never_seen", aggregation="hourly"))

    assert result.total_count == 0
    assert result.unique_user_count == 0
    assert result.grouped_metrics == ()


# --- Connection and error mapping -------------------------------------------

@pytest.mark.asyncio
async def test_check_connection_fails_when_ping_fails(ch_database, fake_ch_client):
    fake_ch_client.alive = False

    with pytest.raises(StoreConnectionError):
        await ch_database.check_connection()


@pytest.mark.asyncio
async def test_server_error_becomes_query_error(ch_database, fake_ch_client):
    fake_ch_client.fail_on_statement = "OPTIMIZE"

    with pytest.raises(QueryError) as exc_info:
        await ch_database.command("OPTIMIZE TABLE events FINAL", operation="failed to optimize")

    assert str(exc_info.value).startswith("failed to optimize: ")
    assert isinstance(exc_info.value.cause, DatabaseError)


def test_operational_error_maps_to_connection_error():
    wrapped = wrap_error("failed to query totals", OperationalError("connection refused"))
    assert isinstance(wrapped, StoreConnectionError)


def test_client_required_before_use():
    database = ClickHouseDatabase()

    with pytest.raises(RuntimeError):
        database.client
