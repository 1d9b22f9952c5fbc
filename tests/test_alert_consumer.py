"""Test the inventory event consumer end to end on the in-memory bus."""

import uuid
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from conftest import NOW, FakeConnection, wait_until
from src.core.event_bus import InMemoryEventBus, PublishReceipt
from src.core.events import AlertEventPublisher
from src.core.exceptions import BrokerUnavailableError, InvalidEventError
from src.core.runtime import AlertingRuntime
from src.models.alert import AlertKind, AlertSeverity, AlertStatus
from src.models.events import InventoryChangeEvent, InventoryEventKind
from src.services.alert_consumer import AlertConsumer, parse_inventory_event
from src.services.alert_store import AlertStoreGateway
from src.services.rules import evaluate


def by_kind(alerts) -> dict[AlertKind, object]:
    return {AlertKind(alert.kind): alert for alert in alerts}


def alert_events(bus: InMemoryEventBus, item_id: uuid.UUID) -> list[dict]:
    return [event for event in bus.records("alerts") if event["data"]["item_id"] == str(item_id)]


@pytest.mark.asyncio
async def test_low_stock_alert_created_and_published(
    runtime: AlertingRuntime, memory_bus: InMemoryEventBus, make_snapshot,
) -> None:
    """Test an update below threshold raises and announces one alert."""
    snapshot = make_snapshot(current_count=8, low_stock_threshold=10)

    await runtime.inventory_publisher.publish_updated(snapshot, correlation_id="corr-1")
    await memory_bus.join()

    (alert,) = await runtime.store.list_alerts(item_id=snapshot.id)
    assert alert.kind == AlertKind.LOW_STOCK
    assert alert.severity == AlertSeverity.MEDIUM
    assert alert.status == AlertStatus.ACTIVE
    assert alert.published_revision == alert.revision == 1

    (event,) = alert_events(memory_bus, snapshot.id)
    assert event["event_type"] == "alert.created"
    assert event["revision"] == 1
    assert event["correlation_id"] == "corr-1"
    assert event["data"]["id"] == str(alert.id)
    assert event["data"]["kind"] == "low_stock"
    assert event["data"]["item_kind"] == "medicine"
    assert event["data"]["message"] == "Ibuprofen is running low. Current count: 8 tablets"


@pytest.mark.asyncio
async def test_stock_lifecycle(
    runtime: AlertingRuntime, memory_bus: InMemoryEventBus, make_snapshot,
) -> None:
    """Test running low, running out and restocking an item."""
    item_id = uuid.uuid4()
    publisher = runtime.inventory_publisher

    await publisher.publish_updated(make_snapshot(id=item_id, current_count=8))
    await publisher.publish_updated(make_snapshot(id=item_id, current_count=0))
    await memory_bus.join()

    alerts = by_kind(await runtime.store.list_alerts(item_id=item_id))
    assert set(alerts) == {AlertKind.LOW_STOCK, AlertKind.OUT_OF_STOCK}
    assert alerts[AlertKind.OUT_OF_STOCK].severity == AlertSeverity.CRITICAL
    assert alerts[AlertKind.LOW_STOCK].status == AlertStatus.ACTIVE

    await publisher.publish_updated(make_snapshot(id=item_id, current_count=50))
    await memory_bus.join()

    alerts = by_kind(await runtime.store.list_alerts(item_id=item_id))
    for alert in alerts.values():
        assert alert.status == AlertStatus.RESOLVED
        assert alert.resolved_by == "system"
        assert alert.resolution_reason == "condition cleared"

    events = alert_events(memory_bus, item_id)
    assert [event["event_type"] for event in events] == [
        "alert.created",
        "alert.created",
        "alert.resolved",
        "alert.resolved",
    ]


@pytest.mark.asyncio
async def test_severity_change_publishes_update(
    runtime: AlertingRuntime, memory_bus: InMemoryEventBus, make_snapshot,
) -> None:
    item_id = uuid.uuid4()

    await runtime.inventory_publisher.publish_updated(make_snapshot(id=item_id, current_count=8))
    await runtime.inventory_publisher.publish_updated(make_snapshot(id=item_id, current_count=2))
    await memory_bus.join()

    events = alert_events(memory_bus, item_id)
    assert [(event["event_type"], event["revision"]) for event in events] == [
        ("alert.created", 1),
        ("alert.updated", 2),
    ]
    assert events[1]["data"]["severity"] == "high"
    assert events[0]["data"]["id"] == events[1]["data"]["id"]


@pytest.mark.asyncio
async def test_redelivered_event_changes_nothing(
    runtime: AlertingRuntime, memory_bus: InMemoryEventBus, make_snapshot,
) -> None:
    """Test handling the same event twice is idempotent."""
    event = InventoryChangeEvent(
        event_type=InventoryEventKind.UPDATED,
        data=make_snapshot(current_count=0),
    )

    first = await runtime.consumer.process(event)
    second = await runtime.consumer.process(event)

    assert len(first.created) == 1
    assert len(first.published) == 1
    assert second.changed is False
    assert second.published == []
    assert len(alert_events(memory_bus, event.data.id)) == 1


@pytest.mark.asyncio
async def test_deleted_item_resolves_open_alerts(
    runtime: AlertingRuntime, memory_bus: InMemoryEventBus, make_snapshot,
) -> None:
    snapshot = make_snapshot(current_count=0, expiry_date=NOW.date() + timedelta(days=5))

    await runtime.inventory_publisher.publish_updated(snapshot)
    await runtime.inventory_publisher.publish_deleted(snapshot)
    await memory_bus.join()

    alerts = by_kind(await runtime.store.list_alerts(item_id=snapshot.id))
    assert set(alerts) == {AlertKind.OUT_OF_STOCK, AlertKind.EXPIRY_WARNING}
    for alert in alerts.values():
        assert alert.status == AlertStatus.RESOLVED
        assert alert.resolution_reason == "item deleted"


@pytest.mark.asyncio
async def test_item_expiring_today(
    runtime: AlertingRuntime, memory_bus: InMemoryEventBus, make_snapshot,
) -> None:
    snapshot = make_snapshot(expiry_date=NOW.date())

    await runtime.inventory_publisher.publish_created(snapshot)
    await memory_bus.join()

    (alert,) = await runtime.store.list_alerts(item_id=snapshot.id)
    assert alert.kind == AlertKind.EXPIRED
    assert alert.severity == AlertSeverity.CRITICAL
    assert alert.title == "Expired Item: Ibuprofen"


@pytest.mark.asyncio
async def test_healthy_item_creates_nothing(
    runtime: AlertingRuntime, memory_bus: InMemoryEventBus, make_snapshot,
) -> None:
    snapshot = make_snapshot(current_count=500)

    await runtime.inventory_publisher.publish_created(snapshot)
    await memory_bus.join()

    assert await runtime.store.list_alerts(item_id=snapshot.id) == []
    assert alert_events(memory_bus, snapshot.id) == []


@pytest.mark.asyncio
async def test_malformed_event_is_dead_lettered(
    runtime: AlertingRuntime, memory_bus: InMemoryEventBus, make_snapshot,
) -> None:
    """Test a bad payload is parked without blocking the item's later events."""
    snapshot = make_snapshot(current_count=1)
    key = str(snapshot.id)

    await memory_bus.publish(
        "inventory-updates",
        {"event_type": "inventory.updated", "data": {"id": key, "current_count": -3}},
        key=key,
    )
    await runtime.inventory_publisher.publish_updated(snapshot)
    await memory_bus.join()

    (record,) = memory_bus.records("inventory-updates.dlq")
    assert record["error_type"] == "InvalidEventError"
    assert record["attempts"] == 1
    assert record["consumer_group"] == runtime.settings.consumer_group
    (alert,) = await runtime.store.list_alerts(item_id=snapshot.id)
    assert alert.severity == AlertSeverity.HIGH


def test_parse_inventory_event_rejects_unknown_type(make_snapshot) -> None:
    payload = {
        "event_type": "inventory.exploded",
        "data": make_snapshot().model_dump(mode="json"),
    }

    with pytest.raises(InvalidEventError) as exc_info:
        parse_inventory_event(payload)

    assert exc_info.value.details


@pytest.mark.asyncio
async def test_failed_publish_is_retried_with_same_event_id(
    store: AlertStoreGateway, clock, make_snapshot,
) -> None:
    """Test that a broker outage leaves the change pending until redelivery."""
    bus = AsyncMock()
    bus.publish.side_effect = [
        BrokerUnavailableError("broker down"),
        PublishReceipt(topic="alerts", partition=0, offset=0),
    ]
    consumer = AlertConsumer(store, AlertEventPublisher(bus, store), clock=clock)
    event = InventoryChangeEvent(
        event_type=InventoryEventKind.UPDATED,
        data=make_snapshot(current_count=4),
    )

    with pytest.raises(BrokerUnavailableError):
        await consumer.process(event)

    (pending,) = await store.pending_publications(item_id=event.data.id)
    assert pending.published_revision == 0

    result = await consumer.process(event)

    assert result.created == []
    assert len(result.published) == 1
    first_payload = bus.publish.await_args_list[0].args[1]
    second_payload = bus.publish.await_args_list[1].args[1]
    assert first_payload["event_id"] == second_payload["event_id"]
    assert await store.pending_publications(item_id=event.data.id) == []


@pytest.mark.asyncio
async def test_alert_reaches_live_subscriber(
    runtime: AlertingRuntime, memory_bus: InMemoryEventBus, make_snapshot,
) -> None:
    connection = FakeConnection()
    connection_id = await runtime.hub.register(connection)
    await runtime.hub.subscribe(connection_id, ["alerts.medicine"])
    snapshot = make_snapshot(current_count=0)

    await runtime.inventory_publisher.publish_updated(snapshot)
    await memory_bus.join()
    await wait_until(lambda: connection.of_type("update"))

    (update,) = connection.of_type("update")
    assert update["topic"] == "alerts.medicine"
    assert update["data"]["event_type"] == "alert.created"
    assert update["data"]["data"]["kind"] == "out_of_stock"


@pytest.mark.asyncio
async def test_outdated_revision_never_published_after_newer(
    runtime: AlertingRuntime, memory_bus: InMemoryEventBus, make_snapshot,
) -> None:
    """Test a row read before a newer revision went out is not announced."""
    connection = FakeConnection()
    connection_id = await runtime.hub.register(connection)
    await runtime.hub.subscribe(connection_id, ["alerts"])
    (candidate,) = evaluate(make_snapshot(current_count=3), NOW)
    alert = (await runtime.store.upsert(candidate)).alert
    (outdated,) = await runtime.store.pending_publications(alert_id=alert.id)

    await runtime.store.resolve(alert.id, "pharmacist")
    (published,) = await runtime.alert_publisher.publish_pending(alert_id=alert.id)
    assert published.revision == 2

    assert await runtime.alert_publisher.publish_alert(outdated) is None
    await wait_until(lambda: connection.of_type("update"))

    events = alert_events(memory_bus, outdated.item_id)
    assert [(event["revision"], event["data"]["status"]) for event in events] == [(2, "resolved")]
    (update,) = connection.of_type("update")
    assert update["data"]["data"]["status"] == "resolved"
