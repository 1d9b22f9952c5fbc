"""Test the real-time fan-out hub."""

import asyncio
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio

from conftest import FakeConnection, make_alert_event, wait_until
from src.core.event_bus import InMemoryEventBus
from src.core.exceptions import InvalidEventError, NotFoundError
from src.models.alert import ItemKind
from src.services.fanout import AlertRelay, FanoutHub, alert_topics_for


@pytest_asyncio.fixture(scope="function")
async def hub() -> AsyncGenerator[FanoutHub, None]:
    fanout_hub = FanoutHub(queue_size=10, send_timeout=0.2, max_missed_heartbeats=2)
    yield fanout_hub
    await fanout_hub.close_all()


async def connect(hub: FanoutHub, topics: list[str] | None = None) -> tuple[FakeConnection, str]:
    """Register a fake connection and wait for its acknowledgements."""
    connection = FakeConnection()
    connection_id = await hub.register(connection)
    await wait_until(lambda: connection.of_type("connection"))
    if topics:
        await hub.subscribe(connection_id, topics)
        await wait_until(lambda: connection.of_type("subscribed"))
    return connection, connection_id


def test_alert_topics_for() -> None:
    assert alert_topics_for("kitchen") == ["alerts.kitchen", "alerts"]


@pytest.mark.asyncio
async def test_register_greets_with_connection_id(hub: FanoutHub) -> None:
    connection, connection_id = await connect(hub)

    (greeting,) = connection.of_type("connection")
    assert greeting["connection_id"] == connection_id
    assert hub.subscriber_count == 1
    assert hub.topics_for(connection_id) == set()


@pytest.mark.asyncio
async def test_updates_follow_item_kind_topic(hub: FanoutHub) -> None:
    """Test that kind-specific subscribers only see their own kind."""
    medicine, _ = await connect(hub, ["alerts.medicine"])
    kitchen, _ = await connect(hub, ["alerts.kitchen"])

    kitchen_event = make_alert_event(ItemKind.KITCHEN)
    medicine_event = make_alert_event(ItemKind.MEDICINE)
    assert await hub.publish_alert_event(kitchen_event) == 1
    assert await hub.publish_alert_event(medicine_event) == 1
    await wait_until(lambda: kitchen.of_type("update") and medicine.of_type("update"))

    (kitchen_update,) = kitchen.of_type("update")
    assert kitchen_update["topic"] == "alerts.kitchen"
    assert kitchen_update["data"]["event_id"] == kitchen_event.event_id
    (medicine_update,) = medicine.of_type("update")
    assert medicine_update["data"]["event_id"] == medicine_event.event_id


@pytest.mark.asyncio
async def test_overlapping_topics_deliver_once(hub: FanoutHub) -> None:
    """Test a subscriber matching several topics gets a single copy."""
    connection, _ = await connect(hub, ["alerts", "alerts.kitchen"])
    everything, _ = await connect(hub, ["alerts"])

    await hub.publish_alert_event(make_alert_event(ItemKind.KITCHEN))
    await wait_until(lambda: everything.of_type("update"))
    await wait_until(lambda: connection.of_type("update"))
    await asyncio.sleep(0.05)

    (update,) = connection.of_type("update")
    assert update["topic"] == "alerts.kitchen"
    (catch_all,) = everything.of_type("update")
    assert catch_all["topic"] == "alerts"


@pytest.mark.asyncio
async def test_duplicate_event_ids_are_skipped(hub: FanoutHub) -> None:
    connection, _ = await connect(hub, ["alerts"])
    event = make_alert_event()

    assert await hub.publish_alert_event(event) == 1
    assert await hub.publish_alert_event(event) == 0
    await wait_until(lambda: connection.of_type("update"))
    await asyncio.sleep(0.05)

    assert len(connection.of_type("update")) == 1


@pytest.mark.asyncio
async def test_slow_subscriber_dropped(hub: FanoutHub) -> None:
    """Test a subscriber exceeding the send deadline does not hold up others."""
    slow, slow_id = await connect(hub, ["alerts"])
    fast, _ = await connect(hub, ["alerts"])
    slow.delay = 5.0

    await hub.publish("alerts", {"n": 1})
    await wait_until(lambda: fast.of_type("update"))
    await wait_until(lambda: slow.closed)

    assert slow.close_code == 1011
    assert hub.subscriber_count == 1
    assert hub.topics_for(slow_id) == set()


@pytest.mark.asyncio
async def test_failing_subscriber_dropped(hub: FanoutHub) -> None:
    broken, _ = await connect(hub, ["alerts"])
    healthy, _ = await connect(hub, ["alerts"])
    broken.fail = True

    await hub.publish("alerts", {"n": 1})
    await wait_until(lambda: broken.closed)
    await hub.publish("alerts", {"n": 2})
    await wait_until(lambda: len(healthy.of_type("update")) == 2)

    assert hub.subscriber_count == 1
    assert [update["data"]["n"] for update in healthy.of_type("update")] == [1, 2]


@pytest.mark.asyncio
async def test_full_queue_drops_subscriber() -> None:
    """Test a subscriber that cannot keep up is disconnected."""
    hub = FanoutHub(queue_size=2, send_timeout=10.0)
    stuck, _ = await connect(hub, ["alerts"])
    healthy, _ = await connect(hub, ["alerts"])
    stuck.delay = 10.0

    for n in range(5):
        await hub.publish("alerts", {"n": n})
        await asyncio.sleep(0.01)

    await wait_until(lambda: stuck.closed)
    await wait_until(lambda: len(healthy.of_type("update")) == 5)
    assert stuck.close_code == 1011
    assert hub.subscriber_count == 1
    await hub.close_all()


@pytest.mark.asyncio
async def test_heartbeat_sweep(hub: FanoutHub) -> None:
    """Test silent connections are dropped after two missed heartbeats."""
    silent, silent_id = await connect(hub)
    chatty, chatty_id = await connect(hub)

    assert await hub.sweep() == []
    await hub.handle_message(chatty_id, '{"type": "ping"}')
    assert await hub.sweep() == []
    await hub.handle_message(chatty_id, '{"type": "ping"}')
    assert await hub.sweep() == [silent_id]

    assert silent.closed
    assert silent.close_code == 1011
    assert not chatty.closed
    assert hub.subscriber_count == 1
    await wait_until(lambda: len(chatty.of_type("pong")) == 2)


@pytest.mark.asyncio
async def test_client_messages(hub: FanoutHub) -> None:
    """Test the subscribe, unsubscribe and ping replies."""
    connection, connection_id = await connect(hub)

    await hub.handle_message(connection_id, '{"type": "subscribe", "topics": ["alerts", "alerts.kitchen"]}')
    await hub.handle_message(connection_id, b'{"type": "unsubscribe", "topics": ["alerts"]}')
    await hub.handle_message(connection_id, {"type": "ping"})
    await wait_until(lambda: connection.of_type("pong"))

    (subscribed,) = connection.of_type("subscribed")
    assert subscribed["topics"] == ["alerts", "alerts.kitchen"]
    (unsubscribed,) = connection.of_type("unsubscribed")
    assert unsubscribed["topics"] == ["alerts"]
    assert hub.topics_for(connection_id) == {"alerts.kitchen"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("raw", "error"),
    [
        ("{not json", "Invalid JSON"),
        ("[1, 2]", "Message must be a JSON object"),
        ('{"type": "subscribe", "topics": []}', "topics must be a non-empty list of strings"),
        ('{"type": "subscribe", "topics": "alerts"}', "topics must be a non-empty list of strings"),
        ('{"type": "unsubscribe", "topics": [1]}', "topics must be a non-empty list of strings"),
        ('{"type": "shout"}', "Unknown message type: shout"),
    ],
)
async def test_invalid_client_messages(hub: FanoutHub, raw: str, error: str) -> None:
    connection, connection_id = await connect(hub)

    await hub.handle_message(connection_id, raw)
    await wait_until(lambda: connection.of_type("error"))

    (reply,) = connection.of_type("error")
    assert reply["message"] == error
    assert hub.subscriber_count == 1


@pytest.mark.asyncio
async def test_subscribe_unknown_connection(hub: FanoutHub) -> None:
    with pytest.raises(NotFoundError):
        await hub.subscribe("missing", ["alerts"])


@pytest.mark.asyncio
async def test_disconnect_and_close_all(hub: FanoutHub) -> None:
    gone, gone_id = await connect(hub, ["alerts"])
    remaining, _ = await connect(hub, ["alerts"])

    await hub.disconnect(gone_id)
    await hub.disconnect(gone_id)
    assert hub.subscriber_count == 1
    assert await hub.publish("alerts", {"n": 1}) == 1

    await hub.close_all()
    assert remaining.closed
    assert remaining.close_code == 1001
    assert not gone.closed
    assert hub.subscriber_count == 0


@pytest.mark.asyncio
async def test_relay_feeds_hub_from_alert_topic(
    hub: FanoutHub, memory_bus: InMemoryEventBus,
) -> None:
    """Test alert changes read back from the bus reach local subscribers."""
    connection, _ = await connect(hub, ["alerts.kitchen"])
    relay = AlertRelay(hub, "alerts")
    await relay.start(memory_bus)
    await memory_bus.start()
    event = make_alert_event(ItemKind.KITCHEN)

    await memory_bus.publish("alerts", event.model_dump(mode="json"), key=str(event.data.item_id))
    await memory_bus.publish("alerts", {"not": "an alert"})
    await memory_bus.join()
    await wait_until(lambda: connection.of_type("update"))

    (update,) = connection.of_type("update")
    assert update["data"]["event_id"] == event.event_id
    (record,) = memory_bus.records("alerts.dlq")
    assert record["error_type"] == "InvalidEventError"


@pytest.mark.asyncio
async def test_relay_rejects_malformed_event(hub: FanoutHub) -> None:
    relay = AlertRelay(hub)

    with pytest.raises(InvalidEventError):
        await relay.handle({"event_type": "alert.created"})
    assert relay.consumer_group.startswith("fanout-relay-")
