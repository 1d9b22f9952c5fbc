"""Topic-filtered fan-out of alert changes to live subscribers.

Every subscriber owns a bounded outbound queue drained by its own sender
task, so publishing never waits on a socket and one slow client cannot hold
up the others. A subscriber whose queue overflows, whose send fails, or
whose send exceeds the deadline is dropped.

Wire protocol (JSON objects):

    client -> server   {"type": "subscribe", "topics": [...]}
                       {"type": "unsubscribe", "topics": [...]}
                       {"type": "ping"}
    server -> client   {"type": "connection", "connection_id": ...}
                       {"type": "subscribed" | "unsubscribed", "topics": [...]}
                       {"type": "pong"}
                       {"type": "update", "topic": ..., "data": ..., "timestamp": ...}
                       {"type": "error", "message": ...}
"""

import asyncio
import json
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from pydantic import ValidationError

from src.core.event_bus import EventBus
from src.core.exceptions import InvalidEventError, NotFoundError
from src.core.logging import get_logger
from src.models.events import AlertChangeEvent

logger = get_logger(__name__)

ALERTS_TOPIC = "alerts"


def alert_topics_for(item_kind: str) -> list[str]:
    """Topics an alert change is published on, most specific first."""
    return [f"{ALERTS_TOPIC}.{item_kind}", ALERTS_TOPIC]


class SubscriberConnection(Protocol):
    """What the hub needs from a transport connection."""

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


@dataclass(eq=False)
class Subscriber:
    connection_id: str
    connection: SubscriberConnection
    queue: asyncio.Queue
    topics: set[str] = field(default_factory=set)
    seen_since_sweep: bool = True
    missed_heartbeats: int = 0
    sender: asyncio.Task | None = None


def _now() -> str:
    return datetime.now(UTC).isoformat()


class FanoutHub:
    """Registry of live subscribers and their topic subscriptions."""

    def __init__(
        self,
        *,
        queue_size: int = 100,
        send_timeout: float = 5.0,
        max_missed_heartbeats: int = 2,
        dedup_window: int = 1024,
    ) -> None:
        self.queue_size = queue_size
        self.send_timeout = send_timeout
        self.max_missed_heartbeats = max_missed_heartbeats
        self.dedup_window = dedup_window
        self._subscribers: dict[str, Subscriber] = {}
        self._lock = asyncio.Lock()
        self._recent_events: OrderedDict[str, None] = OrderedDict()
        self.logger = logger.bind(component="fanout_hub")

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def topics_for(self, connection_id: str) -> set[str]:
        subscriber = self._subscribers.get(connection_id)
        return set(subscriber.topics) if subscriber else set()

    async def register(self, connection: SubscriberConnection) -> str:
        """Track a new connection and greet it with its id."""
        connection_id = uuid.uuid4().hex
        subscriber = Subscriber(
            connection_id=connection_id,
            connection=connection,
            queue=asyncio.Queue(maxsize=self.queue_size),
        )
        async with self._lock:
            self._subscribers[connection_id] = subscriber
        subscriber.sender = asyncio.create_task(
            self._send_loop(subscriber), name=f"fanout-sender-{connection_id}",
        )
        self._enqueue(
            subscriber,
            {"type": "connection", "connection_id": connection_id, "timestamp": _now()},
        )
        self.logger.info("Subscriber connected", connection_id=connection_id)
        return connection_id

    async def subscribe(self, connection_id: str, topics: list[str]) -> set[str]:
        async with self._lock:
            subscriber = self._get(connection_id)
            subscriber.topics.update(topics)
            current = set(subscriber.topics)
        self._enqueue(subscriber, {"type": "subscribed", "topics": list(topics)})
        self.logger.debug("Subscribed", connection_id=connection_id, topics=topics)
        return current

    async def unsubscribe(self, connection_id: str, topics: list[str]) -> set[str]:
        async with self._lock:
            subscriber = self._get(connection_id)
            subscriber.topics.difference_update(topics)
            current = set(subscriber.topics)
        self._enqueue(subscriber, {"type": "unsubscribed", "topics": list(topics)})
        self.logger.debug("Unsubscribed", connection_id=connection_id, topics=topics)
        return current

    async def disconnect(self, connection_id: str) -> None:
        """Forget a connection the client closed."""
        async with self._lock:
            subscriber = self._subscribers.pop(connection_id, None)
        if subscriber is None:
            return
        self._stop_sender(subscriber)
        self.logger.info("Subscriber disconnected", connection_id=connection_id)

    def touch(self, connection_id: str) -> None:
        """Record inbound traffic from a connection."""
        subscriber = self._subscribers.get(connection_id)
        if subscriber is not None:
            subscriber.seen_since_sweep = True
            subscriber.missed_heartbeats = 0

    async def publish(self, topic: str, payload: Any) -> int:
        """Queue an update for every subscriber of a topic.

        Returns the number of subscribers it was queued for.
        """
        return await self.broadcast([topic], payload)

    async def broadcast(self, topics: list[str], payload: Any) -> int:
        """Queue one update per subscriber, tagged with its first matching topic."""
        async with self._lock:
            subscribers = list(self._subscribers.values())

        timestamp = _now()
        delivered = 0
        overflowed = []
        for subscriber in subscribers:
            topic = next((t for t in topics if t in subscriber.topics), None)
            if topic is None:
                continue
            message = {"type": "update", "topic": topic, "data": payload, "timestamp": timestamp}
            if self._enqueue(subscriber, message):
                delivered += 1
            else:
                overflowed.append(subscriber)

        for subscriber in overflowed:
            await self._drop(subscriber, "queue full")
        return delivered

    async def publish_alert_event(self, event: AlertChangeEvent) -> int:
        """Fan an alert change out to its item-kind topic and the catch-all topic.

        The same event id is delivered at most once per hub.
        """
        if event.event_id in self._recent_events:
            self.logger.debug("Duplicate alert event skipped", event_id=event.event_id)
            return 0
        self._recent_events[event.event_id] = None
        while len(self._recent_events) > self.dedup_window:
            self._recent_events.popitem(last=False)

        topics = alert_topics_for(event.data.item_kind.value)
        delivered = await self.broadcast(topics, event.model_dump(mode="json"))
        self.logger.debug(
            "Alert event fanned out",
            event_id=event.event_id,
            topics=topics,
            delivered=delivered,
        )
        return delivered

    async def handle_message(self, connection_id: str, raw: str | bytes | dict[str, Any]) -> None:
        """Apply one client message."""
        self.touch(connection_id)
        subscriber = self._subscribers.get(connection_id)
        if subscriber is None:
            return

        if isinstance(raw, dict):
            message: Any = raw
        else:
            try:
                message = json.loads(raw)
            except (json.JSONDecodeError, UnicodeDecodeError):
                self._send_error(subscriber, "Invalid JSON")
                return
        if not isinstance(message, dict):
            self._send_error(subscriber, "Message must be a JSON object")
            return

        message_type = message.get("type")
        if message_type in ("subscribe", "unsubscribe"):
            topics = message.get("topics")
            if (
                not isinstance(topics, list)
                or not topics
                or not all(isinstance(topic, str) and topic for topic in topics)
            ):
                self._send_error(subscriber, "topics must be a non-empty list of strings")
                return
            if message_type == "subscribe":
                await self.subscribe(connection_id, topics)
            else:
                await self.unsubscribe(connection_id, topics)
        elif message_type == "ping":
            self._enqueue(subscriber, {"type": "pong", "timestamp": _now()})
        else:
            self._send_error(subscriber, f"Unknown message type: {message_type}")

    async def sweep(self) -> list[str]:
        """Count a missed heartbeat for every silent connection; drop the dead."""
        async with self._lock:
            subscribers = list(self._subscribers.values())

        expired = []
        for subscriber in subscribers:
            if subscriber.seen_since_sweep:
                subscriber.seen_since_sweep = False
                continue
            subscriber.missed_heartbeats += 1
            if subscriber.missed_heartbeats >= self.max_missed_heartbeats:
                expired.append(subscriber)

        for subscriber in expired:
            await self._drop(subscriber, "heartbeat timeout")
        return [subscriber.connection_id for subscriber in expired]

    async def close_all(self) -> None:
        async with self._lock:
            subscribers = list(self._subscribers.values())
        for subscriber in subscribers:
            await self._drop(subscriber, "server shutdown", code=1001)
        self.logger.info("All subscribers closed", count=len(subscribers))

    def _get(self, connection_id: str) -> Subscriber:
        subscriber = self._subscribers.get(connection_id)
        if subscriber is None:
            raise NotFoundError(
                f"Connection {connection_id} not registered",
                context={"connection_id": connection_id},
            )
        return subscriber

    def _enqueue(self, subscriber: Subscriber, message: dict[str, Any]) -> bool:
        try:
            subscriber.queue.put_nowait(message)
        except asyncio.QueueFull:
            return False
        return True

    def _send_error(self, subscriber: Subscriber, message: str) -> None:
        self._enqueue(subscriber, {"type": "error", "message": message})

    async def _send_loop(self, subscriber: Subscriber) -> None:
        while True:
            message = await subscriber.queue.get()
            try:
                await asyncio.wait_for(
                    subscriber.connection.send_json(message), timeout=self.send_timeout,
                )
            except asyncio.TimeoutError:
                await self._drop(subscriber, "send timeout")
                return
            except Exception as e:
                await self._drop(subscriber, f"send failed: {e}")
                return

    def _stop_sender(self, subscriber: Subscriber) -> None:
        sender = subscriber.sender
        if sender is not None and sender is not asyncio.current_task():
            sender.cancel()

    async def _drop(self, subscriber: Subscriber, reason: str, code: int = 1011) -> None:
        async with self._lock:
            if self._subscribers.get(subscriber.connection_id) is not subscriber:
                return
            del self._subscribers[subscriber.connection_id]

        self._stop_sender(subscriber)
        self.logger.warning(
            "Subscriber dropped", connection_id=subscriber.connection_id, reason=reason,
        )
        try:
            await asyncio.wait_for(subscriber.connection.close(code=code), timeout=self.send_timeout)
        except Exception as e:
            self.logger.debug(
                "Closing dropped connection failed",
                connection_id=subscriber.connection_id,
                error=str(e),
            )


class AlertRelay:
    """Feeds the local hub from the durable alert topic.

    Each instance reads with its own consumer group, so every instance sees
    every alert change; the hub drops ids it already delivered.
    """

    def __init__(
        self, hub: FanoutHub, topic: str = ALERTS_TOPIC, group_prefix: str = "fanout-relay",
    ) -> None:
        self.hub = hub
        self.topic = topic
        self.consumer_group = f"{group_prefix}-{uuid.uuid4().hex[:8]}"

    async def start(self, bus: EventBus) -> None:
        await bus.subscribe_group(self.topic, self.consumer_group, self.handle)
        logger.info("Alert relay started", topic=self.topic, consumer_group=self.consumer_group)

    async def handle(self, payload: dict[str, Any]) -> None:
        try:
            event = AlertChangeEvent.model_validate(payload)
        except ValidationError as e:
            raise InvalidEventError(
                "Malformed alert change event",
                details=e.errors(include_url=False, include_context=False, include_input=False),
            ) from e
        await self.hub.publish_alert_event(event)
