"""Event publishing for the Inventory Alerting Service."""

import asyncio
import uuid
from weakref import WeakValueDictionary

import structlog

from src.core.event_bus import EventBus, PublishReceipt
from src.models.alert import Alert, AlertStatus
from src.models.events import (
    TOPICS,
    AlertChangeEvent,
    AlertEventKind,
    AlertPayload,
    InventoryChangeEvent,
    InventoryEventKind,
    InventorySnapshot,
)
from src.services.alert_store import AlertStoreGateway
from src.services.fanout import FanoutHub

logger = structlog.get_logger(__name__)


class InventoryEventPublisher:
    """
    Publishes inventory mutations for the alert pipeline.

    Called by the inventory CRUD layer after each committed write. Events are
    keyed by item id so all changes of one item share a partition.
    """

    def __init__(self, bus: EventBus, topic: str = TOPICS.INVENTORY_UPDATES) -> None:
        self.bus = bus
        self.topic = topic
        self.logger = logger.bind(component="inventory_publisher")

    async def publish(
        self,
        event_type: InventoryEventKind,
        snapshot: InventorySnapshot,
        correlation_id: str | None = None,
    ) -> PublishReceipt:
        event = InventoryChangeEvent(
            event_type=event_type,
            data=snapshot,
            correlation_id=correlation_id or str(uuid.uuid4()),
        )
        receipt = await self.bus.publish(
            self.topic, event.model_dump(mode="json"), key=str(snapshot.id),
        )
        self.logger.info(
            "Event: InventoryChange",
            event_id=event.event_id,
            event_type=event.event_type,
            correlation_id=event.correlation_id,
            topic=self.topic,
            item_id=str(snapshot.id),
            current_count=snapshot.current_count,
            partition=receipt.partition,
            offset=receipt.offset,
        )
        return receipt

    async def publish_created(
        self, snapshot: InventorySnapshot, correlation_id: str | None = None,
    ) -> PublishReceipt:
        return await self.publish(InventoryEventKind.CREATED, snapshot, correlation_id)

    async def publish_updated(
        self, snapshot: InventorySnapshot, correlation_id: str | None = None,
    ) -> PublishReceipt:
        return await self.publish(InventoryEventKind.UPDATED, snapshot, correlation_id)

    async def publish_deleted(
        self, snapshot: InventorySnapshot, correlation_id: str | None = None,
    ) -> PublishReceipt:
        return await self.publish(InventoryEventKind.DELETED, snapshot, correlation_id)


def alert_event_kind(alert: Alert) -> AlertEventKind:
    """Event type announcing an alert's latest revision."""
    status = AlertStatus(alert.status)
    if status is AlertStatus.RESOLVED:
        return AlertEventKind.RESOLVED
    if alert.published_revision == 0 and status.is_open:
        return AlertEventKind.CREATED
    return AlertEventKind.UPDATED


def alert_event_id(alert_id: uuid.UUID, revision: int) -> str:
    """Same alert revision, same event id."""
    return str(uuid.uuid5(alert_id, f"revision-{revision}"))


def build_alert_event(alert: Alert, correlation_id: str | None = None) -> AlertChangeEvent:
    return AlertChangeEvent(
        event_id=alert_event_id(alert.id, alert.revision),
        event_type=alert_event_kind(alert),
        timestamp=alert.updated_at,
        revision=alert.revision,
        correlation_id=correlation_id,
        data=AlertPayload.model_validate(alert),
    )


class AlertEventPublisher:
    """
    Announces alert changes.

    Each unpublished revision goes to the durable alert topic first, then to
    the local fan-out hub, and is finally marked published. A failure before
    the mark leaves the revision pending, so a redelivered inventory event
    publishes it again under the same event id.

    Publications of one alert are serialized and always announce the latest
    stored revision, so a caller holding an outdated row can never publish
    after a newer revision went out.
    """

    def __init__(
        self,
        bus: EventBus,
        store: AlertStoreGateway,
        hub: FanoutHub | None = None,
        topic: str = TOPICS.ALERTS,
    ) -> None:
        self.bus = bus
        self.store = store
        self.hub = hub
        self.topic = topic
        self._locks: WeakValueDictionary[uuid.UUID, asyncio.Lock] = WeakValueDictionary()
        self.logger = logger.bind(component="alert_publisher")

    def _lock_for(self, alert_id: uuid.UUID) -> asyncio.Lock:
        lock = self._locks.get(alert_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[alert_id] = lock
        return lock

    async def publish_alert(
        self, alert: Alert, correlation_id: str | None = None,
    ) -> AlertChangeEvent | None:
        """Publish the alert's latest revision; None when nothing is pending."""
        async with self._lock_for(alert.id):
            current = await self.store.get(alert.id)
            if current.revision <= current.published_revision:
                self.logger.debug(
                    "Alert revision already published",
                    alert_id=str(alert.id),
                    revision=alert.revision,
                    published_revision=current.published_revision,
                )
                return None

            event = build_alert_event(current, correlation_id)
            await self.bus.publish(
                self.topic, event.model_dump(mode="json"), key=str(current.item_id),
            )
            if self.hub is not None:
                await self.hub.publish_alert_event(event)
            await self.store.mark_published(current.id, current.revision)

        self.logger.info(
            "Event: AlertChange",
            event_id=event.event_id,
            event_type=event.event_type,
            correlation_id=correlation_id,
            topic=self.topic,
            alert_id=str(current.id),
            revision=current.revision,
            status=AlertStatus(current.status).value,
        )
        return event

    async def publish_pending(
        self,
        *,
        item_id: uuid.UUID | None = None,
        alert_id: uuid.UUID | None = None,
        correlation_id: str | None = None,
    ) -> list[AlertChangeEvent]:
        """Publish every pending revision for an item or a single alert."""
        alerts = await self.store.pending_publications(item_id=item_id, alert_id=alert_id)
        events = []
        for alert in alerts:
            event = await self.publish_alert(alert, correlation_id)
            if event is not None:
                events.append(event)
        return events
