"""Inventory event consumer that derives, stores and announces alerts."""

import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import ValidationError

from src.core.clock import Clock, utc_now
from src.core.event_bus import EventBus
from src.core.events import AlertEventPublisher
from src.core.exceptions import InvalidEventError
from src.core.logging import get_logger
from src.models.events import AlertChangeEvent, InventoryChangeEvent, InventoryEventKind
from src.services.alert_store import SYSTEM_ACTOR, AlertStoreGateway
from src.services.rules import DEFAULT_EXPIRY_WINDOW_DAYS, cleared_kinds, evaluate

logger = get_logger(__name__)

REASON_CONDITION_CLEARED = "condition cleared"
REASON_ITEM_DELETED = "item deleted"


class ProcessingStage(StrEnum):
    """Stages an inventory event moves through."""
    RECEIVED = "received"
    EVALUATING = "evaluating"
    PERSISTING = "persisting"
    PUBLISHING = "publishing"
    ACKED = "acked"


@dataclass
class ProcessingResult:
    """What handling one inventory event changed."""

    event_id: str
    created: list[uuid.UUID] = field(default_factory=list)
    updated: list[uuid.UUID] = field(default_factory=list)
    resolved: list[uuid.UUID] = field(default_factory=list)
    published: list[AlertChangeEvent] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.updated or self.resolved)


def parse_inventory_event(payload: Any) -> InventoryChangeEvent:
    """Validate a raw bus payload.

    Raises:
        InvalidEventError: the payload does not match the event schema.
    """
    try:
        return InventoryChangeEvent.model_validate(payload)
    except ValidationError as e:
        raise InvalidEventError(
            "Malformed inventory change event",
            details=e.errors(include_url=False, include_context=False, include_input=False),
        ) from e


class AlertConsumer:
    """
    Consumes inventory change events.

    Handling is idempotent: a redelivered event evaluates to the alerts that
    already exist, writes nothing and publishes only revisions still pending
    from an earlier, interrupted attempt. Storage and publish failures
    propagate to the bus, which retries with backoff and dead-letters the
    event when the budget runs out.
    """

    def __init__(
        self,
        store: AlertStoreGateway,
        publisher: AlertEventPublisher,
        *,
        expiry_window_days: int = DEFAULT_EXPIRY_WINDOW_DAYS,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.publisher = publisher
        self.expiry_window_days = expiry_window_days
        self._clock = clock
        self.logger = logger.bind(component="alert_consumer")

    async def start(self, bus: EventBus, topic: str, consumer_group: str) -> None:
        await bus.subscribe_group(topic, consumer_group, self.handle)
        self.logger.info("Alert consumer subscribed", topic=topic, consumer_group=consumer_group)

    async def handle(self, payload: dict[str, Any]) -> None:
        """Bus handler."""
        await self.process(parse_inventory_event(payload))

    async def process(self, event: InventoryChangeEvent) -> ProcessingResult:
        snapshot = event.data
        log = self.logger.bind(
            event_id=event.event_id,
            event_type=event.event_type.value,
            correlation_id=event.correlation_id,
            item_id=str(snapshot.id),
        )
        result = ProcessingResult(event_id=event.event_id)
        log.debug("Inventory event received", stage=ProcessingStage.RECEIVED)

        if event.event_type is InventoryEventKind.DELETED:
            log.debug("Persisting", stage=ProcessingStage.PERSISTING)
            resolved = await self.store.resolve_open_for_item(
                snapshot.id, actor=SYSTEM_ACTOR, reason=REASON_ITEM_DELETED,
            )
            result.resolved.extend(alert.id for alert in resolved)
        else:
            now = self._clock()
            candidates = evaluate(snapshot, now, self.expiry_window_days)
            cleared = cleared_kinds(snapshot, now, self.expiry_window_days)
            log.debug(
                "Evaluated",
                stage=ProcessingStage.EVALUATING,
                candidates=[candidate.kind.value for candidate in candidates],
                cleared=sorted(kind.value for kind in cleared),
            )

            log.debug("Persisting", stage=ProcessingStage.PERSISTING)
            for candidate in candidates:
                upserted = await self.store.upsert(candidate, source=event.event_id)
                if upserted.created:
                    result.created.append(upserted.alert.id)
                elif upserted.changed:
                    result.updated.append(upserted.alert.id)

            resolved = await self.store.resolve_open_for_item(
                snapshot.id, actor=SYSTEM_ACTOR, reason=REASON_CONDITION_CLEARED, kinds=cleared,
            )
            result.resolved.extend(alert.id for alert in resolved)

        log.debug("Publishing", stage=ProcessingStage.PUBLISHING)
        result.published = await self.publisher.publish_pending(
            item_id=snapshot.id, correlation_id=event.correlation_id,
        )

        log.info(
            "Inventory event processed",
            stage=ProcessingStage.ACKED,
            created=len(result.created),
            updated=len(result.updated),
            resolved=len(result.resolved),
            published=len(result.published),
        )
        return result
