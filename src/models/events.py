"""Event models exchanged over the event bus."""

import uuid
from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from src.models.alert import AlertKind, AlertSeverity, AlertStatus, ItemKind

ScalarValue = str | int | float | bool | None


class ServiceName(StrEnum):
    """Service names for event correlation."""
    INVENTORY = "inventory-service"
    INVENTORY_ALERTING = "inventory-alerting-service"


class InventoryEventKind(StrEnum):
    """Types of inventory change events."""
    CREATED = "inventory.created"
    UPDATED = "inventory.updated"
    DELETED = "inventory.deleted"


class AlertEventKind(StrEnum):
    """Types of alert change events."""
    CREATED = "alert.created"
    UPDATED = "alert.updated"
    RESOLVED = "alert.resolved"


# Base Event Model
class BaseEvent(BaseModel):
    """Base model for all events."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    version: str = Field(default="1.0")


# Event Data Models
class InventorySnapshot(BaseModel):
    """State of an inventory item at the time of a change."""

    model_config = ConfigDict(frozen=True)

    id: uuid.UUID
    name: str = Field(..., min_length=1)
    item_kind: ItemKind
    current_count: int = Field(..., ge=0)
    low_stock_threshold: int = Field(..., ge=0)
    unit: str
    expiry_date: date | None = None
    category: str | None = None
    location: str | None = None
    metadata: dict[str, ScalarValue] = Field(default_factory=dict)


class AlertPayload(BaseModel):
    """Alert as carried on alert change events and in API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    kind: AlertKind
    severity: AlertSeverity
    status: AlertStatus
    title: str
    message: str
    item_id: uuid.UUID
    item_name: str
    item_kind: ItemKind
    current_count: int | None = None
    threshold: int | None = None
    expiry_date: date | None = None
    acknowledged_by: str | None = None
    acknowledged_at: datetime | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    dismissed_by: str | None = None
    dismissed_at: datetime | None = None
    resolution_reason: str | None = None
    created_at: datetime
    updated_at: datetime
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("details", "metadata"),
    )


# Event Models
class InventoryChangeEvent(BaseEvent):
    """Event published when an inventory item is created, updated or deleted."""

    event_type: InventoryEventKind
    source_service: str = Field(default=ServiceName.INVENTORY)
    data: InventorySnapshot


class AlertChangeEvent(BaseEvent):
    """Event published when an alert is created, changed or resolved."""

    event_type: AlertEventKind
    source_service: str = Field(default=ServiceName.INVENTORY_ALERTING)
    revision: int = Field(..., ge=1)
    data: AlertPayload


# Event Topics
class EventTopics:
    """Constants for default event topics."""

    INVENTORY_UPDATES = "inventory-updates"
    ALERTS = "alerts"


# Create a Topics instance for easy access
TOPICS = EventTopics()
