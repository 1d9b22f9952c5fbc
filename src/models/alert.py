"""Database model for derived alerts."""

import uuid
from datetime import date, datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from src.core.database import Base


class ItemKind(StrEnum):
    """Kinds of tracked inventory items."""
    MEDICINE = "medicine"
    KITCHEN = "kitchen"


class AlertKind(StrEnum):
    """Conditions an alert can report."""
    LOW_STOCK = "low_stock"
    OUT_OF_STOCK = "out_of_stock"
    EXPIRY_WARNING = "expiry_warning"
    EXPIRED = "expired"


class AlertSeverity(StrEnum):
    """Alert severities, lowest first."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertStatus(StrEnum):
    """Alert lifecycle states."""
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"

    @property
    def is_open(self) -> bool:
        return self in (AlertStatus.ACTIVE, AlertStatus.ACKNOWLEDGED)


def enum_column(enum_cls: type[StrEnum]) -> Enum:
    return Enum(
        enum_cls,
        values_callable=lambda members: [member.value for member in members],
        native_enum=False,
        length=32,
    )


def open_key_for(item_id: uuid.UUID, kind: AlertKind) -> str:
    """Key that is unique among open alerts."""
    return f"{item_id}:{kind.value}"


class Alert(Base):
    """Alert derived from an inventory item's state."""

    __tablename__ = "alerts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        index=True,
    )
    kind: Mapped[AlertKind] = mapped_column(enum_column(AlertKind), nullable=False)
    severity: Mapped[AlertSeverity] = mapped_column(
        enum_column(AlertSeverity), nullable=False,
    )
    status: Mapped[AlertStatus] = mapped_column(
        enum_column(AlertStatus),
        nullable=False,
        default=AlertStatus.ACTIVE,
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)

    # Source item
    item_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        index=True,
    )
    item_name: Mapped[str] = mapped_column(String(255), nullable=False)
    item_kind: Mapped[ItemKind] = mapped_column(enum_column(ItemKind), nullable=False)
    current_count: Mapped[int | None] = mapped_column(Integer)
    threshold: Mapped[int | None] = mapped_column(Integer)
    expiry_date: Mapped[date | None] = mapped_column(Date)

    # Lifecycle
    acknowledged_by: Mapped[str | None] = mapped_column(String(255))
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    resolved_by: Mapped[str | None] = mapped_column(String(255))
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    dismissed_by: Mapped[str | None] = mapped_column(String(255))
    dismissed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    resolution_reason: Mapped[str | None] = mapped_column(Text)
    details: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict,
    )

    # Bookkeeping
    open_key: Mapped[str | None] = mapped_column(String(80), unique=True)
    generation: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    published_revision: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_alerts_item_kind", "item_id", "kind"),
        Index("ix_alerts_status_severity", "status", "severity"),
        Index("ix_alerts_pending", "item_id", "revision", "published_revision"),
    )

    @property
    def is_open(self) -> bool:
        return AlertStatus(self.status).is_open

    def __repr__(self) -> str:
        return (
            f"<Alert(id={self.id}, kind='{self.kind}', "
            f"severity='{self.severity}', status='{self.status}')>"
        )
