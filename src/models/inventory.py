"""Database model for tracked inventory items."""

import uuid
from datetime import date, datetime
from typing import Any

from sqlalchemy import JSON, Date, DateTime, Index, Integer, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from src.core.database import Base
from src.models.alert import ItemKind, enum_column
from src.models.events import InventorySnapshot


class InventoryItem(Base):
    """Inventory item owned by the inventory CRUD layer; read-only here."""

    __tablename__ = "inventory_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    item_kind: Mapped[ItemKind] = mapped_column(enum_column(ItemKind), nullable=False)
    current_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    low_stock_threshold: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0,
    )
    unit: Mapped[str] = mapped_column(String(50), nullable=False)
    expiry_date: Mapped[date | None] = mapped_column(Date)
    category: Mapped[str | None] = mapped_column(String(100))
    location: Mapped[str | None] = mapped_column(String(255))
    extra: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_inventory_items_expiry", "expiry_date"),
    )

    def to_snapshot(self) -> InventorySnapshot:
        """Immutable view of the item as carried on inventory events."""
        return InventorySnapshot(
            id=self.id,
            name=self.name,
            item_kind=self.item_kind,
            current_count=self.current_count,
            low_stock_threshold=self.low_stock_threshold,
            unit=self.unit,
            expiry_date=self.expiry_date,
            category=self.category,
            location=self.location,
            metadata=dict(self.extra or {}),
        )

    def __repr__(self) -> str:
        return (
            f"<InventoryItem(id={self.id}, name='{self.name}', "
            f"count={self.current_count}, threshold={self.low_stock_threshold})>"
        )
