"""Repository for inventory item reads."""

from __future__ import annotations

import uuid
from datetime import date

from sqlalchemy import select

from src.models.inventory import InventoryItem
from src.repositories.base import BaseRepository


class InventoryRepository(BaseRepository[InventoryItem]):
    """Read access to items owned by the inventory CRUD layer."""

    async def get(self, id: uuid.UUID) -> InventoryItem | None:
        """Get inventory item by ID."""
        stmt = select(InventoryItem).where(InventoryItem.id == id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_expiring_items(
        self,
        expiring_on_or_before: date,
        limit: int = 500,
        offset: int = 0,
        *,
        expiring_on_or_after: date | None = None,
    ) -> list[InventoryItem]:
        """Items with an expiry date on or before the given day, soonest first."""
        stmt = (
            select(InventoryItem)
            .where(InventoryItem.expiry_date.is_not(None))
            .where(InventoryItem.expiry_date <= expiring_on_or_before)
        )
        if expiring_on_or_after is not None:
            stmt = stmt.where(InventoryItem.expiry_date >= expiring_on_or_after)
        stmt = stmt.order_by(InventoryItem.expiry_date, InventoryItem.id).limit(limit).offset(offset)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
