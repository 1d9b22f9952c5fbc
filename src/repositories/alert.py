"""Repository for alert operations."""

from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import Select, and_, func, select, update

from src.core.logging import get_logger
from src.models.alert import Alert, AlertKind, AlertStatus, open_key_for
from src.repositories.base import BaseRepository

logger = get_logger(__name__)

OPEN_STATUSES = (AlertStatus.ACTIVE, AlertStatus.ACKNOWLEDGED)


class AlertRepository(BaseRepository[Alert]):
    """Repository for alert operations."""

    async def create(self, **kwargs: Any) -> Alert:
        """Create a new alert."""
        alert = Alert(**kwargs)
        self.session.add(alert)
        await self.session.flush()
        return alert

    async def get(self, id: uuid.UUID, *, for_update: bool = False) -> Alert | None:
        """Get alert by ID."""
        stmt = select(Alert).where(Alert.id == id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_open(
        self, item_id: uuid.UUID, kind: AlertKind, *, for_update: bool = False,
    ) -> Alert | None:
        """Get the open alert for an item and kind, if any."""
        stmt = select(Alert).where(Alert.open_key == open_key_for(item_id, kind))
        if for_update:
            # Row lock serializes concurrent writers of the same alert
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def max_generation(self, item_id: uuid.UUID, kind: AlertKind) -> int | None:
        """Highest episode number recorded for an item and kind."""
        stmt = select(func.max(Alert.generation)).where(
            and_(Alert.item_id == item_id, Alert.kind == kind),
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_open_for_item(
        self,
        item_id: uuid.UUID,
        kinds: set[AlertKind] | None = None,
        *,
        for_update: bool = False,
    ) -> list[Alert]:
        """Open alerts for an item, optionally restricted to some kinds."""
        stmt = select(Alert).where(
            and_(Alert.item_id == item_id, Alert.status.in_(OPEN_STATUSES)),
        )
        if kinds is not None:
            stmt = stmt.where(Alert.kind.in_(list(kinds)))
        if for_update:
            stmt = stmt.with_for_update()
        stmt = stmt.order_by(Alert.created_at, Alert.id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    def _apply_filters(stmt: Select, filters: dict[str, Any]) -> Select:
        if status := filters.get("status"):
            stmt = stmt.where(Alert.status == status)
        if statuses := filters.get("statuses"):
            stmt = stmt.where(Alert.status.in_(statuses))
        if kind := filters.get("kind"):
            stmt = stmt.where(Alert.kind == kind)
        if severity := filters.get("severity"):
            stmt = stmt.where(Alert.severity == severity)
        if item_id := filters.get("item_id"):
            stmt = stmt.where(Alert.item_id == item_id)
        return stmt

    async def list(self, **filters: Any) -> list[Alert]:
        """List alerts with optional filters, newest first."""
        stmt = self._apply_filters(select(Alert), filters)
        stmt = stmt.order_by(Alert.created_at.desc(), Alert.id)

        # Pagination
        if limit := filters.get("limit"):
            stmt = stmt.limit(limit)
        if offset := filters.get("offset"):
            stmt = stmt.offset(offset)

        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count(self, **filters: Any) -> int:
        """Number of alerts matching the filters, ignoring pagination."""
        stmt = self._apply_filters(select(func.count()).select_from(Alert), filters)
        result = await self.session.execute(stmt)
        return result.scalar_one()

    async def pending_publications(
        self,
        *,
        item_id: uuid.UUID | None = None,
        alert_id: uuid.UUID | None = None,
    ) -> list[Alert]:
        """Alerts with changes not yet announced on the alert topic."""
        stmt = select(Alert).where(Alert.revision > Alert.published_revision)
        if item_id is not None:
            stmt = stmt.where(Alert.item_id == item_id)
        if alert_id is not None:
            stmt = stmt.where(Alert.id == alert_id)
        stmt = stmt.order_by(Alert.updated_at, Alert.id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def mark_published(self, id: uuid.UUID, revision: int) -> bool:
        """Record that a revision was published; never moves backwards."""
        stmt = (
            update(Alert)
            .where(and_(Alert.id == id, Alert.published_revision < revision))
            .values(published_revision=revision)
        )
        result = await self.session.execute(stmt)
        return result.rowcount > 0
