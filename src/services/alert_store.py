"""Transactional persistence of alerts.

Every public call runs in its own transaction. Writers of the same
(item, kind) pair are serialized three ways: an in-process lock per pair, a
row lock on the open alert, and the unique ``open_key`` column that rejects a
second open alert outright. A lost race on that constraint is retried
immediately, at which point the winner's row is visible and gets updated.
"""

import asyncio
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from weakref import WeakValueDictionary

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.clock import Clock, utc_now
from src.core.exceptions import (
    IllegalTransitionError,
    NotFoundError,
    StorageConflictError,
    StorageUnavailableError,
)
from src.core.logging import get_logger
from src.models.alert import Alert, AlertKind, AlertSeverity, AlertStatus, open_key_for
from src.repositories.alert import AlertRepository
from src.services.rules import AlertCandidate, alert_id_for

logger = get_logger(__name__)

SYSTEM_ACTOR = "system"

LEGAL_TRANSITIONS: dict[AlertStatus, frozenset[AlertStatus]] = {
    AlertStatus.ACTIVE: frozenset(
        {AlertStatus.ACKNOWLEDGED, AlertStatus.DISMISSED, AlertStatus.RESOLVED},
    ),
    AlertStatus.ACKNOWLEDGED: frozenset({AlertStatus.RESOLVED, AlertStatus.DISMISSED}),
    AlertStatus.RESOLVED: frozenset(),
    AlertStatus.DISMISSED: frozenset(),
}

# Candidate fields copied onto the stored alert
_MUTABLE_FIELDS = (
    "severity",
    "title",
    "message",
    "item_name",
    "current_count",
    "threshold",
    "expiry_date",
)


@dataclass(frozen=True)
class UpsertResult:
    """Outcome of an upsert."""

    alert: Alert
    created: bool
    changed: bool
    previous_severity: AlertSeverity | None = None


class AlertStoreGateway:
    """Reads and writes alerts, enforcing the lifecycle rules."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        conflict_retries: int = 3,
        clock: Clock = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._conflict_retries = conflict_retries
        self._clock = clock
        self._locks: WeakValueDictionary[str, asyncio.Lock] = WeakValueDictionary()
        self.logger = logger.bind(component="alert_store")

    @asynccontextmanager
    async def _transaction(self) -> AsyncGenerator[AlertRepository, None]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield AlertRepository(session)
        except IntegrityError as e:
            raise StorageConflictError(
                "Concurrent write to the same alert", context={"error": str(e.orig)},
            ) from e
        except SQLAlchemyError as e:
            raise StorageUnavailableError(
                "Alert store unavailable", context={"error": str(e)},
            ) from e

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def upsert(self, candidate: AlertCandidate, source: str | None = None) -> UpsertResult:
        """Create the open alert for a candidate, or refresh it in place.

        Status and creation time of an existing alert are never touched; a
        candidate identical to the stored alert writes nothing.
        """
        key = open_key_for(candidate.item_id, candidate.kind)
        async with self._lock_for(key):
            attempt = 0
            while True:
                try:
                    result = await self._upsert_once(candidate, key)
                    break
                except StorageConflictError:
                    attempt += 1
                    if attempt > self._conflict_retries:
                        raise
                    self.logger.warning(
                        "Alert upsert lost a race, retrying",
                        open_key=key,
                        attempt=attempt,
                    )

        if result.changed:
            self.logger.info(
                "Alert created" if result.created else "Alert updated",
                alert_id=str(result.alert.id),
                item_id=str(candidate.item_id),
                kind=candidate.kind.value,
                severity=candidate.severity.value,
                previous_severity=result.previous_severity,
                source=source,
            )
        return result

    async def _upsert_once(self, candidate: AlertCandidate, key: str) -> UpsertResult:
        async with self._transaction() as repo:
            existing = await repo.get_open(candidate.item_id, candidate.kind, for_update=True)
            now = self._clock()

            if existing is None:
                latest = await repo.max_generation(candidate.item_id, candidate.kind)
                generation = 0 if latest is None else latest + 1
                alert = await repo.create(
                    id=alert_id_for(candidate.alert_key, generation),
                    kind=candidate.kind,
                    severity=candidate.severity,
                    status=AlertStatus.ACTIVE,
                    title=candidate.title,
                    message=candidate.message,
                    item_id=candidate.item_id,
                    item_name=candidate.item_name,
                    item_kind=candidate.item_kind,
                    current_count=candidate.current_count,
                    threshold=candidate.threshold,
                    expiry_date=candidate.expiry_date,
                    details=dict(candidate.metadata),
                    open_key=key,
                    generation=generation,
                    revision=1,
                    published_revision=0,
                    created_at=now,
                    updated_at=now,
                )
                return UpsertResult(alert=alert, created=True, changed=True)

            changes: dict[str, Any] = {
                name: getattr(candidate, name)
                for name in _MUTABLE_FIELDS
                if getattr(existing, name) != getattr(candidate, name)
            }
            if (existing.details or {}) != candidate.metadata:
                changes["details"] = dict(candidate.metadata)

            previous = AlertSeverity(existing.severity)
            if not changes:
                return UpsertResult(
                    alert=existing, created=False, changed=False, previous_severity=previous,
                )

            for name, value in changes.items():
                setattr(existing, name, value)
            existing.revision += 1
            existing.updated_at = now
            await repo.session.flush()
            return UpsertResult(
                alert=existing, created=False, changed=True, previous_severity=previous,
            )

    async def transition(
        self,
        alert_id: uuid.UUID,
        target_status: AlertStatus,
        actor: str | None,
        timestamp: datetime | None = None,
        reason: str | None = None,
    ) -> Alert:
        """Move an alert to a new lifecycle status.

        Raises:
            NotFoundError: no alert has this id.
            IllegalTransitionError: the move is not in the lifecycle table.
        """
        target = AlertStatus(target_status)
        async with self._transaction() as repo:
            alert = await repo.get(alert_id, for_update=True)
            if alert is None:
                raise NotFoundError(
                    f"Alert {alert_id} not found", context={"alert_id": str(alert_id)},
                )

            current = AlertStatus(alert.status)
            if target not in LEGAL_TRANSITIONS[current]:
                raise IllegalTransitionError(
                    f"Cannot move alert {alert_id} from {current} to {target}",
                    context={
                        "alert_id": str(alert_id),
                        "from_status": current.value,
                        "to_status": target.value,
                    },
                )

            self._apply_transition(alert, target, actor, timestamp or self._clock(), reason)

        self.logger.info(
            "Alert status changed",
            alert_id=str(alert_id),
            from_status=current.value,
            to_status=target.value,
            actor=actor,
        )
        return alert

    @staticmethod
    def _apply_transition(
        alert: Alert,
        target: AlertStatus,
        actor: str | None,
        timestamp: datetime,
        reason: str | None,
    ) -> None:
        alert.status = target
        if target is AlertStatus.ACKNOWLEDGED:
            alert.acknowledged_by = actor
            alert.acknowledged_at = timestamp
        elif target is AlertStatus.RESOLVED:
            alert.resolved_by = actor
            alert.resolved_at = timestamp
            alert.resolution_reason = reason
        elif target is AlertStatus.DISMISSED:
            alert.dismissed_by = actor
            alert.dismissed_at = timestamp
            alert.resolution_reason = reason

        if not target.is_open:
            # Frees the slot for a future alert of the same kind
            alert.open_key = None
        alert.revision += 1
        alert.updated_at = timestamp

    async def acknowledge(self, alert_id: uuid.UUID, actor: str) -> Alert:
        return await self.transition(alert_id, AlertStatus.ACKNOWLEDGED, actor)

    async def resolve(
        self, alert_id: uuid.UUID, actor: str, reason: str | None = None,
    ) -> Alert:
        return await self.transition(alert_id, AlertStatus.RESOLVED, actor, reason=reason)

    async def dismiss(self, alert_id: uuid.UUID, actor: str | None = None) -> Alert:
        return await self.transition(alert_id, AlertStatus.DISMISSED, actor)

    async def resolve_open_for_item(
        self,
        item_id: uuid.UUID,
        *,
        actor: str = SYSTEM_ACTOR,
        reason: str | None = None,
        kinds: set[AlertKind] | None = None,
    ) -> list[Alert]:
        """Resolve the item's open alerts, optionally only of some kinds."""
        if kinds is not None and not kinds:
            return []

        async with self._transaction() as repo:
            alerts = await repo.list_open_for_item(item_id, kinds, for_update=True)
            now = self._clock()
            for alert in alerts:
                self._apply_transition(alert, AlertStatus.RESOLVED, actor, now, reason)

        for alert in alerts:
            self.logger.info(
                "Alert resolved",
                alert_id=str(alert.id),
                item_id=str(item_id),
                kind=AlertKind(alert.kind).value,
                actor=actor,
                reason=reason,
            )
        return alerts

    async def pending_publications(
        self,
        *,
        item_id: uuid.UUID | None = None,
        alert_id: uuid.UUID | None = None,
    ) -> list[Alert]:
        """Alerts whose latest revision has not been published yet."""
        async with self._transaction() as repo:
            return await repo.pending_publications(item_id=item_id, alert_id=alert_id)

    async def mark_published(self, alert_id: uuid.UUID, revision: int) -> bool:
        async with self._transaction() as repo:
            return await repo.mark_published(alert_id, revision)

    async def get(self, alert_id: uuid.UUID) -> Alert:
        async with self._transaction() as repo:
            alert = await repo.get(alert_id)
        if alert is None:
            raise NotFoundError(
                f"Alert {alert_id} not found", context={"alert_id": str(alert_id)},
            )
        return alert

    async def list_alerts(self, **filters: Any) -> list[Alert]:
        async with self._transaction() as repo:
            return await repo.list(**filters)

    async def list_open(self, limit: int = 100, offset: int = 0) -> list[Alert]:
        async with self._transaction() as repo:
            return await repo.list(
                statuses=[AlertStatus.ACTIVE, AlertStatus.ACKNOWLEDGED],
                limit=limit,
                offset=offset,
            )
