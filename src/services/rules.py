"""Alert derivation rules.

Turns an inventory snapshot into the alerts it warrants. Everything here is
pure: the same snapshot and clock always yield the same candidates, so the
consumer can re-evaluate a redelivered event without side effects.
"""

import math
import uuid
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time
from typing import Any

from src.models.alert import AlertKind, AlertSeverity, ItemKind
from src.models.events import InventorySnapshot

DEFAULT_EXPIRY_WINDOW_DAYS = 30

# Namespace for deterministic alert identities
ALERT_NAMESPACE = uuid.UUID("6f1c2b8e-4d3a-5e7f-9a0b-1c2d3e4f5a6b")

_SECONDS_PER_DAY = 24 * 60 * 60


@dataclass(frozen=True)
class AlertCandidate:
    """An alert the current snapshot warrants."""

    item_id: uuid.UUID
    item_name: str
    item_kind: ItemKind
    kind: AlertKind
    severity: AlertSeverity
    title: str
    message: str
    alert_key: uuid.UUID
    current_count: int | None = None
    threshold: int | None = None
    expiry_date: date | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


def alert_key_for(item_id: uuid.UUID, kind: AlertKind) -> uuid.UUID:
    """Stable identity of the logical alert for an (item, kind) pair."""
    return uuid.uuid5(ALERT_NAMESPACE, f"{item_id}:{kind.value}")


def alert_id_for(alert_key: uuid.UUID, generation: int) -> uuid.UUID:
    """Identifier of one alert episode.

    The first episode uses the alert key itself; an episode raised after an
    earlier one was closed gets its own id.
    """
    if generation == 0:
        return alert_key
    return uuid.uuid5(alert_key, f"generation-{generation}")


def days_until_expiry(expiry_date: date, now: datetime) -> int:
    """Whole days until expiry, rounding partial days up."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    expires_at = datetime.combine(expiry_date, time.min, tzinfo=UTC)
    seconds = (expires_at - now).total_seconds()
    return math.ceil(seconds / _SECONDS_PER_DAY)


def low_stock_severity(count: int) -> AlertSeverity:
    if count == 0:
        return AlertSeverity.CRITICAL
    if count <= 2:
        return AlertSeverity.HIGH
    return AlertSeverity.MEDIUM


def expiry_severity(days: int) -> AlertSeverity:
    if days <= 7:
        return AlertSeverity.HIGH
    if days <= 14:
        return AlertSeverity.MEDIUM
    return AlertSeverity.LOW


def evaluate(
    snapshot: InventorySnapshot,
    now: datetime,
    expiry_window_days: int = DEFAULT_EXPIRY_WINDOW_DAYS,
) -> list[AlertCandidate]:
    """Evaluate every rule against a snapshot.

    Rules are independent, so one snapshot may yield several candidates
    (for example out-of-stock and expired). Out-of-stock and low-stock never
    both fire: a zero count is reported only as out-of-stock.
    """
    candidates: list[AlertCandidate] = []
    count = snapshot.current_count
    threshold = snapshot.low_stock_threshold

    def candidate(
        kind: AlertKind,
        severity: AlertSeverity,
        title: str,
        message: str,
        **extra: Any,
    ) -> AlertCandidate:
        return AlertCandidate(
            item_id=snapshot.id,
            item_name=snapshot.name,
            item_kind=snapshot.item_kind,
            kind=kind,
            severity=severity,
            title=title,
            message=message,
            alert_key=alert_key_for(snapshot.id, kind),
            **extra,
        )

    stock_metadata = {
        **snapshot.metadata,
        "unit": snapshot.unit,
        "location": snapshot.location,
    }

    if count == 0:
        candidates.append(
            candidate(
                AlertKind.OUT_OF_STOCK,
                AlertSeverity.CRITICAL,
                f"Out of Stock: {snapshot.name}",
                f"{snapshot.name} is completely out of stock",
                current_count=0,
                threshold=threshold,
                metadata=stock_metadata,
            )
        )
    elif count <= threshold:
        candidates.append(
            candidate(
                AlertKind.LOW_STOCK,
                low_stock_severity(count),
                f"Low Stock Alert: {snapshot.name}",
                f"{snapshot.name} is running low. Current count: {count} {snapshot.unit}",
                current_count=count,
                threshold=threshold,
                metadata=stock_metadata,
            )
        )

    if snapshot.expiry_date is not None:
        days = days_until_expiry(snapshot.expiry_date, now)
        if days <= 0:
            candidates.append(
                candidate(
                    AlertKind.EXPIRED,
                    AlertSeverity.CRITICAL,
                    f"Expired Item: {snapshot.name}",
                    f"{snapshot.name} has expired and should be disposed of",
                    expiry_date=snapshot.expiry_date,
                    metadata=dict(snapshot.metadata),
                )
            )
        elif days <= expiry_window_days:
            candidates.append(
                candidate(
                    AlertKind.EXPIRY_WARNING,
                    expiry_severity(days),
                    f"Expiry Warning: {snapshot.name}",
                    f"{snapshot.name} will expire in {days} days",
                    expiry_date=snapshot.expiry_date,
                    metadata={**snapshot.metadata, "days_until_expiry": days},
                )
            )

    return candidates


def cleared_kinds(
    snapshot: InventorySnapshot,
    now: datetime,
    expiry_window_days: int = DEFAULT_EXPIRY_WINDOW_DAYS,
) -> set[AlertKind]:
    """Alert kinds whose own condition no longer holds for the snapshot.

    Each kind clears only on its own condition. A count dropping to zero does
    not clear low-stock, and an expiry warning stays open once the item has
    expired.
    """
    cleared: set[AlertKind] = set()
    count = snapshot.current_count

    if count > snapshot.low_stock_threshold:
        cleared.add(AlertKind.LOW_STOCK)
    if count > 0:
        cleared.add(AlertKind.OUT_OF_STOCK)

    if snapshot.expiry_date is None:
        cleared.update((AlertKind.EXPIRY_WARNING, AlertKind.EXPIRED))
    else:
        days = days_until_expiry(snapshot.expiry_date, now)
        if days > expiry_window_days:
            cleared.add(AlertKind.EXPIRY_WARNING)
        if days > 0:
            cleared.add(AlertKind.EXPIRED)

    return cleared
