"""Alert API routes."""

import uuid

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.models.alerts import (
    AlertListResponse,
    AlertResponse,
    DismissRequest,
    TransitionRequest,
)
from src.core.database import get_db
from src.core.exceptions import BrokerUnavailableError, NotFoundError
from src.core.logging import get_logger
from src.core.runtime import AlertingRuntime
from src.models.alert import Alert, AlertKind, AlertSeverity, AlertStatus
from src.repositories.alert import OPEN_STATUSES, AlertRepository

logger = get_logger(__name__)

router = APIRouter()


def get_runtime(request: Request) -> AlertingRuntime:
    return request.app.state.runtime


async def _announce(runtime: AlertingRuntime, alert: Alert) -> None:
    """Publish the change; a broker outage leaves it pending for the sweeper."""
    try:
        await runtime.alert_publisher.publish_pending(alert_id=alert.id)
    except BrokerUnavailableError as e:
        logger.warning(
            "Alert change publication deferred",
            alert_id=str(alert.id),
            revision=alert.revision,
            error=e.message,
        )


@router.get(
    "",
    response_model=AlertListResponse,
    summary="List alerts",
    description="""
List alerts, newest first.

Filters can be combined:
- status, kind and severity
- the source inventory item
    """,
)
async def list_alerts(
    status_filter: AlertStatus | None = Query(None, alias="status", description="Filter by status"),
    kind: AlertKind | None = Query(None, description="Filter by alert kind"),
    severity: AlertSeverity | None = Query(None, description="Filter by severity"),
    item_id: uuid.UUID | None = Query(None, description="Filter by inventory item"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
) -> AlertListResponse:
    """List alerts."""
    repo = AlertRepository(db)
    filters = {
        "status": status_filter,
        "kind": kind,
        "severity": severity,
        "item_id": item_id,
    }
    alerts = await repo.list(**filters, limit=limit, offset=offset)
    total = await repo.count(**filters)
    items = [AlertResponse.model_validate(alert) for alert in alerts]
    return AlertListResponse(
        items=items, count=len(items), total=total, limit=limit, offset=offset,
    )


@router.get(
    "/active",
    response_model=AlertListResponse,
    summary="List open alerts",
    description="Alerts that are active or acknowledged.",
)
async def list_open_alerts(
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
) -> AlertListResponse:
    """List open alerts."""
    repo = AlertRepository(db)
    statuses = list(OPEN_STATUSES)
    alerts = await repo.list(statuses=statuses, limit=limit, offset=offset)
    total = await repo.count(statuses=statuses)
    items = [AlertResponse.model_validate(alert) for alert in alerts]
    return AlertListResponse(
        items=items, count=len(items), total=total, limit=limit, offset=offset,
    )


@router.get(
    "/{alert_id}",
    response_model=AlertResponse,
    summary="Get alert",
    responses={404: {"description": "Alert not found"}},
)
async def get_alert(alert_id: uuid.UUID, db: AsyncSession = Depends(get_db)) -> AlertResponse:
    """Get an alert by ID."""
    alert = await AlertRepository(db).get(alert_id)
    if alert is None:
        raise NotFoundError(f"Alert {alert_id} not found")
    return AlertResponse.model_validate(alert)


@router.post(
    "/{alert_id}/acknowledge",
    response_model=AlertResponse,
    status_code=status.HTTP_200_OK,
    summary="Acknowledge alert",
    description="Mark an active alert as seen. The alert stays open.",
    responses={
        404: {"description": "Alert not found"},
        409: {"description": "Alert is not active"},
    },
)
async def acknowledge_alert(
    alert_id: uuid.UUID,
    request: TransitionRequest,
    runtime: AlertingRuntime = Depends(get_runtime),
) -> AlertResponse:
    """Acknowledge an alert."""
    alert = await runtime.store.acknowledge(alert_id, request.actor)
    await _announce(runtime, alert)
    return AlertResponse.model_validate(alert)


@router.post(
    "/{alert_id}/resolve",
    response_model=AlertResponse,
    summary="Resolve alert",
    description="Close an open alert. A recurring condition raises a new alert.",
    responses={
        404: {"description": "Alert not found"},
        409: {"description": "Alert is already closed"},
    },
)
async def resolve_alert(
    alert_id: uuid.UUID,
    request: TransitionRequest,
    runtime: AlertingRuntime = Depends(get_runtime),
) -> AlertResponse:
    """Resolve an alert."""
    alert = await runtime.store.resolve(alert_id, request.actor, reason=request.reason)
    await _announce(runtime, alert)
    return AlertResponse.model_validate(alert)


@router.post(
    "/{alert_id}/dismiss",
    response_model=AlertResponse,
    summary="Dismiss alert",
    description="Close an open alert without resolving the condition.",
    responses={
        404: {"description": "Alert not found"},
        409: {"description": "Alert is already closed"},
    },
)
async def dismiss_alert(
    alert_id: uuid.UUID,
    request: DismissRequest,
    runtime: AlertingRuntime = Depends(get_runtime),
) -> AlertResponse:
    """Dismiss an alert."""
    alert = await runtime.store.transition(
        alert_id, AlertStatus.DISMISSED, request.actor, reason=request.reason,
    )
    await _announce(runtime, alert)
    return AlertResponse.model_validate(alert)
