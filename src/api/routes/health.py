"""Health check endpoints."""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.database import get_db
from src.core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


async def _database_ok(db: AsyncSession) -> bool:
    try:
        await db.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error("Database health check failed", error=str(e))
        return False


@router.get(
    "/health",
    summary="Health Check",
    description="""
Check the health of the Inventory Alerting Service.

This endpoint provides a basic health check that includes:
- Service status (always "healthy" if endpoint is reachable)
- Database connectivity status
- Event bus connectivity status

Used by load balancers and monitoring systems to determine service health.
    """,
    response_description="Service health status",
    responses={
        200: {
            "description": "Service is healthy",
            "content": {
                "application/json": {
                    "example": {
                        "status": "healthy",
                        "service": "inventory-alerting-service",
                        "version": "0.1.0",
                        "database": "connected",
                        "event_bus": "connected",
                        "subscribers": 3,
                    }
                }
            },
        }
    },
    status_code=status.HTTP_200_OK,
    tags=["health"],
)
async def health_check(request: Request, db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    """Basic health check."""
    runtime = request.app.state.runtime

    return {
        "status": "healthy",
        "service": runtime.settings.app_name,
        "version": runtime.settings.app_version,
        "database": "connected" if await _database_ok(db) else "disconnected",
        "event_bus": "connected" if await runtime.bus.health_check() else "disconnected",
        "subscribers": runtime.hub.subscriber_count,
    }


@router.get(
    "/health/ready",
    summary="Readiness Check",
    description="""
Check if the service is ready to handle requests and events.

Verifies:
- Database connection is working
- Event bus is connected

Returns 200 if ready, 503 if not ready.
Used by Kubernetes readiness probes.
    """,
    response_description="Service readiness status",
    responses={
        200: {
            "description": "Service is ready",
            "content": {
                "application/json": {
                    "example": {
                        "status": "ready",
                        "service": "inventory-alerting-service",
                        "version": "0.1.0",
                        "checks": {"database": "ok", "event_bus": "ok"},
                    }
                }
            },
        },
        503: {
            "description": "Service is not ready",
            "content": {
                "application/json": {
                    "example": {
                        "status": "not_ready",
                        "service": "inventory-alerting-service",
                        "version": "0.1.0",
                        "checks": {"database": "ok", "event_bus": "failed"},
                    }
                }
            },
        },
    },
    tags=["health"],
)
async def readiness_check(request: Request, db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    """Readiness check for Kubernetes."""
    runtime = request.app.state.runtime

    checks = {
        "database": "ok" if await _database_ok(db) else "failed",
        "event_bus": "ok" if await runtime.bus.health_check() else "failed",
    }
    all_ready = all(check == "ok" for check in checks.values())

    response = {
        "status": "ready" if all_ready else "not_ready",
        "service": runtime.settings.app_name,
        "version": runtime.settings.app_version,
        "checks": checks,
    }

    if not all_ready:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=response)

    return response


@router.get(
    "/health/live",
    summary="Liveness Check",
    description="""
Check if the service is alive and running.

Does not check dependencies like database or broker connections.

Always returns 200 OK if the endpoint is reachable.
Used by Kubernetes liveness probes.
    """,
    response_description="Service liveness status",
    responses={
        200: {
            "description": "Service is alive",
            "content": {
                "application/json": {
                    "example": {
                        "status": "alive",
                        "service": "inventory-alerting-service",
                        "version": "0.1.0",
                    }
                }
            },
        }
    },
    status_code=status.HTTP_200_OK,
    tags=["health"],
)
async def liveness_check(request: Request) -> dict[str, str]:
    """Liveness check for Kubernetes."""
    runtime = request.app.state.runtime

    return {
        "status": "alive",
        "service": runtime.settings.app_name,
        "version": runtime.settings.app_version,
    }
