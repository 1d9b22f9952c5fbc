"""FastAPI application for the Inventory Alerting Service."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.routes import alerts, health, realtime
from src.core.config import Settings, settings as default_settings
from src.core.database import get_db
from src.core.exceptions import AlertingServiceError
from src.core.logging import configure_logging, get_logger
from src.core.runtime import AlertingRuntime

logger = get_logger(__name__)


def create_app(
    runtime: AlertingRuntime | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """Build the application.

    A runtime passed in is used as-is and left to its owner to start and
    stop; otherwise the lifespan creates one from settings.
    """
    app_settings = runtime.settings if runtime is not None else settings or default_settings
    configure_logging(app_settings.log_level, app_settings.log_json)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        owned = getattr(app.state, "runtime", None) is None
        if owned:
            app.state.runtime = AlertingRuntime(app_settings)
            await app.state.runtime.start()
        logger.info(
            "Service started",
            service=app_settings.app_name,
            version=app_settings.app_version,
            environment=app_settings.environment,
        )
        try:
            yield
        finally:
            if owned:
                await app.state.runtime.stop()
                app.state.runtime = None
            logger.info("Service stopped")

    app = FastAPI(
        title="Inventory Alerting Service",
        description="Derives stock and expiry alerts from inventory changes and streams them live.",
        version=app_settings.app_version,
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    @app.exception_handler(AlertingServiceError)
    async def alerting_error_handler(request: Request, exc: AlertingServiceError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(
                "Request failed",
                path=request.url.path,
                error_code=exc.error_code,
                error=exc.message,
            )
        content: dict[str, Any] = {
            "error": exc.error_code,
            "message": exc.message,
            "details": exc.details,
        }
        if exc.retryable:
            content["retryable"] = True
        return JSONResponse(status_code=exc.status_code, content=content)

    app.include_router(health.router)
    app.include_router(alerts.router, prefix="/api/v1/alerts", tags=["alerts"])
    app.include_router(realtime.router)

    @app.get("/", tags=["service"])
    async def service_info(db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
        """Service information."""
        try:
            await db.execute(text("SELECT 1"))
            database_status = "connected"
        except Exception as e:
            logger.error("Database check failed", error=str(e))
            database_status = "disconnected"

        return {
            "service": app_settings.app_name,
            "version": app_settings.app_version,
            "environment": app_settings.environment,
            "database": database_status,
            "docs": "/docs",
        }

    return app


app = create_app()
