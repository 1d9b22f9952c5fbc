"""API models for alert operations."""

from pydantic import BaseModel, ConfigDict, Field

from src.models.events import AlertPayload


# Request Models
class TransitionRequest(BaseModel):
    """Request to acknowledge or resolve an alert."""

    actor: str = Field(..., min_length=1, max_length=255, description="Who performs the change")
    reason: str | None = Field(None, max_length=1000, description="Optional resolution note")


class DismissRequest(BaseModel):
    """Request to dismiss an alert."""

    actor: str | None = Field(None, max_length=255, description="Who dismisses the alert")
    reason: str | None = Field(None, max_length=1000, description="Optional note")


# Response Models
class AlertResponse(AlertPayload):
    """Alert with its lifecycle bookkeeping."""

    model_config = ConfigDict(from_attributes=True)

    generation: int = Field(..., description="Episode number for this item and kind")
    revision: int = Field(..., description="Incremented on every visible change")


class AlertListResponse(BaseModel):
    """Page of alerts."""

    items: list[AlertResponse]
    count: int
    total: int
    limit: int
    offset: int
