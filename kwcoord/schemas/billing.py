from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class BillingEvent(BaseModel):
    """Event delivered by the billing provider's webhook."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1, description="Provider event id, unique per event.")
    type: str = Field(..., min_length=1, examples=["checkout.session.completed"])
    data: dict[str, Any] = Field(default_factory=dict)


class WebhookAck(BaseModel):
    received: bool = True
    event_id: str
    state: str
