from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class Tier(str, Enum):
    TRIAL = "trial"
    PRO = "pro"


class IdentityRecord(BaseModel):
    """Per-principal record stored under ``entity:<identity_id>``."""

    identity_id: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    tier: Tier = Tier.TRIAL
    status: str = "active"
    billing_customer_id: str | None = None
    subscription_id: str | None = None
    subscription_status: str | None = None
    trial_started_at: datetime
    trial_expires_at: datetime
    created_at: datetime
    updated_at: datetime
