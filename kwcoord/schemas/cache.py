from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


MatchType = Literal["phrase", "exact"]


class CacheMetadata(BaseModel):
    source: str = Field(..., description="Provider that produced the cached data.")
    cached_at: datetime
    ttl_seconds: int = Field(..., ge=1)


class CachedResult(BaseModel):
    """Payload stored in a cache slot."""

    data: Any
    metadata: CacheMetadata
