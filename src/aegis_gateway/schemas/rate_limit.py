"""Rate-limit administration schemas."""

from datetime import datetime

from pydantic import BaseModel, Field


class RateLimitInfoResponse(BaseModel):
    """Current window for one identity and category."""

    identity: str
    category: str
    is_blocked: bool
    remaining: int
    limit: int
    reset_at: datetime
    retry_after_ms: int | None = None


class RateLimitEntryResponse(BaseModel):
    """Live counter as listed for operators."""

    identity: str
    category: str
    count: int
    limit: int
    is_blocked: bool = Field(..., description="True when the next request would be rejected")
    reset_at: datetime


class RateLimitStatsResponse(BaseModel):
    total: int
    blocked: int
    by_category: dict[str, int]
