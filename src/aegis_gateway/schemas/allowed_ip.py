"""Allow-list Pydantic schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class AllowedIpCreate(BaseModel):
    """Request to allow an address for the calling principal."""

    ip_address: str = Field(..., max_length=64, description="IPv4 or IPv6 address")
    description: str | None = Field(None, max_length=255, description="Optional label")


class AllowedIpUpdate(BaseModel):
    """Partial update of an active allow-list entry."""

    ip_address: str | None = Field(None, max_length=64)
    description: str | None = Field(None, max_length=255)
    is_active: bool | None = Field(None, description="False soft-disables the entry")


class AllowedIpResponse(BaseModel):
    """Allow-list entry as returned by the API."""

    id: str
    ip_address: str
    description: str | None = None
    is_active: bool
    last_used_at: datetime | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AllowListStatsResponse(BaseModel):
    """Entry counts for the calling principal."""

    total: int
    active: int
    recently_used: int = Field(..., description="Entries used in the last 7 days")

    model_config = ConfigDict(from_attributes=True)
