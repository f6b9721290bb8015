"""Audit trail Pydantic schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class AuditEventResponse(BaseModel):
    """Persisted security event."""

    id: int
    event_type: str
    severity: str
    actor_ip: str
    path: str
    method: str
    user_agent: str | None = None
    principal_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict, description="Sanitized metadata")
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditStatsResponse(BaseModel):
    """Event counts over a trailing window."""

    days: int
    total: int
    by_type: dict[str, int]
    by_severity: dict[str, int]
