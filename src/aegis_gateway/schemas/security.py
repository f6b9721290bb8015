"""Schemas for security helper endpoints."""

from datetime import datetime

from pydantic import BaseModel, Field


class CSRFTokenResponse(BaseModel):
    """Anti-forgery token the client must echo on state-changing requests."""

    token: str
    header_name: str = Field(..., description="Header that must carry the token")
    expires_at: datetime
