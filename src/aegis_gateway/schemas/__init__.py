# src/aegis_gateway/schemas/__init__.py
"""Pydantic schemas for the Aegis gateway API."""

from .allowed_ip import AllowedIpCreate, AllowedIpResponse, AllowedIpUpdate, AllowListStatsResponse
from .audit import AuditEventResponse, AuditStatsResponse
from .rate_limit import RateLimitEntryResponse, RateLimitInfoResponse, RateLimitStatsResponse
from .security import CSRFTokenResponse

__all__ = [
    "AllowedIpCreate",
    "AllowedIpResponse",
    "AllowedIpUpdate",
    "AllowListStatsResponse",
    "AuditEventResponse",
    "AuditStatsResponse",
    "CSRFTokenResponse",
    "RateLimitEntryResponse",
    "RateLimitInfoResponse",
    "RateLimitStatsResponse",
]
