# src/aegis_gateway/api/v1/__init__.py
"""Version 1 API endpoints."""

from .endpoints import allowed_ips_router, audit_router, rate_limits_router, security_router

__all__ = [
    "allowed_ips_router",
    "audit_router",
    "rate_limits_router",
    "security_router",
]
