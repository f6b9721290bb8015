"""API endpoint modules for version 1."""

from .allowed_ips import router as allowed_ips_router
from .audit import router as audit_router
from .rate_limits import router as rate_limits_router
from .security import router as security_router

__all__ = [
    "allowed_ips_router",
    "audit_router",
    "rate_limits_router",
    "security_router",
]
