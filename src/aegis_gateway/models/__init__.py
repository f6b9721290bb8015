# src/aegis_gateway/models/__init__.py
"""SQLAlchemy models for the Aegis gateway."""

from .allowed_ip import AllowedIp
from .audit_event import AuditEvent

__all__ = [
    "AllowedIp",
    "AuditEvent",
]
