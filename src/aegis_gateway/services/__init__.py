# src/aegis_gateway/services/__init__.py
"""Protection planes used by the Aegis security gateway."""

from .allowed_ip import AllowedIpStore
from .audit_log import AuditLog
from .client_identity import ClientIdentityResolver
from .csrf import CSRFTokenService
from .rate_limiter import RateLimiter
from .store import FailoverStore, MemoryStore, RedisStore
from .threat_scanner import ThreatScanner

__all__ = [
    "AllowedIpStore",
    "AuditLog",
    "ClientIdentityResolver",
    "CSRFTokenService",
    "FailoverStore",
    "MemoryStore",
    "RateLimiter",
    "RedisStore",
    "ThreatScanner",
]
