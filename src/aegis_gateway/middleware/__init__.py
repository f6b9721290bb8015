# src/aegis_gateway/middleware/__init__.py
"""HTTP middleware for the Aegis gateway."""

from .ip_allowlist import IpAllowlistGate
from .security_gateway import SecurityGateway

__all__ = [
    "IpAllowlistGate",
    "SecurityGateway",
]
