"""Error taxonomy for the request-security gateway.

Security rejections are always rendered as a uniform 403 so callers cannot
tell which check failed. Allow-list errors are validation errors and carry a
message meant for the caller.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from aegis_gateway.services.threat_scanner import ThreatSignal


class GatewayError(Exception):
    """Base class for all gateway errors."""


class SecurityRejection(GatewayError):
    """Base class for requests refused by a protection plane."""

    reason = "security policy violation"


class RateLimited(SecurityRejection):
    """Raised when an identity exceeded the limit for a category."""

    reason = "rate limit exceeded"

    def __init__(self, retry_after_ms: int) -> None:
        super().__init__(f"rate limited, retry after {retry_after_ms}ms")
        self.retry_after_ms = retry_after_ms


class CSRFInvalid(SecurityRejection):
    """Raised when a state-changing request lacks a valid anti-forgery token."""

    reason = "csrf validation failed"

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class ThreatDetected(SecurityRejection):
    """Raised when the payload scanner matched an attack signature."""

    reason = "threat detected"

    def __init__(self, signals: list[ThreatSignal]) -> None:
        super().__init__(", ".join(signal.matched_pattern for signal in signals))
        self.signals = signals


class RequestTooLarge(SecurityRejection):
    """Raised when the declared body size exceeds the configured maximum."""

    reason = "request body too large"


class AllowListError(ValueError):
    """Base class for allow-list validation errors surfaced to the caller."""


class InvalidAddress(AllowListError):
    """Raised when an address is malformed or points at a non-routable range."""


class DuplicateEntry(AllowListError):
    """Raised when the principal already has an active entry for the address."""


class NotFound(AllowListError):
    """Raised when no matching entry is owned by the principal."""


class PipelineConfigurationError(RuntimeError):
    """Raised when middleware ordering violates a required precondition.

    The allow-list gate raises it when it runs before authentication has
    attached a principal to the request.
    """
