# src/aegis_gateway/db/time.py
"""Time helpers for persisted timestamps and retention windows."""

from datetime import UTC, datetime, timedelta


def utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(UTC)


def ago(window: timedelta) -> datetime:
    """Return the UTC instant ``window`` before now, e.g. a retention cutoff."""
    return utcnow() - window


def from_epoch(seconds: float) -> datetime:
    """Convert epoch seconds (CSRF expiry, rate-limit resets) to an aware datetime."""
    return datetime.fromtimestamp(seconds, UTC)
