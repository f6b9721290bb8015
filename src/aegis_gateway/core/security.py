"""Bearer credential helpers built on python-jose."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from jose import JWTError, jwt

from aegis_gateway.core.settings import Settings, settings

BEARER_PREFIX = "bearer "


@dataclass(frozen=True)
class Principal:
    """Authenticated caller attached to ``request.state.principal``."""

    id: str
    claims: dict[str, Any] = field(default_factory=dict)


def create_access_token(
    subject: str,
    extra_claims: dict[str, str] | None = None,
    *,
    config: Settings | None = None,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a signed JWT access token for ``subject``."""
    cfg = config or settings
    to_encode: dict[str, object] = {"sub": subject}
    if extra_claims:
        to_encode.update(extra_claims)
    expire = datetime.now(UTC) + (
        expires_delta or timedelta(minutes=cfg.access_token_expire_minutes)
    )
    to_encode["exp"] = expire
    encoded_jwt: str = jwt.encode(to_encode, cfg.secret_key, algorithm=cfg.jwt_algorithm)
    return encoded_jwt


def decode_access_token(token: str, *, config: Settings | None = None) -> dict[str, Any] | None:
    """Return the verified claims of ``token`` or None when it does not verify.

    Signature and expiry are both checked; a token without a ``sub`` claim is
    treated as invalid.
    """
    cfg = config or settings
    try:
        payload = jwt.decode(token, cfg.secret_key, algorithms=[cfg.jwt_algorithm])
    except JWTError:
        return None
    if not payload.get("sub"):
        return None
    return payload


def extract_bearer_token(authorization: str | None) -> str | None:
    """Return the raw token from an ``Authorization: Bearer`` header value."""
    if not authorization or not authorization.lower().startswith(BEARER_PREFIX):
        return None
    token = authorization[len(BEARER_PREFIX):].strip()
    return token or None


def has_valid_bearer(authorization: str | None, *, config: Settings | None = None) -> bool:
    """Return True if the header carries a bearer token that verifies."""
    token = extract_bearer_token(authorization)
    if token is None:
        return False
    return decode_access_token(token, config=config) is not None
