# src/aegis_gateway/api/v1/endpoints/security.py
"""Security helper endpoints."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request, Response, status

from aegis_gateway.db.time import from_epoch
from aegis_gateway.schemas.security import CSRFTokenResponse
from aegis_gateway.services.client_identity import ClientIdentity, is_secure_request
from aegis_gateway.services.csrf import CSRFTokenService

router = APIRouter(prefix="/security", tags=["security"])


@router.get("/csrf-token", response_model=CSRFTokenResponse)
async def get_csrf_token(request: Request, response: Response) -> CSRFTokenResponse:
    """Return the session's CSRF token and set it as a cookie."""
    csrf: CSRFTokenService | None = getattr(request.app.state, "csrf_service", None)
    if csrf is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="CSRF protection is not enabled",
        )
    identity = getattr(request.state, "client_identity", None)
    if not isinstance(identity, ClientIdentity):
        identity = None
    session_id = csrf.get_session_id(request, identity.ip if identity else None)
    token = await csrf.get_or_create_token(session_id)
    csrf.set_token_cookie(response, token, secure=is_secure_request(request, identity))
    return CSRFTokenResponse(
        token=token.value,
        header_name=csrf.header_name,
        expires_at=from_epoch(token.expires_at),
    )
