"""Shared API dependencies for authentication and common functionality."""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from aegis_gateway.core.security import Principal, decode_access_token
from aegis_gateway.core.settings import Settings, settings
from aegis_gateway.db.session import get_db
from aegis_gateway.middleware.ip_allowlist import IpAllowlistGate
from aegis_gateway.services.audit_log import AuditLog, RequestContext
from aegis_gateway.services.client_identity import ClientIdentity
from aegis_gateway.services.rate_limiter import RateLimiter

# HTTP Bearer scheme for JWT authentication
bearer_scheme = HTTPBearer()

# Type alias for database session dependency
SessionDep = Annotated[Session, Depends(get_db)]


def get_app_settings(request: Request) -> Settings:
    """Return the settings the running application was built with."""
    return getattr(request.app.state, "settings", settings)


def get_audit_log(request: Request) -> AuditLog:
    """Return the application's audit log, or a log-only one."""
    audit = getattr(request.app.state, "audit_log", None)
    return audit if isinstance(audit, AuditLog) else AuditLog()


def get_rate_limiter(request: Request) -> RateLimiter:
    """Return the application's rate limiter.

    Raises:
        HTTPException: 503 when the rate-limit plane is disabled
    """
    limiter = getattr(request.app.state, "rate_limiter", None)
    if not isinstance(limiter, RateLimiter):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Rate limiting is not enabled",
        )
    return limiter

def get_current_principal(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
) -> Principal:
    """Verify the bearer token and attach the principal to the request.

    Args:
        request: Incoming request; ``request.state.principal`` is set
        credentials: HTTP Bearer token credentials

    Returns:
        Principal identified by the token's ``sub`` claim

    Raises:
        HTTPException: If the token does not verify
    """
    claims = decode_access_token(credentials.credentials, config=get_app_settings(request))
    if claims is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    principal = Principal(id=str(claims["sub"]), claims=claims)
    request.state.principal = principal
    return principal


PrincipalDep = Annotated[Principal, Depends(get_current_principal)]


def enforce_ip_allowlist(request: Request, principal: PrincipalDep, db: SessionDep) -> Principal:
    """Authenticate, then apply the IP allow-list gate for privileged routes."""
    gate: IpAllowlistGate | None = getattr(request.app.state, "ip_allowlist_gate", None)
    if gate is None:
        raise RuntimeError("IP allow-list gate is not configured on this application")
    gate.check(request, db)
    return principal


AdminPrincipalDep = Annotated[Principal, Depends(enforce_ip_allowlist)]
AuditDep = Annotated[AuditLog, Depends(get_audit_log)]
RateLimiterDep = Annotated[RateLimiter, Depends(get_rate_limiter)]


def request_context(request: Request, principal: Principal | None = None) -> RequestContext:
    """Build an audit context for ``request`` using the gateway's resolved IP."""
    identity = getattr(request.state, "client_identity", None)
    if isinstance(identity, ClientIdentity):
        ip = identity.ip
    else:
        ip = request.client.host if request.client else "unknown"
    return RequestContext.from_request(
        request, ip, principal_id=principal.id if principal else None
    )
