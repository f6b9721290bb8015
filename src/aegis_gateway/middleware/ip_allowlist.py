# src/aegis_gateway/middleware/ip_allowlist.py
"""Per-principal IP allow-list gate for privileged routes."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Final

from fastapi import HTTPException, status
from sqlalchemy.orm import Session
from starlette.requests import Request

from aegis_gateway.core.errors import PipelineConfigurationError
from aegis_gateway.core.security import Principal
from aegis_gateway.services.allowed_ip import AllowedIpStore
from aegis_gateway.services.audit_log import AuditEventType, AuditLog, RequestContext
from aegis_gateway.services.client_identity import ClientIdentity, ClientIdentityResolver

logger = logging.getLogger(__name__)

EXEMPT_SEGMENTS: Final[frozenset[str]] = frozenset({"login", "refresh", "auth"})


def denial_message(ip: str) -> str:
    return (
        f"Access denied from IP address: {ip}. "
        "Please contact administrator to whitelist this IP."
    )


class IpAllowlistGate:
    """Deny privileged requests from addresses the principal has not allowed.

    The gate runs after authentication. It reuses the identity resolved by
    the security gateway, so the forwarding header is only honoured when the
    request came through a trusted proxy.
    """

    def __init__(
        self,
        prefixes: Iterable[str],
        resolver: ClientIdentityResolver,
        audit: AuditLog | None = None,
        exempt_segments: Iterable[str] = EXEMPT_SEGMENTS,
    ) -> None:
        self._prefixes = tuple(prefix.rstrip("/") for prefix in prefixes if prefix.strip())
        self._resolver = resolver
        self._audit = audit or AuditLog()
        self._exempt = frozenset(exempt_segments)

    def applies(self, path: str) -> bool:
        """Return True if ``path`` is privileged and not an authentication route.

        Only the first segment below the prefix can exempt a path, so
        ``/admin/auth/login`` is exempt while ``/admin/users/auth`` is gated.
        """
        matched = next(
            (p for p in self._prefixes if path == p or path.startswith(p + "/")), None
        )
        if matched is None:
            return False
        remainder = [segment for segment in path[len(matched):].split("/") if segment]
        return not remainder or remainder[0].lower() not in self._exempt

    def client_identity(self, request: Request) -> ClientIdentity:
        identity = getattr(request.state, "client_identity", None)
        if isinstance(identity, ClientIdentity):
            return identity
        return self._resolver.resolve_request(request)

    def check(self, request: Request, db: Session) -> None:
        """Raise unless the request may proceed.

        Raises:
            PipelineConfigurationError: If no principal was attached to the
                request, i.e. the gate runs before authentication
            HTTPException: 403 when the client IP is not on the allow-list
        """
        path = request.url.path
        if not self.applies(path):
            return
        principal = getattr(request.state, "principal", None)
        if not isinstance(principal, Principal):
            raise PipelineConfigurationError(
                "Authentication required to access admin routes; "
                "the allow-list gate ran before a principal was attached"
            )

        identity = self.client_identity(request)
        if AllowedIpStore(db).is_allowed(principal.id, identity.ip):
            return

        logger.warning("Denied %s for principal %s from %s", path, principal.id, identity.ip)
        self._audit.record(
            AuditEventType.ACCESS_DENIED,
            {"reason": "ip_not_allowed", "principal_id": principal.id},
            RequestContext.from_request(request, identity.ip, principal_id=principal.id),
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=denial_message(identity.ip),
        )
