# src/aegis_gateway/api/v1/endpoints/allowed_ips.py
"""Allow-list management endpoints for the calling principal."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request, Response, status

from aegis_gateway.core.errors import DuplicateEntry, InvalidAddress, NotFound
from aegis_gateway.models import AllowedIp
from aegis_gateway.schemas.allowed_ip import (
    AllowedIpCreate,
    AllowedIpResponse,
    AllowedIpUpdate,
    AllowListStatsResponse,
)
from aegis_gateway.services.allowed_ip import AllowedIpStore, AllowListStats
from aegis_gateway.services.audit_log import AuditEventType

from ..dependencies import AdminPrincipalDep, AuditDep, SessionDep, request_context

router = APIRouter(prefix="/admin/allowed-ips", tags=["allow-list"])


@router.get("", response_model=list[AllowedIpResponse])
async def list_allowed_ips(principal: AdminPrincipalDep, db: SessionDep) -> list[AllowedIp]:
    """List the caller's active entries, newest first."""
    return AllowedIpStore(db).list(principal.id)


@router.get("/stats", response_model=AllowListStatsResponse)
async def allowed_ip_stats(principal: AdminPrincipalDep, db: SessionDep) -> AllowListStats:
    """Return entry counts for the caller."""
    return AllowedIpStore(db).stats(principal.id)


@router.post("", response_model=AllowedIpResponse, status_code=status.HTTP_201_CREATED)
async def add_allowed_ip(
    payload: AllowedIpCreate,
    request: Request,
    principal: AdminPrincipalDep,
    db: SessionDep,
    audit: AuditDep,
) -> AllowedIp:
    """Allow a new address for the caller."""
    try:
        entry = AllowedIpStore(db).add(principal.id, payload.ip_address, payload.description)
    except InvalidAddress as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except DuplicateEntry as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    audit.record(
        AuditEventType.ALLOWLIST_CHANGED,
        {"action": "add", "entry_id": entry.id, "ip_address": entry.ip_address},
        request_context(request, principal),
    )
    return entry


@router.patch("/{entry_id}", response_model=AllowedIpResponse)
async def update_allowed_ip(
    entry_id: str,
    payload: AllowedIpUpdate,
    request: Request,
    principal: AdminPrincipalDep,
    db: SessionDep,
    audit: AuditDep,
) -> AllowedIp:
    """Update an active entry owned by the caller."""
    patch = payload.model_dump(exclude_unset=True)
    try:
        entry = AllowedIpStore(db).update(entry_id, principal.id, patch)
    except NotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InvalidAddress as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except DuplicateEntry as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    audit.record(
        AuditEventType.ALLOWLIST_CHANGED,
        {"action": "update", "entry_id": entry.id, "fields": sorted(patch)},
        request_context(request, principal),
    )
    return entry


@router.delete("/{entry_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_allowed_ip(
    entry_id: str,
    request: Request,
    principal: AdminPrincipalDep,
    db: SessionDep,
    audit: AuditDep,
) -> Response:
    """Delete an entry owned by the caller."""
    try:
        entry = AllowedIpStore(db).remove(entry_id, principal.id)
    except NotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    audit.record(
        AuditEventType.ALLOWLIST_CHANGED,
        {"action": "remove", "entry_id": entry_id, "ip_address": entry.ip_address},
        request_context(request, principal),
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
