# src/aegis_gateway/api/v1/endpoints/audit.py
"""Read-only access to the security audit trail."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, HTTPException, Query, status

from aegis_gateway.models import AuditEvent
from aegis_gateway.schemas.audit import AuditEventResponse, AuditStatsResponse
from aegis_gateway.services.audit_log import AuditEventType, AuditLog, AuditSeverity

from ..dependencies import AdminPrincipalDep, SessionDep

router = APIRouter(prefix="/admin/audit-events", tags=["audit"])


@router.get("", response_model=list[AuditEventResponse])
async def list_audit_events(
    _principal: AdminPrincipalDep,
    db: SessionDep,
    event_type: AuditEventType | None = None,
    severity: AuditSeverity | None = None,
    actor_ip: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> list[AuditEvent]:
    """Return audit events matching the filters, newest first."""
    if since is not None and until is not None and since > until:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="'since' must not be later than 'until'",
        )
    return AuditLog.query(
        db,
        event_type=event_type,
        severity=severity,
        actor_ip=actor_ip,
        since=since,
        until=until,
        limit=limit,
        offset=offset,
    )


@router.get("/export", response_model=list[AuditEventResponse])
async def export_audit_events(
    _principal: AdminPrincipalDep,
    db: SessionDep,
    start: datetime,
    end: datetime,
    limit: Annotated[int, Query(ge=1, le=50_000)] = 10_000,
) -> list[AuditEvent]:
    """Return every event between ``start`` and ``end`` inclusive, oldest first."""
    try:
        return AuditLog.export(db, start, end, limit=limit)
    except ValueError as err:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(err)) from err


@router.get("/stats", response_model=AuditStatsResponse)
async def audit_stats(
    _principal: AdminPrincipalDep,
    db: SessionDep,
    days: Annotated[int, Query(ge=1, le=365)] = 7,
) -> AuditStatsResponse:
    """Count events per type and severity over the last ``days`` days."""
    stats = AuditLog.stats(db, days)
    return AuditStatsResponse(
        days=days,
        total=stats.total,
        by_type=stats.by_type,
        by_severity=stats.by_severity,
    )
