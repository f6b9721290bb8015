# src/aegis_gateway/api/v1/endpoints/rate_limits.py
"""Operator access to live rate-limit counters."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request, Response, status

from aegis_gateway.db.time import from_epoch
from aegis_gateway.schemas.rate_limit import (
    RateLimitEntryResponse,
    RateLimitInfoResponse,
    RateLimitStatsResponse,
)
from aegis_gateway.services.audit_log import AuditEventType
from aegis_gateway.services.rate_limiter import RateLimiter, RateLimitEntry

from ..dependencies import AdminPrincipalDep, AuditDep, RateLimiterDep, request_context

router = APIRouter(prefix="/admin/rate-limits", tags=["rate-limits"])


def _known_category(limiter: RateLimiter, category: str) -> str:
    if category not in limiter.categories:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown rate-limit category: {category}",
        )
    return category


def _entry_response(entry: RateLimitEntry) -> RateLimitEntryResponse:
    return RateLimitEntryResponse(
        identity=entry.identity,
        category=entry.category,
        count=entry.count,
        limit=entry.limit,
        is_blocked=entry.is_blocked,
        reset_at=from_epoch(entry.reset_time / 1000),
    )


@router.get("/stats", response_model=RateLimitStatsResponse)
async def rate_limit_stats(
    _principal: AdminPrincipalDep, limiter: RateLimiterDep
) -> RateLimitStatsResponse:
    """Count live counters per category and those at their limit."""
    stats = await limiter.stats()
    return RateLimitStatsResponse(
        total=stats.total, blocked=stats.blocked, by_category=stats.by_category
    )


@router.get("/blocked", response_model=list[RateLimitEntryResponse])
async def list_blocked(
    _principal: AdminPrincipalDep, limiter: RateLimiterDep
) -> list[RateLimitEntryResponse]:
    """List identities that are locked out until their window resets."""
    return [_entry_response(entry) for entry in await limiter.blocked()]


@router.get("/{identity}/{category}", response_model=RateLimitInfoResponse)
async def rate_limit_info(
    identity: str,
    category: str,
    _principal: AdminPrincipalDep,
    limiter: RateLimiterDep,
) -> RateLimitInfoResponse:
    """Return the current window for ``identity`` without counting a request."""
    decision = await limiter.info(identity, _known_category(limiter, category))
    return RateLimitInfoResponse(
        identity=identity,
        category=category,
        is_blocked=decision.is_blocked,
        remaining=decision.remaining,
        limit=decision.limit,
        reset_at=from_epoch(decision.reset_time / 1000),
        retry_after_ms=decision.retry_after_ms,
    )


@router.delete("/{identity}/{category}", status_code=status.HTTP_204_NO_CONTENT)
async def reset_rate_limit(
    identity: str,
    category: str,
    request: Request,
    principal: AdminPrincipalDep,
    limiter: RateLimiterDep,
    audit: AuditDep,
) -> Response:
    """Clear the counter so ``identity`` starts a fresh window."""
    await limiter.reset(identity, _known_category(limiter, category))
    audit.record(
        AuditEventType.RATE_LIMIT_RESET,
        {"identity": identity, "category": category},
        request_context(request, principal),
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
