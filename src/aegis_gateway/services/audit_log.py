"""Structured security audit log.

``AuditLog.record`` is fire-and-forget: it never raises and never blocks the
request path. Inside an event loop the database write is handed to a worker
thread; pending writes can be awaited with :meth:`AuditLog.drain` on shutdown.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections import Counter
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Final

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session
from starlette.requests import Request

from aegis_gateway.db.time import ago
from aegis_gateway.models import AuditEvent

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("aegis_gateway.security")

REDACTED: Final[str] = "[REDACTED]"
MAX_LOGGED_STRING: Final[int] = 100
MAX_DEPTH: Final[int] = 6
SENSITIVE_KEYS: Final[frozenset[str]] = frozenset(
    {
        "password",
        "passwd",
        "token",
        "apikey",
        "api_key",
        "secret",
        "key",
        "auth",
        "authorization",
        "cookie",
        "session",
        "_csrf",
        "csrf",
    }
)


class AuditEventType(str, enum.Enum):
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    SQL_INJECTION_ATTEMPT = "sql_injection_attempt"
    XSS_ATTEMPT = "xss_attempt"
    CSRF_VIOLATION = "csrf_violation"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    ACCESS_DENIED = "access_denied"
    ALLOWLIST_CHANGED = "allowlist_changed"
    REQUEST_BLOCKED = "request_blocked"
    SYSTEM_ERROR = "system_error"
    RATE_LIMIT_RESET = "rate_limit_reset"


class AuditSeverity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


_SEVERITY: Final[dict[AuditEventType, AuditSeverity]] = {
    AuditEventType.SQL_INJECTION_ATTEMPT: AuditSeverity.CRITICAL,
    AuditEventType.XSS_ATTEMPT: AuditSeverity.CRITICAL,
    AuditEventType.RATE_LIMIT_EXCEEDED: AuditSeverity.HIGH,
    AuditEventType.CSRF_VIOLATION: AuditSeverity.HIGH,
    AuditEventType.SUSPICIOUS_ACTIVITY: AuditSeverity.HIGH,
    AuditEventType.ACCESS_DENIED: AuditSeverity.HIGH,
    AuditEventType.REQUEST_BLOCKED: AuditSeverity.MEDIUM,
    AuditEventType.SYSTEM_ERROR: AuditSeverity.MEDIUM,
    AuditEventType.ALLOWLIST_CHANGED: AuditSeverity.LOW,
    AuditEventType.RATE_LIMIT_RESET: AuditSeverity.LOW,
}


def severity_for(event_type: AuditEventType) -> AuditSeverity:
    """Return the severity recorded for ``event_type``."""
    return _SEVERITY.get(event_type, AuditSeverity.LOW)


def _is_sensitive(key: str) -> bool:
    lowered = key.lower().replace("-", "_")
    return lowered in SENSITIVE_KEYS or any(
        marker in lowered for marker in ("password", "token", "secret", "apikey", "api_key")
    )


def sanitize_for_logging(value: Any, _depth: int = 0) -> Any:
    """Return a copy of ``value`` safe to persist in the audit trail.

    Values under sensitive keys are replaced with ``[REDACTED]`` and strings
    longer than 100 characters are truncated.
    """
    if _depth > MAX_DEPTH:
        return "[TRUNCATED]"
    if isinstance(value, Mapping):
        return {
            str(key): REDACTED
            if _is_sensitive(str(key))
            else sanitize_for_logging(item, _depth + 1)
            for key, item in value.items()
        }
    if isinstance(value, list | tuple | set):
        return [sanitize_for_logging(item, _depth + 1) for item in value]
    if isinstance(value, str):
        if len(value) > MAX_LOGGED_STRING:
            return value[:MAX_LOGGED_STRING] + "...[truncated]"
        return value
    if value is None or isinstance(value, bool | int | float):
        return value
    if isinstance(value, enum.Enum):
        return value.value
    return sanitize_for_logging(str(value), _depth + 1)


@dataclass(frozen=True)
class RequestContext:
    """Who did what, where, for one audited event."""

    actor_ip: str
    path: str
    method: str
    user_agent: str | None = None
    principal_id: str | None = None

    @classmethod
    def from_request(
        cls, request: Request, actor_ip: str, principal_id: str | None = None
    ) -> RequestContext:
        return cls(
            actor_ip=actor_ip,
            path=request.url.path,
            method=request.method,
            user_agent=request.headers.get("user-agent"),
            principal_id=principal_id,
        )


@dataclass(frozen=True)
class AuditStats:
    total: int
    by_type: dict[str, int] = field(default_factory=dict)
    by_severity: dict[str, int] = field(default_factory=dict)


class AuditLog:
    """Record, query and prune security audit events.

    Args:
        session_factory: Callable returning a new SQLAlchemy session. When
            None, events are only written to the ``aegis_gateway.security``
            logger.
    """

    def __init__(self, session_factory: Callable[[], Session] | None = None) -> None:
        self._session_factory = session_factory
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def persistent(self) -> bool:
        return self._session_factory is not None

    def record(
        self,
        event_type: AuditEventType,
        metadata: Mapping[str, Any] | None,
        context: RequestContext,
    ) -> None:
        """Record an event without blocking or raising."""
        try:
            severity = severity_for(event_type)
            details = sanitize_for_logging(dict(metadata or {}))
            level = (
                logging.WARNING
                if severity in (AuditSeverity.HIGH, AuditSeverity.CRITICAL)
                else logging.INFO
            )
            security_logger.log(
                level,
                "%s [%s] %s %s from %s: %s",
                event_type.value,
                severity.value,
                context.method,
                context.path,
                context.actor_ip,
                details,
            )
            if self._session_factory is None:
                return
            row = {
                "event_type": event_type.value,
                "severity": severity.value,
                "actor_ip": context.actor_ip,
                "path": context.path,
                "method": context.method,
                "user_agent": context.user_agent,
                "principal_id": context.principal_id,
                "details": details,
            }
            self._schedule(row)
        except Exception:  # noqa: BLE001 - auditing must never fail a request
            logger.exception("Failed to record audit event %s", event_type)

    def _schedule(self, row: dict[str, Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._persist(row)
            return
        task = loop.create_task(asyncio.to_thread(self._persist, row))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _persist(self, row: dict[str, Any]) -> None:
        if self._session_factory is None:
            return
        try:
            with self._session_factory() as db:
                db.add(AuditEvent(**row))
                db.commit()
        except Exception:  # noqa: BLE001 - auditing must never fail a request
            logger.exception("Failed to persist audit event %s", row.get("event_type"))

    async def drain(self) -> None:
        """Wait for every scheduled write to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @staticmethod
    def query(
        db: Session,
        *,
        event_type: AuditEventType | str | None = None,
        severity: AuditSeverity | str | None = None,
        actor_ip: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[AuditEvent]:
        """Return events matching the filters, newest first."""
        stmt = select(AuditEvent)
        if event_type is not None:
            stmt = stmt.where(AuditEvent.event_type == AuditEventType(event_type).value)
        if severity is not None:
            stmt = stmt.where(AuditEvent.severity == AuditSeverity(severity).value)
        if actor_ip is not None:
            stmt = stmt.where(AuditEvent.actor_ip == actor_ip)
        if since is not None:
            stmt = stmt.where(AuditEvent.created_at >= since)
        if until is not None:
            stmt = stmt.where(AuditEvent.created_at <= until)
        stmt = stmt.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc())
        return list(db.execute(stmt.offset(offset).limit(limit)).scalars())

    @staticmethod
    def export(
        db: Session, start: datetime, end: datetime, limit: int = 10_000
    ) -> list[AuditEvent]:
        """Return events created in ``[start, end]``, oldest first, for archiving.

        Raises:
            ValueError: If ``start`` is later than ``end``
        """
        if start > end:
            raise ValueError("export start must not be later than its end")
        stmt = (
            select(AuditEvent)
            .where(AuditEvent.created_at >= start, AuditEvent.created_at <= end)
            .order_by(AuditEvent.created_at.asc(), AuditEvent.id.asc())
            .limit(limit)
        )
        events = list(db.execute(stmt).scalars())
        logger.info("Exported %d audit events from %s to %s", len(events), start, end)
        return events

    @staticmethod
    def stats(db: Session, days: int = 7) -> AuditStats:
        """Count events of the last ``days`` days per type and severity."""
        cutoff = ago(timedelta(days=days))
        rows = db.execute(
            select(AuditEvent.event_type, AuditEvent.severity, func.count())
            .where(AuditEvent.created_at >= cutoff)
            .group_by(AuditEvent.event_type, AuditEvent.severity)
        ).all()
        by_type: Counter[str] = Counter()
        by_severity: Counter[str] = Counter()
        for event_type, severity, count in rows:
            by_type[event_type] += count
            by_severity[severity] += count
        return AuditStats(
            total=sum(by_type.values()), by_type=dict(by_type), by_severity=dict(by_severity)
        )

    @staticmethod
    def cleanup(db: Session, days_to_keep: int = 90) -> int:
        """Delete events older than ``days_to_keep`` days and return the count."""
        cutoff = ago(timedelta(days=days_to_keep))
        result = db.execute(delete(AuditEvent).where(AuditEvent.created_at < cutoff))
        db.commit()
        deleted = int(result.rowcount or 0)
        logger.info("Removed %d audit events older than %d days", deleted, days_to_keep)
        return deleted
