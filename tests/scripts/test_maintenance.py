# tests/scripts/test_maintenance.py
from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from aegis_gateway.db.time import utcnow
from aegis_gateway.models import AuditEvent
from aegis_gateway.scripts.maintenance import main


def _event(age_days: int) -> AuditEvent:
    return AuditEvent(
        event_type="xss_attempt",
        severity="critical",
        actor_ip="198.51.100.1",
        path="/api/items",
        method="POST",
        details={},
        created_at=utcnow() - timedelta(days=age_days),
    )


def test_cleanup_respects_retention(
    session_factory: sessionmaker[Session], db_session: Session, capsys: pytest.CaptureFixture[str]
) -> None:
    db_session.add_all([_event(200), _event(45), _event(1)])
    db_session.commit()

    assert main(["--retention-days", "30"], session_factory) == 0
    assert "Removed 2 audit events older than 30 days" in capsys.readouterr().out
    assert db_session.scalar(select(func.count()).select_from(AuditEvent)) == 1


def test_rejects_non_positive_retention(
    session_factory: sessionmaker[Session], capsys: pytest.CaptureFixture[str]
) -> None:
    assert main(["--retention-days", "0"], session_factory) == 2
    assert "at least 1" in capsys.readouterr().err


def test_create_tables_flag(
    session_factory: sessionmaker[Session], db_session: Session, capsys: pytest.CaptureFixture[str]
) -> None:
    assert main(["--create-tables", "--retention-days", "30"], session_factory) == 0
    out = capsys.readouterr().out
    assert "Ensured database tables exist" in out
    assert "Removed 0 audit events" in out
