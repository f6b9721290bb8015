# tests/scripts/test_allowlist_cli.py
from __future__ import annotations

import pytest
from sqlalchemy.orm import Session, sessionmaker

from aegis_gateway.scripts.allowlist import main
from aegis_gateway.services.allowed_ip import AllowedIpStore


def test_add_and_list(
    session_factory: sessionmaker[Session], db_session: Session, capsys: pytest.CaptureFixture[str]
) -> None:
    code = main(["add", "alice", "203.0.113.7", "--description", "office"], session_factory)
    assert code == 0
    assert "Added 203.0.113.7 for alice" in capsys.readouterr().out

    assert main(["list", "alice"], session_factory) == 0
    out = capsys.readouterr().out
    assert "203.0.113.7" in out
    assert "office" in out
    assert "never" in out


def test_list_empty(
    session_factory: sessionmaker[Session], db_session: Session, capsys: pytest.CaptureFixture[str]
) -> None:
    assert main(["list", "nobody"], session_factory) == 0
    assert "No active entries for nobody" in capsys.readouterr().out


def test_invalid_address_reports_error(
    session_factory: sessionmaker[Session], db_session: Session, capsys: pytest.CaptureFixture[str]
) -> None:
    assert main(["add", "alice", "127.0.0.1"], session_factory) == 1
    assert capsys.readouterr().err.startswith("error:")


def test_duplicate_reports_error(
    session_factory: sessionmaker[Session], db_session: Session, capsys: pytest.CaptureFixture[str]
) -> None:
    AllowedIpStore(db_session).add("alice", "203.0.113.7")
    assert main(["add", "alice", "203.0.113.7"], session_factory) == 1
    assert "already allowed" in capsys.readouterr().err


def test_remove_and_stats(
    session_factory: sessionmaker[Session], db_session: Session, capsys: pytest.CaptureFixture[str]
) -> None:
    store = AllowedIpStore(db_session)
    entry = store.add("alice", "203.0.113.7")
    store.add("alice", "198.51.100.4")

    assert main(["remove", "alice", entry.id], session_factory) == 0
    assert "Removed 203.0.113.7 for alice" in capsys.readouterr().out
    assert main(["remove", "alice", entry.id], session_factory) == 1
    capsys.readouterr()

    assert main(["stats", "alice"], session_factory) == 0
    assert "total=1 active=1 recently_used=0" in capsys.readouterr().out
