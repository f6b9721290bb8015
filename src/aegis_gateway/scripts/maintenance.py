# src/aegis_gateway/scripts/maintenance.py
"""Database maintenance tasks.

This script should be run daily to prune audit events past the retention
window. ``--create-tables`` bootstraps a database without Alembic, which is
convenient for local SQLite setups.
"""

from __future__ import annotations

import argparse
import sys
from collections.abc import Callable, Sequence

from sqlalchemy.orm import Session

from aegis_gateway.core.settings import settings
from aegis_gateway.db.session import SessionLocal, create_tables
from aegis_gateway.services.audit_log import AuditLog


def cleanup_audit_events(db: Session, days_to_keep: int) -> int:
    """Delete audit events older than the retention window.

    Args:
        db: Database session
        days_to_keep: Retention window in days

    Returns:
        Number of deleted events
    """
    deleted = AuditLog.cleanup(db, days_to_keep)
    print(f"Removed {deleted} audit events older than {days_to_keep} days")
    return deleted


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Aegis gateway maintenance")
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create missing tables before running maintenance",
    )
    parser.add_argument(
        "--retention-days",
        type=int,
        default=settings.audit_retention_days,
        help="Keep audit events for this many days (default: AUDIT_RETENTION_DAYS)",
    )
    return parser


def main(
    argv: Sequence[str] | None = None,
    session_factory: Callable[[], Session] = SessionLocal,
) -> int:
    args = build_parser().parse_args(argv)
    if args.retention_days < 1:
        print("error: --retention-days must be at least 1", file=sys.stderr)
        return 2
    if args.create_tables:
        create_tables()
        print("Ensured database tables exist")
    db = session_factory()
    try:
        cleanup_audit_events(db, args.retention_days)
    finally:
        db.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
