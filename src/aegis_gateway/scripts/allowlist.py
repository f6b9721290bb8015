# src/aegis_gateway/scripts/allowlist.py
"""Manage per-principal IP allow-list entries from the command line.

The first entry for a principal has to be created here: the admin API is
itself behind the allow-list.

Usage:
    python -m aegis_gateway.scripts.allowlist add alice 203.0.113.7 --description office
    python -m aegis_gateway.scripts.allowlist list alice
    python -m aegis_gateway.scripts.allowlist remove alice <entry-id>
    python -m aegis_gateway.scripts.allowlist stats alice
"""

from __future__ import annotations

import argparse
import sys
from collections.abc import Callable, Sequence

from sqlalchemy.orm import Session

from aegis_gateway.core.errors import AllowListError
from aegis_gateway.db.session import SessionLocal
from aegis_gateway.services.allowed_ip import AllowedIpStore


def _add(store: AllowedIpStore, args: argparse.Namespace) -> None:
    entry = store.add(args.principal, args.ip_address, args.description)
    print(f"Added {entry.ip_address} for {args.principal} (id={entry.id})")


def _list(store: AllowedIpStore, args: argparse.Namespace) -> None:
    entries = store.list(args.principal)
    if not entries:
        print(f"No active entries for {args.principal}")
        return
    for entry in entries:
        last_used = entry.last_used_at.isoformat() if entry.last_used_at else "never"
        description = entry.description or ""
        print(f"{entry.id}  {entry.ip_address:<39}  last used: {last_used}  {description}")


def _remove(store: AllowedIpStore, args: argparse.Namespace) -> None:
    entry = store.remove(args.entry_id, args.principal)
    print(f"Removed {entry.ip_address} for {args.principal}")


def _stats(store: AllowedIpStore, args: argparse.Namespace) -> None:
    stats = store.stats(args.principal)
    print(f"total={stats.total} active={stats.active} recently_used={stats.recently_used}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Manage IP allow-list entries")
    sub = parser.add_subparsers(dest="command", required=True)

    add = sub.add_parser("add", help="Allow an address for a principal")
    add.add_argument("principal")
    add.add_argument("ip_address")
    add.add_argument("--description", default=None)
    add.set_defaults(handler=_add)

    list_cmd = sub.add_parser("list", help="List a principal's active entries")
    list_cmd.add_argument("principal")
    list_cmd.set_defaults(handler=_list)

    remove = sub.add_parser("remove", help="Delete an entry")
    remove.add_argument("principal")
    remove.add_argument("entry_id")
    remove.set_defaults(handler=_remove)

    stats = sub.add_parser("stats", help="Show entry counts for a principal")
    stats.add_argument("principal")
    stats.set_defaults(handler=_stats)
    return parser


def main(
    argv: Sequence[str] | None = None,
    session_factory: Callable[[], Session] = SessionLocal,
) -> int:
    args = build_parser().parse_args(argv)
    db = session_factory()
    try:
        args.handler(AllowedIpStore(db), args)
    except AllowListError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    finally:
        db.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
