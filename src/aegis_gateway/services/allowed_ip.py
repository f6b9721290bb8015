"""Persistent per-principal IP allow-list."""

from __future__ import annotations

import ipaddress
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Final

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from aegis_gateway.core.errors import DuplicateEntry, InvalidAddress, NotFound
from aegis_gateway.db.time import ago, utcnow
from aegis_gateway.models import AllowedIp

logger = logging.getLogger(__name__)

RECENT_USE_WINDOW: Final[timedelta] = timedelta(days=7)
UPDATABLE_FIELDS: Final[frozenset[str]] = frozenset({"ip_address", "description", "is_active"})

_IPV4_SHAPE = re.compile(r"^[0-9]{1,3}(\.[0-9]{1,3}){3}$")
_BROADCAST = ipaddress.IPv4Address("255.255.255.255")
_REJECTED_V4: Final = tuple(
    ipaddress.IPv4Network(net)
    for net in ("127.0.0.0/8", "0.0.0.0/8", "169.254.0.0/16", "224.0.0.0/4", "240.0.0.0/4")
)
_REJECTED_V6: Final = tuple(
    ipaddress.IPv6Network(net) for net in ("::1/128", "::/128", "fe80::/10", "ff00::/8")
)


def _validate_ipv4(value: str, original: str) -> str:
    if not _IPV4_SHAPE.match(value):
        raise InvalidAddress(f"Invalid IP address: {original!r}")
    for octet in value.split("."):
        if len(octet) > 1 and octet.startswith("0"):
            raise InvalidAddress(f"IPv4 octets must not have leading zeros: {original!r}")
    try:
        address = ipaddress.IPv4Address(value)
    except ValueError as err:
        raise InvalidAddress(f"Invalid IP address: {original!r}") from err
    if address != _BROADCAST and any(address in net for net in _REJECTED_V4):
        raise InvalidAddress(f"IP address is in a non-routable range: {original!r}")
    return str(address)


def validate_ip_address(value: object) -> str:
    """Validate an allow-list address and return its canonical form.

    Args:
        value: Candidate address; surrounding whitespace is ignored

    Returns:
        Compressed textual form. IPv4-mapped IPv6 is returned as plain IPv4.

    Raises:
        InvalidAddress: If the value is malformed or points at a loopback,
            unspecified, link-local, multicast or reserved range
    """
    if not isinstance(value, str):
        raise InvalidAddress("IP address must be a string")
    candidate = value.strip()
    if not candidate:
        raise InvalidAddress("IP address must not be empty")

    if ":" not in candidate:
        return _validate_ipv4(candidate, value)

    # Zone ids and prefixes are not addresses.
    if "%" in candidate or "/" in candidate:
        raise InvalidAddress(f"Invalid IP address: {value!r}")
    try:
        address = ipaddress.IPv6Address(candidate)
    except ValueError as err:
        raise InvalidAddress(f"Invalid IP address: {value!r}") from err
    if address.ipv4_mapped is not None:
        return _validate_ipv4(str(address.ipv4_mapped), value)
    if any(address in net for net in _REJECTED_V6):
        raise InvalidAddress(f"IP address is in a non-routable range: {value!r}")
    return address.compressed


@dataclass(frozen=True)
class AllowListStats:
    total: int
    active: int
    recently_used: int


class AllowedIpStore:
    """CRUD and membership checks over :class:`AllowedIp` rows.

    Every operation is scoped to the owning principal; an entry owned by
    someone else behaves exactly like a missing one.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def _owned(self, entry_id: str, principal_id: str) -> AllowedIp | None:
        stmt = select(AllowedIp).where(
            AllowedIp.id == entry_id, AllowedIp.principal_id == principal_id
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def _active_for(self, principal_id: str, ip_address: str) -> AllowedIp | None:
        stmt = select(AllowedIp).where(
            AllowedIp.principal_id == principal_id,
            AllowedIp.ip_address == ip_address,
            AllowedIp.is_active.is_(True),
        )
        return self.db.execute(stmt).scalars().first()

    def _commit(self, ip_address: str) -> None:
        try:
            self.db.commit()
        except IntegrityError as err:
            # A concurrent add won the race for the partial unique index.
            self.db.rollback()
            raise DuplicateEntry(f"IP address {ip_address} is already allowed") from err

    def add(
        self, principal_id: str, ip_address: object, description: str | None = None
    ) -> AllowedIp:
        """Allow ``ip_address`` for ``principal_id``.

        Raises:
            InvalidAddress: If the address fails validation
            DuplicateEntry: If an active entry for the address already exists
        """
        address = validate_ip_address(ip_address)
        if self._active_for(principal_id, address) is not None:
            raise DuplicateEntry(f"IP address {address} is already allowed")
        entry = AllowedIp(
            principal_id=principal_id,
            ip_address=address,
            description=description,
            is_active=True,
        )
        self.db.add(entry)
        self._commit(address)
        self.db.refresh(entry)
        logger.info("Allowed %s for principal %s", address, principal_id)
        return entry

    def list(self, principal_id: str) -> list[AllowedIp]:
        """Return the principal's active entries, newest first."""
        stmt = (
            select(AllowedIp)
            .where(AllowedIp.principal_id == principal_id, AllowedIp.is_active.is_(True))
            .order_by(AllowedIp.created_at.desc(), AllowedIp.id)
        )
        return list(self.db.execute(stmt).scalars())

    def update(self, entry_id: str, principal_id: str, patch: Mapping[str, Any]) -> AllowedIp:
        """Apply ``patch`` to an active entry owned by ``principal_id``.

        Only ``ip_address``, ``description`` and ``is_active`` may change.

        Raises:
            NotFound: If no active entry with ``entry_id`` belongs to the principal
            InvalidAddress: If a new address fails validation
            DuplicateEntry: If a new address is already allowed
        """
        unknown = set(patch) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        entry = self._owned(entry_id, principal_id)
        if entry is None or not entry.is_active:
            raise NotFound("IP address entry not found")

        if "ip_address" in patch:
            address = validate_ip_address(patch["ip_address"])
            if address != entry.ip_address:
                if self._active_for(principal_id, address) is not None:
                    raise DuplicateEntry(f"IP address {address} is already allowed")
                entry.ip_address = address
        if "description" in patch:
            entry.description = patch["description"]
        if "is_active" in patch and patch["is_active"] is not None:
            entry.is_active = bool(patch["is_active"])
        self._commit(entry.ip_address)
        self.db.refresh(entry)
        return entry

    def remove(self, entry_id: str, principal_id: str) -> AllowedIp:
        """Delete an entry owned by ``principal_id`` and return it.

        Raises:
            NotFound: If no entry with ``entry_id`` belongs to the principal
        """
        entry = self._owned(entry_id, principal_id)
        if entry is None:
            raise NotFound("IP address entry not found")
        self.db.delete(entry)
        self.db.commit()
        logger.info("Removed allow-list entry %s for principal %s", entry_id, principal_id)
        return entry

    def is_allowed(self, principal_id: str, ip_address: str) -> bool:
        """Return True if ``ip_address`` is actively allowed for the principal.

        The decision comes from a single read. Recording ``last_used_at`` is
        best-effort and a failure there never changes the answer.
        """
        try:
            address = validate_ip_address(ip_address)
        except InvalidAddress:
            return False
        entry = self._active_for(principal_id, address)
        if entry is None:
            return False
        entry_id = entry.id
        try:
            entry.last_used_at = utcnow()
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.warning(
                "Could not record last use of allow-list entry %s", entry_id, exc_info=True
            )
        return True

    def stats(self, principal_id: str) -> AllowListStats:
        """Count the principal's entries: all, active, and used in the last 7 days."""
        cutoff = ago(RECENT_USE_WINDOW)
        owned = AllowedIp.principal_id == principal_id
        total = self.db.scalar(select(func.count()).select_from(AllowedIp).where(owned)) or 0
        active = (
            self.db.scalar(
                select(func.count())
                .select_from(AllowedIp)
                .where(owned, AllowedIp.is_active.is_(True))
            )
            or 0
        )
        recently_used = (
            self.db.scalar(
                select(func.count())
                .select_from(AllowedIp)
                .where(owned, AllowedIp.last_used_at.is_not(None), AllowedIp.last_used_at >= cutoff)
            )
            or 0
        )
        return AllowListStats(
            total=int(total), active=int(active), recently_used=int(recently_used)
        )
