# src/aegis_gateway/models/allowed_ip.py
"""Per-principal IP allow-list entries."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from aegis_gateway.db.session import Base
from aegis_gateway.db.time import utcnow


def _new_id() -> str:
    return uuid.uuid4().hex


class AllowedIp(Base):
    """An address a principal may reach privileged routes from."""

    __tablename__ = "allowed_ip"
    __table_args__ = (
        # Uniqueness only binds active entries; soft-disabled rows may repeat.
        Index(
            "uq_allowed_ip_active_principal_address",
            "principal_id",
            "ip_address",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        Index("ix_allowed_ip_ip_address", "ip_address"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    principal_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    # Canonical textual form; IPv4-mapped IPv6 is stored as plain IPv4.
    ip_address: Mapped[str] = mapped_column(String(45), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
