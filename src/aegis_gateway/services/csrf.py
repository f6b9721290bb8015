"""Anti-forgery tokens using the double-submit cookie pattern.

A token is bound to a session id and stored under ``csrf:<session id>``. The
client receives it in a readable cookie and must echo it in a header (or the
``_csrf`` form/JSON field). Tokens are reusable until they expire; rotating a
token keeps the previous value valid for a short grace period so that
requests already in flight from another tab are not rejected.
"""

from __future__ import annotations

import hmac
import json
import logging
import re
import secrets
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from blake3 import blake3
from starlette.requests import Request
from starlette.responses import Response

from aegis_gateway.core.settings import Settings
from aegis_gateway.services.store import Clock, CounterStore

logger = logging.getLogger(__name__)

KEY_PREFIX = "csrf"
BODY_FIELD = "_csrf"
TOKEN_BYTES = 32
_TOKEN_RE = re.compile(r"^[0-9a-f]{64}$")


@dataclass(frozen=True)
class CSRFToken:
    """Issued token; timestamps are epoch seconds."""

    value: str
    session_id: str
    issued_at: float
    expires_at: float


@dataclass(frozen=True)
class CSRFValidation:
    is_valid: bool
    error: str | None = None


@dataclass(frozen=True)
class _Record:
    value: str
    issued_at: float
    expires_at: float
    previous: str | None = None
    previous_expires_at: float | None = None

    def dumps(self) -> str:
        return json.dumps(
            {
                "value": self.value,
                "issued_at": self.issued_at,
                "expires_at": self.expires_at,
                "previous": self.previous,
                "previous_expires_at": self.previous_expires_at,
            }
        )

    @classmethod
    def loads(cls, raw: str) -> _Record | None:
        try:
            data = json.loads(raw)
            return cls(
                value=str(data["value"]),
                issued_at=float(data["issued_at"]),
                expires_at=float(data["expires_at"]),
                previous=data.get("previous"),
                previous_expires_at=data.get("previous_expires_at"),
            )
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding malformed CSRF token record")
            return None


class CSRFTokenService:
    """Issue, bind and validate CSRF tokens for sessions."""

    def __init__(
        self,
        store: CounterStore,
        *,
        ttl_seconds: int = 86_400,
        grace_seconds: int = 30,
        cookie_name: str = "csrf-token",
        header_name: str = "x-csrf-token",
        session_cookie_name: str = "session_id",
        clock: Clock = time.time,
    ) -> None:
        self._store = store
        self.ttl_seconds = ttl_seconds
        self.grace_seconds = grace_seconds
        self.cookie_name = cookie_name
        self.header_name = header_name
        self.session_cookie_name = session_cookie_name
        self._clock = clock

    @classmethod
    def from_settings(cls, config: Settings, store: CounterStore) -> CSRFTokenService:
        return cls(
            store,
            ttl_seconds=config.csrf_token_ttl_seconds,
            grace_seconds=config.csrf_rotation_grace_seconds,
            cookie_name=config.csrf_cookie_name,
            header_name=config.csrf_header_name,
            session_cookie_name=config.session_cookie_name,
        )

    @staticmethod
    def _key(session_id: str) -> str:
        return f"{KEY_PREFIX}:{session_id}"

    async def _load(self, session_id: str) -> _Record | None:
        raw = await self._store.get(self._key(session_id))
        return _Record.loads(raw) if raw is not None else None

    @staticmethod
    def _ttl_ms(record: _Record, now: float) -> int:
        return max(1, int((record.expires_at - now) * 1000))

    async def _save(self, session_id: str, record: _Record, now: float) -> None:
        await self._store.set_with_expiry(
            self._key(session_id), record.dumps(), self._ttl_ms(record, now)
        )

    async def generate_token(self, session_id: str) -> CSRFToken:
        """Issue a fresh token for ``session_id``, rotating any current one.

        The replaced value stays valid for ``grace_seconds``.
        """
        now = self._clock()
        current = await self._load(session_id)
        previous = previous_expires = None
        if current is not None and current.expires_at > now:
            previous = current.value
            previous_expires = min(current.expires_at, now + self.grace_seconds)
        record = _Record(
            value=secrets.token_hex(TOKEN_BYTES),
            issued_at=now,
            expires_at=now + self.ttl_seconds,
            previous=previous,
            previous_expires_at=previous_expires,
        )
        await self._save(session_id, record, now)
        logger.debug("Issued CSRF token for session %s", session_id[:12])
        return CSRFToken(record.value, session_id, record.issued_at, record.expires_at)

    async def get_or_create_token(self, session_id: str) -> CSRFToken:
        """Return the session's live token, issuing one only if none exists.

        Issuing is a set-if-absent on the store. When two requests for a new
        session race, the loser re-reads and returns the winner's token, so
        both responses carry the same value.
        """
        now = self._clock()
        current = await self._load(session_id)
        if current is not None and current.expires_at > now:
            return CSRFToken(current.value, session_id, current.issued_at, current.expires_at)

        record = _Record(
            value=secrets.token_hex(TOKEN_BYTES),
            issued_at=now,
            expires_at=now + self.ttl_seconds,
        )
        key = self._key(session_id)
        if await self._store.set_if_absent(key, record.dumps(), self._ttl_ms(record, now)):
            logger.debug("Issued CSRF token for session %s", session_id[:12])
            return CSRFToken(record.value, session_id, record.issued_at, record.expires_at)

        winner = await self._load(session_id)
        if winner is not None and winner.expires_at > now:
            return CSRFToken(winner.value, session_id, winner.issued_at, winner.expires_at)
        # The key still holds an expired or unreadable record.
        return await self.generate_token(session_id)

    async def validate_token(
        self,
        session_id: str,
        submitted: str | None,
        cookie_token: str | None = None,
    ) -> CSRFValidation:
        """Check a submitted token against the session's stored token.

        Args:
            session_id: Session the request belongs to
            submitted: Token echoed by the client in a header or body field
            cookie_token: Token read from the CSRF cookie; when given it must
                equal ``submitted``

        Returns:
            CSRFValidation with a short error description when invalid
        """
        if not submitted:
            return CSRFValidation(False, "CSRF token missing")
        if not _TOKEN_RE.match(submitted):
            return CSRFValidation(False, "CSRF token malformed")
        if cookie_token is not None and not hmac.compare_digest(
            submitted.encode(), cookie_token.encode()
        ):
            return CSRFValidation(False, "CSRF token does not match cookie")

        record = await self._load(session_id)
        if record is None:
            return CSRFValidation(False, "No CSRF token issued for session")
        now = self._clock()
        if record.expires_at <= now:
            return CSRFValidation(False, "CSRF token expired")

        if hmac.compare_digest(submitted.encode(), record.value.encode()):
            return CSRFValidation(True)
        if (
            record.previous is not None
            and record.previous_expires_at is not None
            and record.previous_expires_at > now
            and hmac.compare_digest(submitted.encode(), record.previous.encode())
        ):
            return CSRFValidation(True)
        return CSRFValidation(False, "CSRF token invalid")

    async def invalidate_token(self, session_id: str) -> None:
        """Drop the session's token, e.g. on logout."""
        await self._store.delete(self._key(session_id))

    def extract_token_from_request(
        self, request: Request, body: Mapping[str, Any] | None = None
    ) -> str | None:
        """Return the echoed token: header first, then the ``_csrf`` body field."""
        header = request.headers.get(self.header_name)
        if header:
            return header.strip()
        if body is not None:
            value = body.get(BODY_FIELD)
            if isinstance(value, str) and value:
                return value.strip()
        return None

    def cookie_token(self, request: Request) -> str | None:
        return request.cookies.get(self.cookie_name)

    def get_session_id(self, request: Request, client_ip: str | None = None) -> str:
        """Derive the session id the token is bound to.

        The session cookie is used when present; otherwise the client IP and
        user agent are fingerprinted. Both are hashed so raw session cookies
        never end up in store keys.
        """
        session = request.cookies.get(self.session_cookie_name)
        if session:
            material = f"session:{session}"
        else:
            ip = client_ip or (request.client.host if request.client else "unknown")
            user_agent = request.headers.get("user-agent", "")
            material = f"fingerprint:{ip}:{user_agent}"
        return blake3(material.encode()).hexdigest()

    def set_token_cookie(self, response: Response, token: CSRFToken, *, secure: bool) -> None:
        """Attach ``token`` as a script-readable cookie on ``response``."""
        max_age = max(0, int(token.expires_at - self._clock()))
        response.set_cookie(
            key=self.cookie_name,
            value=token.value,
            max_age=max_age,
            path="/",
            secure=secure,
            httponly=False,
            samesite="strict",
        )
