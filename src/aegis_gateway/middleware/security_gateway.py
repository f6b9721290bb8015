# src/aegis_gateway/middleware/security_gateway.py
"""Request-security gateway.

Every request that is not on an excluded path runs through an ordered list of
stages before it reaches the router:

1. rate limiting
2. hardening response headers
3. body and query threat scanning
4. header validation
5. CSRF issue-or-validate
6. suspicious request detection (audit only)

A stage rejects by raising :class:`SecurityRejection`; the gateway answers
with a uniform 403. Any other exception is treated as an internal fault and
also answered with a 403. Protection planes that were not provided are
skipped with a warning at construction time.
"""

from __future__ import annotations

import json
import logging
from functools import partial
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Final
from urllib.parse import parse_qs

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

from aegis_gateway.core.errors import (
    CSRFInvalid,
    RateLimited,
    RequestTooLarge,
    SecurityRejection,
    ThreatDetected,
)
from aegis_gateway.core.security import has_valid_bearer
from aegis_gateway.core.settings import Settings
from aegis_gateway.services.audit_log import AuditEventType, AuditLog, RequestContext
from aegis_gateway.services.client_identity import (
    ClientIdentity,
    ClientIdentityResolver,
    is_secure_request,
)
from aegis_gateway.services.csrf import CSRFToken, CSRFTokenService
from aegis_gateway.services.rate_limiter import RateLimiter
from aegis_gateway.services.threat_scanner import ThreatKind, ThreatScanner, ThreatSignal

logger = logging.getLogger(__name__)

BLOCKED_DETAIL: Final[str] = "Request blocked by security policy"
SAFE_METHODS: Final[frozenset[str]] = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})
HARDENING_HEADERS: Final[dict[str, str]] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": (
        "geolocation=(), microphone=(), camera=(), payment=(), usb=(), "
        "bluetooth=(), accelerometer=(), gyroscope=(), magnetometer=()"
    ),
}
SPOOFABLE_HEADERS: Final[tuple[str, ...]] = (
    "x-forwarded-host",
    "x-forwarded-proto",
    "x-forwarded-port",
)
_THREAT_EVENTS: Final[dict[ThreatKind, AuditEventType]] = {
    ThreatKind.SQLI: AuditEventType.SQL_INJECTION_ATTEMPT,
    ThreatKind.XSS: AuditEventType.XSS_ATTEMPT,
    ThreatKind.PATH_TRAVERSAL: AuditEventType.SUSPICIOUS_ACTIVITY,
}


@dataclass
class _RequestState:
    """Per-request scratch space shared by the stages."""

    identity: ClientIdentity
    context: RequestContext
    headers: dict[str, str] = field(default_factory=dict)
    secure: bool = False
    csrf_token: CSRFToken | None = None
    body_loaded: bool = False
    body_value: Any = None
    body_fields: Mapping[str, Any] | None = None


Stage = Callable[[Request, _RequestState], Awaitable[None]]


def _path_matches(path: str, prefix: str) -> bool:
    """Exact match or a match on a whole path segment boundary."""
    if prefix.endswith("/"):
        return path.startswith(prefix)
    return path == prefix or path.startswith(prefix + "/")


class SecurityGateway(BaseHTTPMiddleware):
    """Compose the protection planes into the per-request pipeline."""

    def __init__(
        self,
        app: ASGIApp,
        *,
        config: Settings,
        resolver: ClientIdentityResolver | None = None,
        rate_limiter: RateLimiter | None = None,
        scanner: ThreatScanner | None = None,
        csrf: CSRFTokenService | None = None,
        audit: AuditLog | None = None,
    ) -> None:
        super().__init__(app)
        self._config = config
        self._resolver = resolver or ClientIdentityResolver(config.trusted_proxy_list)
        self._rate_limiter = rate_limiter
        self._scanner = scanner
        self._csrf = csrf
        if audit is None:
            logger.warning("Audit log unavailable; security events go to the log only")
            audit = AuditLog()
        self._audit = audit
        self._missing: list[str] = []
        self._stages = self._register_stages()

    def _register_stages(self) -> list[tuple[str, Stage]]:
        stages: list[tuple[str, Stage]] = []
        if self._rate_limiter is not None:
            stages.append(("rate_limit", partial(self._check_rate_limit, self._rate_limiter)))
        else:
            self._missing.append("rate_limit")
            logger.warning("Rate limiter unavailable; rate limiting is disabled")
        stages.append(("hardening_headers", self._add_hardening_headers))
        if self._scanner is not None:
            stages.append(("threat_scan", partial(self._scan_payload, self._scanner)))
        else:
            self._missing.append("threat_scan")
            logger.warning("Threat scanner unavailable; payload scanning is disabled")
        stages.append(("header_validation", self._validate_headers))
        if self._csrf is not None:
            stages.append(("csrf", partial(self._check_csrf, self._csrf)))
        else:
            self._missing.append("csrf")
            logger.warning("CSRF service unavailable; CSRF protection is disabled")
        stages.append(("suspicious_request", self._flag_suspicious))
        return stages

    @property
    def stage_names(self) -> list[str]:
        return [name for name, _ in self._stages]

    def is_excluded(self, path: str) -> bool:
        return any(_path_matches(path, excluded) for excluded in self._config.excluded_path_list)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if self.is_excluded(request.url.path):
            return await call_next(request)

        state: _RequestState | None = None
        try:
            identity = self._resolver.resolve_request(request)
            request.state.client_identity = identity
            state = _RequestState(
                identity=identity,
                context=RequestContext.from_request(request, identity.ip),
                secure=is_secure_request(request, identity),
            )
            if self._missing:
                logger.debug("Skipping unavailable planes: %s", ", ".join(self._missing))
            for name, stage in self._stages:
                logger.debug("Running %s for %s %s", name, request.method, request.url.path)
                await stage(request, state)
        except SecurityRejection as exc:
            logger.info(
                "Blocked %s %s from %s: %s",
                request.method,
                request.url.path,
                state.identity.ip if state else "unknown",
                exc.reason,
            )
            return self._reject(state)
        except Exception as exc:
            logger.exception("Security gateway failed on %s %s", request.method, request.url.path)
            context = state.context if state else RequestContext(
                actor_ip="unknown", path=request.url.path, method=request.method
            )
            self._audit.record(
                AuditEventType.SYSTEM_ERROR,
                {"error": exc.__class__.__name__},
                context,
            )
            return self._reject(state)

        response = await call_next(request)
        for name, value in state.headers.items():
            response.headers[name] = value
        if state.csrf_token is not None and self._csrf is not None:
            self._csrf.set_token_cookie(response, state.csrf_token, secure=state.secure)
        return response

    def _reject(self, state: _RequestState | None) -> JSONResponse:
        headers = dict(HARDENING_HEADERS)
        if state is not None:
            headers.update(state.headers)
        response = JSONResponse(
            status_code=403,
            content={"detail": BLOCKED_DETAIL},
            headers=headers,
        )
        if state is not None and state.csrf_token is not None and self._csrf is not None:
            self._csrf.set_token_cookie(response, state.csrf_token, secure=state.secure)
        return response

    # --- stages -------------------------------------------------------------------

    async def _check_rate_limit(
        self, limiter: RateLimiter, request: Request, state: _RequestState
    ) -> None:
        category = limiter.category_for_path(request.url.path)
        decision = await limiter.check(state.identity.ip, category)
        state.headers.update(decision.headers())
        if decision.is_blocked:
            retry_after = decision.retry_after_ms or 0
            self._audit.record(
                AuditEventType.RATE_LIMIT_EXCEEDED,
                {"category": category, "limit": decision.limit, "retry_after_ms": retry_after},
                state.context,
            )
            raise RateLimited(retry_after)

    async def _add_hardening_headers(self, request: Request, state: _RequestState) -> None:
        state.headers.update(HARDENING_HEADERS)

    async def _scan_payload(
        self, scanner: ThreatScanner, request: Request, state: _RequestState
    ) -> None:
        signals: list[ThreatSignal] = []
        query = [(key, value) for key, value in request.query_params.multi_items()]
        for key, value in query:
            signals.extend(scanner.scan(key, f"query.{key}"))
            signals.extend(scanner.scan(value, f"query.{key}"))

        await self._load_body(request, state)
        if state.body_value is not None:
            signals.extend(scanner.scan_value(state.body_value, "body"))

        if not signals:
            return
        metadata = {
            "signals": [
                {
                    "kind": signal.kind.value,
                    "pattern": signal.matched_pattern,
                    "field": signal.field,
                }
                for signal in signals
            ],
            "query": dict(query),
            "body": state.body_value,
        }
        for kind in dict.fromkeys(signal.kind for signal in signals):
            self._audit.record(_THREAT_EVENTS[kind], metadata, state.context)
        raise ThreatDetected(signals)

    async def _validate_headers(self, request: Request, state: _RequestState) -> None:
        if not state.identity.via_trusted_proxy:
            for header in SPOOFABLE_HEADERS:
                if header in request.headers:
                    logger.warning(
                        "Ignoring %s from untrusted peer %s", header, state.identity.ip
                    )
        declared = _declared_length(request)
        if declared is not None and declared > self._config.max_body_bytes:
            raise RequestTooLarge(f"declared body of {declared} bytes")

    async def _check_csrf(
        self, csrf: CSRFTokenService, request: Request, state: _RequestState
    ) -> None:
        path = request.url.path
        if not self._csrf_applies(path):
            return
        session_id = csrf.get_session_id(request, state.identity.ip)
        cookie = csrf.cookie_token(request)

        if request.method in SAFE_METHODS:
            token = await csrf.get_or_create_token(session_id)
            if cookie != token.value:
                state.csrf_token = token
            return
        if has_valid_bearer(request.headers.get("authorization"), config=self._config):
            return

        submitted = csrf.extract_token_from_request(request)
        if submitted is None:
            await self._load_body(request, state)
            submitted = csrf.extract_token_from_request(request, state.body_fields)
        result = await csrf.validate_token(session_id, submitted, cookie or "")
        if result.is_valid:
            return

        state.csrf_token = await csrf.get_or_create_token(session_id)
        self._audit.record(
            AuditEventType.CSRF_VIOLATION,
            {"reason": result.error, "has_cookie": cookie is not None},
            state.context,
        )
        raise CSRFInvalid(result.error or "CSRF token invalid")

    async def _flag_suspicious(self, request: Request, state: _RequestState) -> None:
        user_agent = request.headers.get("user-agent", "").lower()
        path = request.url.path.lower()
        reasons: list[str] = []
        for fragment in self._config.suspicious_user_agent_list:
            if fragment in user_agent:
                reasons.append(f"user-agent:{fragment}")
                break
        for fragment in self._config.suspicious_path_list:
            if fragment in path:
                reasons.append(f"path:{fragment}")
                break
        if reasons:
            self._audit.record(
                AuditEventType.SUSPICIOUS_ACTIVITY,
                {"reasons": reasons, "user_agent": user_agent},
                state.context,
            )

    # --- helpers ------------------------------------------------------------------

    def _csrf_applies(self, path: str) -> bool:
        if any(path.startswith(prefix) for prefix in self._config.csrf_exempt_prefix_list):
            return False
        return any(
            _path_matches(path, prefix) for prefix in self._config.csrf_protected_prefix_list
        )

    async def _load_body(self, request: Request, state: _RequestState) -> None:
        """Read and decode the body once.

        The body is streamed and counted chunk by chunk, so a body without a
        Content-Length is rejected as soon as it crosses ``max_body_bytes``
        rather than after it has been buffered. Bodies whose declared length
        is already too large are left unread.
        """
        if state.body_loaded:
            return
        state.body_loaded = True
        limit = self._config.max_body_bytes
        declared = _declared_length(request)
        if declared is not None and declared > limit:
            return
        chunks: list[bytes] = []
        received = 0
        async for chunk in request.stream():
            received += len(chunk)
            if received > limit:
                raise RequestTooLarge(f"body exceeds {limit} bytes")
            chunks.append(chunk)
        raw = b"".join(chunks)
        # Request.body() and the downstream replay both read this cache.
        request._body = raw
        if not raw:
            return

        content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
        text = raw.decode("utf-8", errors="replace")
        if content_type == "application/json" or content_type.endswith("+json"):
            try:
                state.body_value = json.loads(text)
            except ValueError:
                state.body_value = text
            if isinstance(state.body_value, Mapping):
                state.body_fields = state.body_value
        elif content_type == "application/x-www-form-urlencoded":
            fields = parse_qs(text, keep_blank_values=True)
            state.body_value = fields
            state.body_fields = {key: values[0] for key, values in fields.items() if values}
        elif content_type.startswith("text/"):
            state.body_value = text


def _declared_length(request: Request) -> int | None:
    raw = request.headers.get("content-length")
    if raw is None:
        return None
    try:
        length = int(raw)
    except ValueError as err:
        raise SecurityRejection("malformed content-length") from err
    if length < 0:
        raise SecurityRejection("negative content-length")
    return length

