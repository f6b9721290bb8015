# src/aegis_gateway/main.py
"""Main entry point for the Aegis gateway application."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy.orm import Session

from aegis_gateway.api.v1 import (
    allowed_ips_router,
    audit_router,
    rate_limits_router,
    security_router,
)
from aegis_gateway.core.settings import Settings, settings
from aegis_gateway.db.session import SessionLocal
from aegis_gateway.middleware.ip_allowlist import IpAllowlistGate
from aegis_gateway.middleware.security_gateway import SecurityGateway
from aegis_gateway.services.audit_log import AuditLog
from aegis_gateway.services.client_identity import ClientIdentityResolver
from aegis_gateway.services.csrf import CSRFTokenService
from aegis_gateway.services.rate_limiter import RateLimiter, rules_from_settings
from aegis_gateway.services.store import CounterStore, FailoverStore, RedisStore, build_store
from aegis_gateway.services.threat_scanner import ThreatScanner

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(config: Settings | None = None) -> None:
    """Apply ``LOG_LEVEL`` to the root logger."""
    cfg = config or settings
    level = logging.getLevelName(cfg.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger("aegis_gateway").setLevel(level)


def create_app(
    config: Settings | None = None,
    *,
    store: CounterStore | None = None,
    session_factory: Callable[[], Session] | None = None,
    audit: AuditLog | None = None,
    enable_csrf: bool = True,
    enable_rate_limit: bool = True,
    enable_scanner: bool = True,
) -> FastAPI:
    """Build the application with the security gateway in front of the router.

    Args:
        config: Settings to use; defaults to the module-level settings
        store: Counter store for rate limits and CSRF tokens; built from
            ``config`` when omitted
        session_factory: Session factory for persisted audit events; defaults
            to the application database when ``AUDIT_PERSIST`` is on
        audit: Audit log to use instead of building one from the above
        enable_csrf: Register the CSRF plane
        enable_rate_limit: Register the rate-limit plane
        enable_scanner: Register the threat-scanning plane

    Returns:
        Configured FastAPI application
    """
    cfg = config or settings
    counter_store = store if store is not None else build_store(cfg)

    if audit is None:
        if session_factory is None and cfg.audit_persist:
            session_factory = SessionLocal
        audit = AuditLog(session_factory if cfg.audit_persist else None)
    resolver = ClientIdentityResolver(cfg.trusted_proxy_list)
    rate_limiter = (
        RateLimiter(
            counter_store,
            rules_from_settings(cfg),
            privileged_prefixes=cfg.privileged_prefix_list,
        )
        if enable_rate_limit
        else None
    )
    csrf = CSRFTokenService.from_settings(cfg, counter_store) if enable_csrf else None
    scanner = ThreatScanner() if enable_scanner else None

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await audit.drain()
        if isinstance(counter_store, RedisStore | FailoverStore):
            await counter_store.close()

    app = FastAPI(
        title=cfg.app_name,
        description="Request-security gateway with per-principal IP allow-lists",
        version=cfg.app_version,
        lifespan=lifespan,
    )
    app.state.settings = cfg
    app.state.audit_log = audit
    app.state.csrf_service = csrf
    app.state.rate_limiter = rate_limiter
    app.state.ip_allowlist_gate = IpAllowlistGate(cfg.privileged_prefix_list, resolver, audit)

    app.add_middleware(
        SecurityGateway,
        config=cfg,
        resolver=resolver,
        rate_limiter=rate_limiter,
        scanner=scanner,
        csrf=csrf,
        audit=audit,
    )

    app.include_router(allowed_ips_router, prefix="/api/v1")
    app.include_router(audit_router, prefix="/api/v1")
    app.include_router(rate_limits_router, prefix="/api/v1")
    app.include_router(security_router, prefix="/api/v1")

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Health check endpoint to verify the service is running."""
        return {"status": "ok"}

    return app


configure_logging()
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("aegis_gateway.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
