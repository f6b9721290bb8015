# tests/conftest.py
from __future__ import annotations

import os
from collections.abc import Generator, Iterator
from typing import Any

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from starlette.types import ASGIApp, Receive, Scope, Send

os.environ.setdefault("PYTEST_RUNNING", "true")
os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_ENABLED", "false")

from aegis_gateway.core.security import create_access_token
from aegis_gateway.core.settings import Settings
from aegis_gateway.db.session import Base, build_engine
from aegis_gateway.db.session import get_db as app_get_session
from aegis_gateway.main import create_app
from aegis_gateway.services.audit_log import AuditLog
from aegis_gateway.services.store import MemoryStore

TEST_DB_URL = "sqlite://"
PUBLIC_IP = "203.0.113.10"
PRINCIPAL_ID = "alice"


class FakeClock:
    """Manually advanced clock returning epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class PeerOverride:
    """ASGI wrapper that makes requests appear to come from ``peer``."""

    def __init__(self, app: ASGIApp, peer: str) -> None:
        self.app = app
        self.peer = peer

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] in ("http", "websocket"):
            scope = dict(scope)
            scope["client"] = (self.peer, 50000)
        await self.app(scope, receive, send)


@pytest.fixture(scope="session")
def engine() -> Generator[Engine, None, None]:
    engine = build_engine(TEST_DB_URL)
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def db_session(engine: Engine, session_factory: sessionmaker[Session]) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        # Ensure each test sees a clean database even if commits occurred.
        with engine.begin() as cleanup_conn:
            for table in reversed(Base.metadata.sorted_tables):
                cleanup_conn.execute(table.delete())


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def test_settings() -> Settings:
    """Settings for an isolated app: no Redis, no audit persistence."""
    return Settings(
        secret_key=os.environ["SECRET_KEY"],
        redis_enabled=False,
        audit_persist=False,
        trusted_proxies="10.0.0.5",
    )


@pytest.fixture()
def memory_store(clock: FakeClock) -> MemoryStore:
    return MemoryStore(clock=clock)


@pytest.fixture()
def audit_log() -> AuditLog:
    """Log-only audit log shared by the app under test."""
    return AuditLog()


def add_stub_routes(app: FastAPI) -> None:
    """Mount stand-in business routes behind the gateway."""

    @app.get("/api/items")
    async def list_items() -> dict[str, Any]:
        return {"items": []}

    @app.post("/api/items")
    async def create_item(request: Request) -> dict[str, Any]:
        identity = getattr(request.state, "client_identity", None)
        return {"ok": True, "client_ip": identity.ip if identity else None}

    @app.post("/public/echo")
    async def echo() -> dict[str, bool]:
        return {"ok": True}


@pytest.fixture()
def app(
    test_settings: Settings,
    memory_store: MemoryStore,
    audit_log: AuditLog,
    db_session: Session,
) -> Iterator[FastAPI]:
    application = create_app(test_settings, store=memory_store, audit=audit_log)
    add_stub_routes(application)

    def _get_session_override() -> Generator[Session, None, None]:
        yield db_session

    application.dependency_overrides[app_get_session] = _get_session_override
    try:
        yield application
    finally:
        application.dependency_overrides.pop(app_get_session, None)


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app, base_url="http://test") as test_client:
        yield test_client


@pytest.fixture()
def public_client(app: FastAPI) -> Iterator[TestClient]:
    """Client whose requests arrive from a routable address."""
    with TestClient(PeerOverride(app, PUBLIC_IP), base_url="http://test") as test_client:
        yield test_client


@pytest.fixture()
def auth_headers(test_settings: Settings) -> dict[str, str]:
    """Return authorization headers for the primary test principal."""
    token = create_access_token(PRINCIPAL_ID, config=test_settings)
    return {"Authorization": f"Bearer {token}"}
