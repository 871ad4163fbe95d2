"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import os

# ---------------------------------------------------------------------------
# A valid JWT_SECRET must exist before startorigin.api.deps is imported; the
# module validates it at load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine  # noqa: E402

# ---------------------------------------------------------------------------
# SQLite renders PG JSONB as TEXT; SQLAlchemy's JSON serialization still
# applies, so list/dict columns round-trip.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from startorigin.config import StartOriginConfig  # noqa: E402
from startorigin.database.models import Base, Profile  # noqa: E402
from startorigin.engine.live import LiveChannel  # noqa: E402

_jsonb_sqlite_registered = False


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent)."""
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


@pytest.fixture
def db_engine() -> Engine:
    """In-memory SQLite engine with all StartOrigin tables.

    StaticPool keeps one shared in-memory database across threads
    (``asyncio.to_thread`` in the WebSocket route, TestClient's worker).
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


@pytest.fixture
def live() -> LiveChannel:
    return LiveChannel()


@pytest.fixture
def make_profile(db_engine: Engine):
    """Factory: ``make_profile("alice", points=25)`` inserts and returns the id."""

    def _make(
        username: str | None,
        *,
        user_id: str | None = None,
        display_name: str | None = None,
        points: int = 0,
        disable_chat: bool = False,
    ) -> str:
        user_id = user_id or f"user-{username}"
        with Session(db_engine) as session:
            session.add(Profile(
                id=user_id,
                username=username,
                display_name=display_name,
                points=points,
                disable_chat=disable_chat,
            ))
            session.commit()
        return user_id

    return _make


@pytest.fixture
def alice(make_profile) -> str:
    return make_profile("alice", display_name="Alice")


@pytest.fixture
def bob(make_profile) -> str:
    return make_profile("bob", display_name="Bob")


@pytest.fixture
def carol(make_profile) -> str:
    return make_profile("carol", display_name="Carol")


@pytest.fixture
def test_config() -> StartOriginConfig:
    return StartOriginConfig(
        site_name="StartOrigin",
        frontend_url="http://localhost:3000",
        api_port=8000,
        auth_provider_url="http://auth.test",
        chat_refresh_delay_seconds=0,
        search_debounce_ms=10,
        static_aliases={"founder": ["boss", "chief"]},
    )


def make_token(sub: str, *, admin: bool = False) -> str:
    """Create a session-provider style JWT.  Fixture-free so tests can mint
    tokens for any user."""
    import jwt

    from startorigin.api.deps import JWT_ALGORITHM, JWT_SECRET

    claims: dict = {"sub": sub, "role": "authenticated", "aud": "authenticated"}
    if admin:
        claims["app_metadata"] = {"roles": ["admin"]}
    return jwt.encode(claims, JWT_SECRET, algorithm=JWT_ALGORITHM)


def auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client(db_engine, live, test_config):
    """TestClient wired to the in-memory database and in-process live hub."""
    from fastapi.testclient import TestClient

    from startorigin.api.deps import get_config, get_engine, get_live
    from startorigin.api.main import app

    app.dependency_overrides[get_engine] = lambda: db_engine
    app.dependency_overrides[get_live] = lambda: live
    app.dependency_overrides[get_config] = lambda: test_config
    try:
        yield TestClient(app, raise_server_exceptions=False)
    finally:
        app.dependency_overrides.clear()
