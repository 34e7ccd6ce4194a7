"""
tests/conftest.py -- Shared test fixtures for Gatekeeper unit and integration tests.

This module provides:
  - FakeClock / clock: an injectable clock so lockout, code, rate-limit, and
    session expiry can be tested by moving time instead of sleeping
  - engine: an isolated named shared-memory SQLite database per test
  - file_engine: a file-backed database for multi-threaded write tests
  - make_user: creates a credential (optionally with 2FA) in that database
  - services: the full service graph wired exactly as the API lifespan wires it,
    with a MagicMock email notifier
  - api / client_for: TestClient against the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
# The per-IP slowapi limit is shared by every test in the process.
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app, wire_services
from auth.models import User
from auth.store import UserStore
from auth.tokens import hash_password
from core.config import get_settings
from core.db import create_db_engine

# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
def engine():
    """Fresh named shared-memory database with the full schema."""
    url = f"sqlite:///file:gk_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    eng = create_db_engine(url)
    yield eng
    eng.dispose()


@pytest.fixture
def file_engine(tmp_path):
    """File-backed SQLite database for tests that write from several threads."""
    eng = create_db_engine(f"sqlite:///{tmp_path / 'gatekeeper.db'}")
    yield eng
    eng.dispose()


# Hashing once keeps the suite fast; bcrypt at cost 12 is ~0.25s per call.
_PASSWORD = "correct-horse-battery"
_PASSWORD_HASH = hash_password(_PASSWORD)


@pytest.fixture
def password() -> str:
    return _PASSWORD


@pytest.fixture
def make_user(engine, clock):
    """Return a factory: make_user("alice", two_factor=True, role="admin") -> user id."""
    store = UserStore(engine, clock=clock)

    def _make(
        username: str = "alice",
        email: str | None = None,
        two_factor: bool = False,
        role: str = "user",
        is_active: bool = True,
        security_alerts: bool = True,
    ) -> int:
        user_id = store.create_user(
            User(
                username=username,
                email=email or f"{username}@example.com",
                hashed_password=_PASSWORD_HASH,
                role=role,
                is_active=is_active,
            )
        )
        store.update_security_settings(user_id, two_factor_enabled=two_factor, security_alerts=security_alerts)
        return user_id

    return _make


def _mock_notifier() -> MagicMock:
    notifier = MagicMock()
    notifier.send_verification_code.return_value = True
    notifier.send_security_alert.return_value = True
    return notifier


@pytest.fixture
def services(engine, clock) -> SimpleNamespace:
    """The service graph as the API wires it, without HTTP.

    Access services as attributes: services.login, services.lockout, ...
    """
    holder = SimpleNamespace(state=SimpleNamespace())
    notifier = _mock_notifier()
    wire_services(holder, engine, get_settings(), notifier=notifier, clock=clock)
    holder.state.clock = clock
    return holder.state


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(engine, notifier, clock):
    """Return an async context manager that replaces the real lifespan.

    Wires the test engine, a MagicMock notifier, and the fake clock into
    app.state so TestClient routes see an isolated database and no SMTP.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app, engine, get_settings(), notifier=notifier, clock=clock)
        yield

    return test_lifespan


@pytest.fixture
def client_for(engine, clock):
    """Return a factory: client_for(notifier) -> TestClient wired to that notifier.

    Use as a context manager so the patched lifespan runs.
    """

    def _make(notifier) -> TestClient:
        app.router.lifespan_context = _patch_lifespan(engine, notifier, clock)
        return TestClient(app, raise_server_exceptions=True)

    return _make


@pytest.fixture
def api(engine, clock, client_for) -> Generator[SimpleNamespace, None, None]:
    """Yield a namespace with client, notifier, clock, and engine for API tests."""
    notifier = _mock_notifier()
    with client_for(notifier) as client:
        yield SimpleNamespace(client=client, notifier=notifier, clock=clock, engine=engine)
