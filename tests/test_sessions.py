"""Unit tests for auth/sessions.py -- SessionManager.

Covers:
- tokens are 64 hex chars and only their HMAC is stored
- validate_session() refreshes last_activity but never moves expires_at
- session_expiry() reads expires_at without touching last_activity
- the per-user cap evicts the least-recently-active session
- terminate_session(), terminate_all_user_sessions(), terminate_session_by_admin()
- statistics, admin listing, cleanup_expired_sessions()
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from auth.activity import ActivityLogger
from auth.sessions import SessionManager
from auth.tokens import hash_session_token
from core.db import sessions, to_iso


@pytest.fixture
def activity(engine, clock) -> ActivityLogger:
    return ActivityLogger(engine, clock=clock)


@pytest.fixture
def mgr(engine, clock, activity) -> SessionManager:
    return SessionManager(engine, activity=activity, ttl=timedelta(hours=24), max_sessions=5, clock=clock)


class TestCreateAndValidate:
    def test_token_shape_and_storage(self, mgr, make_user, engine) -> None:
        uid = make_user()
        token = mgr.create_session(uid, "203.0.113.7", "pytest")
        assert len(token) == 64
        int(token, 16)
        with engine.connect() as conn:
            stored = conn.execute(select(sessions.c.token_hash)).scalars().all()
        assert stored == [hash_session_token(token)]
        assert token not in stored

    def test_validate_returns_session(self, mgr, make_user) -> None:
        uid = make_user()
        token = mgr.create_session(uid, "203.0.113.7", "pytest")
        session = mgr.validate_session(token)
        assert session is not None
        assert session.user_id == uid
        assert session.ip_address == "203.0.113.7"

    def test_unknown_token(self, mgr) -> None:
        assert mgr.validate_session("f" * 64) is None

    def test_expiry_is_fixed_from_creation(self, mgr, make_user, clock) -> None:
        uid = make_user()
        created = clock()
        token = mgr.create_session(uid, None, None)

        clock.advance(hours=23)
        session = mgr.validate_session(token)
        assert session.expires_at == created + timedelta(hours=24)
        assert session.last_activity == clock()

        clock.advance(hours=1)
        assert mgr.validate_session(token) is None

    def test_session_expiry_reads_the_stored_value(self, mgr, make_user, clock, engine) -> None:
        uid = make_user()
        created = clock()
        token = mgr.create_session(uid, None, None)
        clock.advance(minutes=10)

        assert mgr.session_expiry(token) == created + timedelta(hours=24)
        assert mgr.session_expiry("f" * 64) is None
        with engine.connect() as conn:
            last_activity = conn.execute(select(sessions.c.last_activity)).scalar()
        assert last_activity == to_iso(created)


class TestConcurrencyCap:
    def test_sixth_session_evicts_least_recently_active(self, mgr, make_user, clock) -> None:
        uid = make_user()
        tokens = []
        for _ in range(5):
            tokens.append(mgr.create_session(uid, None, None))
            clock.advance(minutes=1)

        # Touch the oldest so the second-oldest becomes least recently active.
        mgr.validate_session(tokens[0])
        clock.advance(minutes=1)

        mgr.create_session(uid, None, None)
        assert mgr.count_active_sessions(uid) == 5
        assert mgr.validate_session(tokens[0]) is not None
        assert mgr.validate_session(tokens[1]) is None

    def test_cap_holds_after_many_creations(self, mgr, make_user, clock) -> None:
        uid = make_user()
        for _ in range(12):
            mgr.create_session(uid, None, None)
            clock.advance(seconds=1)
            assert mgr.count_active_sessions(uid) <= 5

    def test_cap_is_per_user(self, mgr, make_user) -> None:
        alice = make_user("alice")
        bob = make_user("bob")
        for _ in range(5):
            mgr.create_session(alice, None, None)
        mgr.create_session(bob, None, None)
        assert mgr.count_active_sessions(alice) == 5
        assert mgr.count_active_sessions(bob) == 1


class TestTermination:
    def test_terminate_session(self, mgr, make_user) -> None:
        uid = make_user()
        token = mgr.create_session(uid, None, None)
        assert mgr.terminate_session(token) is True
        assert mgr.validate_session(token) is None
        assert mgr.terminate_session(token) is False

    def test_terminate_all(self, mgr, make_user) -> None:
        uid = make_user()
        tokens = [mgr.create_session(uid, None, None) for _ in range(3)]
        assert mgr.terminate_all_user_sessions(uid) == 3
        assert all(mgr.validate_session(t) is None for t in tokens)

    def test_admin_terminate_logs_once(self, mgr, make_user, activity) -> None:
        uid = make_user()
        admin = make_user("root", role="admin")
        mgr.create_session(uid, None, None)
        session_id = mgr.get_active_sessions(uid)[0].id

        assert mgr.terminate_session_by_admin(session_id, admin) is True
        assert mgr.terminate_session_by_admin(session_id, admin) is True
        events = [r for r in activity.recent(admin) if r["action"] == "session_terminated"]
        assert len(events) == 1
        assert events[0]["details"] == {"session_id": session_id}

    def test_admin_terminate_unknown(self, mgr) -> None:
        assert mgr.terminate_session_by_admin(4242, 1) is False


class TestQueries:
    def test_statistics_and_cleanup(self, mgr, make_user, clock) -> None:
        uid = make_user()
        ended = mgr.create_session(uid, None, None)
        mgr.terminate_session(ended)
        mgr.create_session(uid, None, None)
        clock.advance(hours=25)
        mgr.create_session(uid, None, None)

        stats = mgr.get_session_statistics()
        assert stats == {
            "total_sessions": 3,
            "active_sessions": 1,
            "terminated_sessions": 1,
            "expired_sessions": 2,
        }
        assert mgr.cleanup_expired_sessions() == 1

    def test_get_all_sessions_includes_username(self, mgr, make_user) -> None:
        uid = make_user("carol")
        mgr.create_session(uid, "192.0.2.1", "ua")
        rows = mgr.get_all_sessions()
        assert rows[0]["username"] == "carol"
        assert rows[0]["is_active"] is True
