"""Unit tests for auth/lockout.py -- LockoutGuard.

Covers:
- 5 consecutive failures lock the account for lockout_duration
- the lock lifts lazily when the clock passes account_locked_until
- a failure after an expired lock restarts the count at 1
- one security alert per lock, respecting the security_alerts preference
- a failing notifier never prevents the lock
- the alert is queued without waiting on the mail provider
- concurrent failures on a file database are each counted exactly once
- unlock_account(), reset_failed_logins(), reset_stale_failures()
"""

from __future__ import annotations

import threading
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from auth.activity import ActivityLogger
from auth.lockout import LockoutGuard
from auth.models import User
from auth.store import UserStore


@pytest.fixture
def notifier() -> MagicMock:
    return MagicMock()


@pytest.fixture
def guard(engine, clock, notifier) -> LockoutGuard:
    return LockoutGuard(
        engine,
        notifier=notifier,
        activity=ActivityLogger(engine, clock=clock),
        threshold=5,
        lockout_duration=timedelta(minutes=30),
        clock=clock,
    )


class TestFailedLoginCounter:
    def test_counts_up_and_locks_at_threshold(self, guard, make_user) -> None:
        uid = make_user()
        counts = [guard.record_failed_login(uid, "203.0.113.7") for _ in range(4)]
        assert counts == [1, 2, 3, 4]
        assert guard.is_locked(uid) is False

        assert guard.record_failed_login(uid, "203.0.113.7") == 5
        assert guard.is_locked(uid) is True

    def test_lock_expires_after_duration(self, guard, make_user, clock) -> None:
        uid = make_user()
        for _ in range(5):
            guard.record_failed_login(uid)
        assert guard.locked_until(uid) == clock() + timedelta(minutes=30)

        clock.advance(minutes=29, seconds=59)
        assert guard.is_locked(uid) is True
        clock.advance(seconds=1)
        assert guard.is_locked(uid) is False

    def test_failure_after_expired_lock_restarts_count(self, guard, make_user, clock) -> None:
        uid = make_user()
        for _ in range(5):
            guard.record_failed_login(uid)
        clock.advance(minutes=31)
        assert guard.record_failed_login(uid) == 1
        assert guard.is_locked(uid) is False

    def test_reset_failed_logins(self, guard, make_user, engine) -> None:
        uid = make_user()
        guard.record_failed_login(uid)
        guard.record_failed_login(uid)
        guard.reset_failed_logins(uid)
        settings = UserStore(engine).get_security_settings(uid)
        assert settings.failed_login_attempts == 0
        assert settings.last_failed_login is None

    def test_unknown_security_row_is_created(self, guard, make_user, engine) -> None:
        uid = make_user()
        with engine.begin() as conn:
            conn.exec_driver_sql("DELETE FROM user_security_settings")
        assert guard.record_failed_login(uid) == 1


class TestLockAlert:
    def test_alert_sent_once_per_lock(self, guard, make_user, notifier) -> None:
        uid = make_user("bob")
        for _ in range(7):
            guard.record_failed_login(uid, "198.51.100.2")
        notifier.send_security_alert.assert_called_once()
        user_id, email, alert_type, details = notifier.send_security_alert.call_args.args
        assert (user_id, email, alert_type) == (uid, "bob@example.com", "multiple_failed_logins")
        assert details == {"attempts": 5, "ip_address": "198.51.100.2"}

    def test_alert_respects_preference(self, guard, make_user, notifier) -> None:
        uid = make_user(security_alerts=False)
        for _ in range(5):
            guard.record_failed_login(uid)
        assert guard.is_locked(uid) is True
        notifier.send_security_alert.assert_not_called()

    def test_notifier_failure_does_not_prevent_lock(self, guard, make_user, notifier) -> None:
        notifier.send_security_alert.side_effect = RuntimeError("smtp down")
        uid = make_user()
        for _ in range(5):
            guard.record_failed_login(uid)
        assert guard.is_locked(uid) is True

    def test_alert_is_queued_without_waiting(self, guard, make_user, notifier) -> None:
        uid = make_user()
        for _ in range(5):
            guard.record_failed_login(uid)
        assert notifier.send_security_alert.call_args.kwargs == {"wait": False}

    def test_lock_is_logged_as_activity(self, guard, make_user, engine, clock) -> None:
        uid = make_user()
        for _ in range(5):
            guard.record_failed_login(uid)
        actions = [row["action"] for row in ActivityLogger(engine, clock=clock).recent(uid)]
        assert "security_account_locked" in actions


class TestAdminOperations:
    def test_unlock_account(self, guard, make_user) -> None:
        uid = make_user()
        for _ in range(5):
            guard.record_failed_login(uid)
        assert guard.unlock_account(uid) is True
        assert guard.is_locked(uid) is False
        assert guard.record_failed_login(uid) == 1

    def test_unlock_unknown_user(self, guard) -> None:
        assert guard.unlock_account(9999) is False

    def test_reset_stale_failures(self, guard, make_user, clock) -> None:
        old = make_user("old")
        recent = make_user("recent")
        guard.record_failed_login(old)
        clock.advance(days=31)
        guard.record_failed_login(recent)
        assert guard.reset_stale_failures(older_than=timedelta(days=30)) == 1


class TestConcurrentFailures:
    """Racing failures on a real database file, one connection per thread."""

    def test_every_failure_is_counted_once(self, file_engine, clock) -> None:
        threads_n = 8
        uid = UserStore(file_engine, clock=clock).create_user(
            User(username="carol", email="carol@example.com", hashed_password="x")
        )
        notifier = MagicMock()
        guard = LockoutGuard(
            file_engine,
            notifier=notifier,
            activity=ActivityLogger(file_engine, clock=clock),
            threshold=5,
            lockout_duration=timedelta(minutes=30),
            clock=clock,
        )
        barrier = threading.Barrier(threads_n)
        counts: list[int] = []
        errors: list[BaseException] = []

        def _fail() -> None:
            barrier.wait()
            try:
                counts.append(guard.record_failed_login(uid, "198.51.100.9"))
            except Exception as exc:
                errors.append(exc)

        workers = [threading.Thread(target=_fail) for _ in range(threads_n)]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join(timeout=30)

        assert errors == []
        assert sorted(counts) == list(range(1, threads_n + 1))
        assert UserStore(file_engine).get_security_settings(uid).failed_login_attempts == threads_n
        assert guard.is_locked(uid) is True
        notifier.send_security_alert.assert_called_once()
