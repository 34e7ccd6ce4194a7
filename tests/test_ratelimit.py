"""Unit tests for auth/ratelimit.py -- durable sliding-window limits.

Covers:
- the 4th code issue within 5 minutes is denied with a future reset_time
- reset_time is when the oldest counted event leaves the window
- windows are keyed by (email, purpose)
- the email limit counts only "sent" rows in email_logs
- an unreadable store raises InternalError instead of allowing
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from auth.codes import VerificationCodeManager
from auth.models import CodePurpose
from auth.ratelimit import RateLimiter
from core.db import email_logs, to_iso
from core.errors import InternalError


@pytest.fixture
def limiter(engine, clock) -> RateLimiter:
    return RateLimiter(
        engine,
        email_window=timedelta(minutes=15),
        email_max=10,
        code_window=timedelta(minutes=5),
        code_max=3,
        clock=clock,
    )


@pytest.fixture
def codes(engine, clock) -> VerificationCodeManager:
    return VerificationCodeManager(engine, clock=clock)


def _log_email(engine, clock, email: str, purpose: str, status: str = "sent") -> None:
    with engine.begin() as conn:
        conn.execute(
            email_logs.insert().values(
                email=email, purpose=purpose, subject="s", status=status, sent_at=to_iso(clock())
            )
        )


class TestCodeRateLimit:
    def test_empty_window_allows(self, limiter, clock) -> None:
        status = limiter.check_code_rate_limit("a@example.com", CodePurpose.login_2fa)
        assert status.allowed is True
        assert status.remaining == 3
        assert status.reset_time == clock() + timedelta(minutes=5)

    def test_fourth_issue_is_denied(self, limiter, codes, clock) -> None:
        first_at = clock()
        for _ in range(3):
            assert limiter.check_code_rate_limit("a@example.com", CodePurpose.login_2fa).allowed
            codes.create_code("a@example.com", CodePurpose.login_2fa, ttl_minutes=5)
            clock.advance(seconds=30)

        status = limiter.check_code_rate_limit("a@example.com", CodePurpose.login_2fa)
        assert status.allowed is False
        assert status.remaining == 0
        assert status.reset_time == first_at + timedelta(minutes=5)
        assert status.reset_time > clock()

    def test_slot_frees_when_oldest_leaves_window(self, limiter, codes, clock) -> None:
        for _ in range(3):
            codes.create_code("a@example.com", CodePurpose.login_2fa, ttl_minutes=5)
        clock.advance(minutes=5, seconds=1)
        assert limiter.check_code_rate_limit("a@example.com", CodePurpose.login_2fa).allowed is True

    def test_keyed_by_email_and_purpose(self, limiter, codes) -> None:
        for _ in range(3):
            codes.create_code("a@example.com", CodePurpose.login_2fa, ttl_minutes=5)
        assert limiter.check_code_rate_limit("A@example.com", CodePurpose.login_2fa).allowed is False
        assert limiter.check_code_rate_limit("a@example.com", CodePurpose.password_reset).allowed is True
        assert limiter.check_code_rate_limit("b@example.com", CodePurpose.login_2fa).allowed is True


class TestEmailRateLimit:
    def test_counts_sent_rows_only(self, limiter, engine, clock) -> None:
        for _ in range(9):
            _log_email(engine, clock, "a@example.com", "registration")
        for _ in range(5):
            _log_email(engine, clock, "a@example.com", "registration", status="failed")

        status = limiter.check_email_rate_limit("a@example.com", CodePurpose.registration)
        assert status.allowed is True
        assert status.remaining == 1

        _log_email(engine, clock, "a@example.com", "registration")
        assert limiter.check_email_rate_limit("a@example.com", CodePurpose.registration).allowed is False

    def test_window_is_fifteen_minutes(self, limiter, engine, clock) -> None:
        for _ in range(10):
            _log_email(engine, clock, "a@example.com", "registration")
        clock.advance(minutes=14)
        assert limiter.check_email_rate_limit("a@example.com", "registration").allowed is False
        clock.advance(minutes=1, seconds=1)
        assert limiter.check_email_rate_limit("a@example.com", "registration").allowed is True


def test_store_failure_fails_closed(clock) -> None:
    broken = MagicMock()
    broken.connect.side_effect = OperationalError("SELECT", {}, Exception("locked"))
    with pytest.raises(InternalError):
        RateLimiter(broken, clock=clock).check_code_rate_limit("a@example.com", CodePurpose.login_2fa)
