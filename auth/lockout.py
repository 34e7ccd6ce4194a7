"""
auth/lockout.py -- Failed-login counter and temporary account lock.

States per account: Unlocked <-> Locked(until T). There is no background
sweeper: is_locked() compares account_locked_until with the clock at read
time, and record_failed_login() restarts the count when it finds a lock that
has already run out.

Concurrency:
  The counter is incremented with a single UPDATE ... SET
  failed_login_attempts = failed_login_attempts + 1 ... RETURNING statement,
  never read-modify-write in process memory, so concurrent failures from
  several server processes all count.

Alerting:
  When a failure takes the count to the threshold, the user gets a security
  alert email through the notifier. That call is best-effort: a notifier
  failure is logged and the lock stays in place.

Layer rule: no imports from api/. The notifier is injected.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import and_, case, null, or_, select, update
from sqlalchemy.engine import Engine

from auth.store import ensure_security_row
from core.db import from_iso, security_settings, to_iso, users, utcnow

if TYPE_CHECKING:
    from auth.activity import ActivityLogger
    from notify.email import EmailNotifier

logger = logging.getLogger("gatekeeper.lockout")

_s = security_settings.c


class LockoutGuard:
    def __init__(
        self,
        engine: Engine,
        notifier: EmailNotifier | None = None,
        activity: ActivityLogger | None = None,
        threshold: int = 5,
        lockout_duration: timedelta = timedelta(minutes=30),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self.threshold = threshold
        self.lockout_duration = lockout_duration
        self._notifier = notifier
        self._activity = activity
        self._clock = clock

    def locked_until(self, user_id: int) -> datetime | None:
        """Return the lock expiry if the account is currently locked, else None."""
        with self.engine.connect() as conn:
            value = conn.execute(select(_s.account_locked_until).where(_s.user_id == user_id)).scalar()
        until = from_iso(value)
        if until is None or until <= self._clock():
            return None
        return until

    def is_locked(self, user_id: int) -> bool:
        return self.locked_until(user_id) is not None

    def record_failed_login(self, user_id: int, ip: str | None = None) -> int:
        """Count one failed password attempt; lock the account at the threshold.

        Returns the new consecutive-failure count.
        """
        now = self._clock()
        now_iso = to_iso(now)
        lock_ran_out = and_(_s.account_locked_until.is_not(None), _s.account_locked_until <= now_iso)

        with self.engine.begin() as conn:
            ensure_security_row(conn, user_id)
            row = conn.execute(
                update(security_settings)
                .where(_s.user_id == user_id)
                .values(
                    failed_login_attempts=case((lock_ran_out, 1), else_=_s.failed_login_attempts + 1),
                    account_locked_until=case((lock_ran_out, null()), else_=_s.account_locked_until),
                    last_failed_login=now_iso,
                )
                .returning(_s.failed_login_attempts, _s.security_alerts)
            ).first()
            attempts = row.failed_login_attempts
            alerts_enabled = bool(row.security_alerts)

            locked_until = None
            if attempts >= self.threshold:
                locked_until = now + self.lockout_duration
                conn.execute(
                    update(security_settings)
                    .where(
                        and_(
                            _s.user_id == user_id,
                            or_(_s.account_locked_until.is_(None), _s.account_locked_until <= now_iso),
                        )
                    )
                    .values(account_locked_until=to_iso(locked_until))
                )

        logger.info("Failed login for user %s (consecutive=%d)", user_id, attempts)
        # Exactly one failure crosses the threshold, so one alert per lock.
        if locked_until is not None and attempts == self.threshold:
            logger.warning("Account %s locked until %s", user_id, locked_until.isoformat())
            if self._activity is not None:
                self._activity.log(
                    user_id,
                    "security_account_locked",
                    {"attempts": attempts, "locked_until": to_iso(locked_until)},
                    ip=ip,
                )
            if alerts_enabled:
                self._send_lock_alert(user_id, attempts, ip)
        return attempts

    def _send_lock_alert(self, user_id: int, attempts: int, ip: str | None) -> None:
        if self._notifier is None:
            return
        try:
            with self.engine.connect() as conn:
                email = conn.execute(select(users.c.email).where(users.c.id == user_id)).scalar()
            if email:
                self._notifier.send_security_alert(
                    user_id,
                    email,
                    "multiple_failed_logins",
                    {"attempts": attempts, "ip_address": ip or "Unknown"},
                    wait=False,
                )
        except Exception:
            # Best-effort channel: the lock has already been committed.
            logger.warning("Lockout alert for user %s could not be sent", user_id, exc_info=True)

    def reset_failed_logins(self, user_id: int) -> None:
        """Clear the failure streak. Call only after a fully successful login."""
        with self.engine.begin() as conn:
            conn.execute(
                update(security_settings)
                .where(_s.user_id == user_id)
                .values(failed_login_attempts=0, last_failed_login=None)
            )

    def unlock_account(self, user_id: int) -> bool:
        """Lift a lock early (admin action). Returns False if the user has no settings row."""
        with self.engine.begin() as conn:
            result = conn.execute(
                update(security_settings)
                .where(_s.user_id == user_id)
                .values(failed_login_attempts=0, last_failed_login=None, account_locked_until=None)
            )
        if result.rowcount:
            logger.info("Account %s unlocked", user_id)
        return result.rowcount > 0

    def reset_stale_failures(self, older_than: timedelta = timedelta(days=30)) -> int:
        """Forget failure streaks whose last failure is older than `older_than`."""
        cutoff = to_iso(self._clock() - older_than)
        with self.engine.begin() as conn:
            result = conn.execute(
                update(security_settings)
                .where(and_(_s.last_failed_login.is_not(None), _s.last_failed_login < cutoff))
                .values(failed_login_attempts=0, last_failed_login=None)
            )
        return result.rowcount
