"""
auth/codes.py -- Verification code manager.

Issues, stores, and consumes the short-lived 8-digit codes used for
registration, login 2FA, password reset/change, admin creation, role change,
and security alerts.

Invariants:
  - At most one live (unused, unexpired) code per (email, purpose). Issuing a
    new code deletes the used and expired rows for the pair and marks the
    live one used, so an old code can never be verified after a newer one
    was sent. The superseded row stays until the next issue for the pair.
  - Single use. Success flips is_used with a conditional UPDATE
    (WHERE is_used = 0), so two concurrent correct submissions cannot both win.
  - Attempt cap. Every wrong guess increments attempts on the live row for
    the pair, whatever the guessed value. The guess that reaches
    max_attempts burns the row (is_used = 1) and reports MaxAttemptsExceeded;
    later guesses find no live row and report CodeInvalidOrExpired.

Every issuance also appends to code_issuance_log, the durable event log the
code rate limit counts over (code rows themselves get purged).

Side effects: database only. Callers hand the code to the notifier.

Layer rule: no imports from api/ or notify/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.engine import Engine

from auth.models import CodePurpose, IssuedCode
from auth.tokens import codes_match, generate_verification_code
from core.db import code_issuance_log, to_iso, utcnow, verification_codes
from core.errors import CodeInvalidOrExpired, MaxAttemptsExceeded

logger = logging.getLogger("gatekeeper.codes")

_vc = verification_codes.c


class VerificationCodeManager:
    """Create and verify single-use email codes.

    Usage:
        codes = VerificationCodeManager(engine)
        issued = codes.create_code("a@x.io", CodePurpose.login_2fa, ttl_minutes=5, owner_id=7)
        owner_id = codes.verify_code("a@x.io", issued.code, CodePurpose.login_2fa)
    """

    def __init__(
        self,
        engine: Engine,
        max_attempts: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self.max_attempts = max_attempts
        self._clock = clock

    def create_code(
        self,
        identity: str,
        purpose: CodePurpose,
        ttl_minutes: int,
        owner_id: int | None = None,
    ) -> IssuedCode:
        email = identity.lower()
        purpose = CodePurpose(purpose)
        now = self._clock()
        expires_at = now + timedelta(minutes=ttl_minutes)
        now_iso = to_iso(now)
        code = generate_verification_code()

        with self.engine.begin() as conn:
            pair = and_(_vc.email == email, _vc.purpose == purpose.value)
            conn.execute(delete(verification_codes).where(and_(pair, or_(_vc.is_used == 1, _vc.expires_at <= now_iso))))
            superseded = conn.execute(
                update(verification_codes).where(and_(pair, _vc.is_used == 0)).values(is_used=1, used_at=now_iso)
            ).rowcount
            if superseded:
                logger.debug("Superseded %d live code(s) (purpose=%s)", superseded, purpose.value)
            conn.execute(
                verification_codes.insert().values(
                    user_id=owner_id,
                    email=email,
                    code=code,
                    purpose=purpose.value,
                    created_at=now_iso,
                    expires_at=to_iso(expires_at),
                    attempts=0,
                    max_attempts=self.max_attempts,
                    is_used=0,
                )
            )
            conn.execute(code_issuance_log.insert().values(email=email, purpose=purpose.value, created_at=now_iso))

        logger.info("Verification code issued (purpose=%s)", purpose.value)
        return IssuedCode(code=code, expires_at=expires_at)

    def verify_code(self, identity: str, code: str, purpose: CodePurpose) -> int | None:
        """Consume a code and return the owner user id stored with it.

        Raises CodeInvalidOrExpired or MaxAttemptsExceeded. The attempt
        counter update is committed before the error is raised.
        """
        email = identity.lower()
        purpose = CodePurpose(purpose)
        now = to_iso(self._clock())
        live = and_(
            _vc.email == email,
            _vc.purpose == purpose.value,
            _vc.is_used == 0,
            _vc.expires_at > now,
        )

        error: Exception | None = None
        owner_id: int | None = None
        with self.engine.begin() as conn:
            row = conn.execute(select(verification_codes).where(live).order_by(_vc.id.desc()).limit(1)).first()
            if row is None:
                error = CodeInvalidOrExpired()
            elif not codes_match(code, row.code) or row.attempts >= row.max_attempts:
                conn.execute(update(verification_codes).where(live).values(attempts=_vc.attempts + 1))
                burned = conn.execute(
                    update(verification_codes)
                    .where(and_(live, _vc.attempts >= _vc.max_attempts))
                    .values(is_used=1, used_at=now)
                ).rowcount
                error = MaxAttemptsExceeded() if burned else CodeInvalidOrExpired()
            else:
                consumed = conn.execute(
                    update(verification_codes)
                    .where(and_(_vc.id == row.id, _vc.is_used == 0, _vc.attempts < _vc.max_attempts))
                    .values(is_used=1, used_at=now)
                ).rowcount
                if consumed == 1:
                    owner_id = row.user_id
                else:
                    error = CodeInvalidOrExpired()

        if error is not None:
            logger.info("Verification failed (purpose=%s, reason=%s)", purpose.value, error.code)
            raise error
        return owner_id

    # ------------------------------------------------------------------
    # Housekeeping and statistics
    # ------------------------------------------------------------------

    def cleanup_expired(self) -> int:
        """Delete expired code rows. Returns number of rows removed."""
        with self.engine.begin() as conn:
            result = conn.execute(delete(verification_codes).where(_vc.expires_at < to_iso(self._clock())))
        return result.rowcount

    def prune_issuance_log(self, older_than: timedelta) -> int:
        """Drop issuance events older than any rate-limit window still needs."""
        cutoff = to_iso(self._clock() - older_than)
        with self.engine.begin() as conn:
            result = conn.execute(delete(code_issuance_log).where(code_issuance_log.c.created_at < cutoff))
        return result.rowcount

    def verification_stats(self, days: int = 30) -> list[dict]:
        """Per-purpose totals for codes created in the last `days` days.

        Counts the rows still stored. For each (email, purpose) that means the
        current code and the one it superseded, which counts as used; older
        rows were purged on re-issue and cleanup_expired() removes the rest.
        """
        now = self._clock()
        since = to_iso(now - timedelta(days=days))
        now_iso = to_iso(now)
        stmt = (
            select(
                _vc.purpose,
                func.count().label("total_codes"),
                func.sum(case((_vc.is_used == 1, 1), else_=0)).label("used_codes"),
                func.sum(case((and_(_vc.expires_at < now_iso, _vc.is_used == 0), 1), else_=0)).label("expired_codes"),
                func.sum(case((_vc.attempts >= _vc.max_attempts, 1), else_=0)).label("max_attempts_exceeded"),
            )
            .where(_vc.created_at > since)
            .group_by(_vc.purpose)
            .order_by(_vc.purpose)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [
            {
                "purpose": r.purpose,
                "total_codes": r.total_codes,
                "used_codes": r.used_codes or 0,
                "expired_codes": r.expired_codes or 0,
                "max_attempts_exceeded": r.max_attempts_exceeded or 0,
            }
            for r in rows
        ]
