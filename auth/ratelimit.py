"""
auth/ratelimit.py -- Durable sliding-window limits on code issuance and email sends.

Windows are derived, never stored: each check is a COUNT(*) over an
append-only event table within a trailing window, so the limit holds across
multiple server processes and survives restarts.

  check_email_rate_limit  -- sent rows in email_logs for (email, purpose),
                             default 10 per 15 minutes.
  check_code_rate_limit   -- rows in code_issuance_log for (email, purpose),
                             default 3 per 5 minutes. Tighter and separate
                             from the send rate: it bounds how many codes an
                             attacker can have minted to guess against.

reset_time is when the oldest counted event leaves the window, i.e. the
earliest moment a new request can succeed. A store failure raises
InternalError; the window is never assumed empty.

This complements (does not replace) the slowapi per-IP limit in api/limiter.py,
which is in-process and keyed by client address rather than by account.

Layer rule: no imports from api/ or notify/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import Table, and_, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.models import CodePurpose, RateLimitStatus
from core.db import code_issuance_log, email_logs, from_iso, to_iso, utcnow
from core.errors import InternalError

logger = logging.getLogger("gatekeeper.ratelimit")


class RateLimiter:
    def __init__(
        self,
        engine: Engine,
        email_window: timedelta = timedelta(minutes=15),
        email_max: int = 10,
        code_window: timedelta = timedelta(minutes=5),
        code_max: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self.email_window = email_window
        self.email_max = email_max
        self.code_window = code_window
        self.code_max = code_max
        self._clock = clock

    def check_email_rate_limit(self, email: str, purpose: CodePurpose | str) -> RateLimitStatus:
        return self._check(
            email_logs,
            email_logs.c.sent_at,
            email_logs.c.status == "sent",
            email,
            purpose,
            self.email_window,
            self.email_max,
        )

    def check_code_rate_limit(self, email: str, purpose: CodePurpose | str) -> RateLimitStatus:
        return self._check(
            code_issuance_log,
            code_issuance_log.c.created_at,
            None,
            email,
            purpose,
            self.code_window,
            self.code_max,
        )

    def _check(self, table: Table, ts_col, extra, email, purpose, window: timedelta, limit: int) -> RateLimitStatus:
        now = self._clock()
        purpose_value = purpose.value if isinstance(purpose, CodePurpose) else str(purpose)
        cond = and_(
            table.c.email == email.lower(),
            table.c.purpose == purpose_value,
            ts_col > to_iso(now - window),
        )
        if extra is not None:
            cond = and_(cond, extra)

        try:
            with self.engine.connect() as conn:
                row = conn.execute(select(func.count(), func.min(ts_col)).select_from(table).where(cond)).one()
        except SQLAlchemyError as exc:
            logger.exception("Rate limit window unreadable (table=%s)", table.name)
            raise InternalError() from exc
        count, oldest = row[0] or 0, from_iso(row[1])

        reset_time = oldest + window if oldest is not None else now + window
        return RateLimitStatus(
            allowed=count < limit,
            remaining=max(0, limit - count),
            reset_time=reset_time,
        )
