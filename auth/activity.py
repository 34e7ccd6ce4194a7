"""
auth/activity.py -- Best-effort append-only activity log.

Every security-relevant transition (login, failed login, lockout, 2FA,
session termination) appends one row to activity_logs. Writes are
fire-and-forget: a failure is logged and swallowed so the critical path
(login success or failure) is never blocked or failed by audit logging.

Layer rule: no imports from api/ or notify/.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from core.db import activity_logs, to_iso, utcnow

logger = logging.getLogger("gatekeeper.activity")


class ActivityLogger:
    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utcnow) -> None:
        self.engine = engine
        self._clock = clock

    def log(
        self,
        user_id: int | None,
        action: str,
        details: dict | None = None,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        """Append one activity row. Never raises on store failure."""
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    activity_logs.insert().values(
                        user_id=user_id,
                        action=action,
                        details=json.dumps(details) if details is not None else None,
                        ip_address=ip,
                        user_agent=user_agent,
                        created_at=to_iso(self._clock()),
                    )
                )
        except SQLAlchemyError:
            logger.warning("Activity log write failed (action=%s user_id=%s)", action, user_id, exc_info=True)

    def recent(self, user_id: int | None = None, limit: int = 50) -> list[dict]:
        """Return the newest activity rows, optionally for one user."""
        stmt = select(activity_logs).order_by(activity_logs.c.id.desc()).limit(limit)
        if user_id is not None:
            stmt = stmt.where(activity_logs.c.user_id == user_id)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [
            {
                "user_id": r.user_id,
                "action": r.action,
                "details": json.loads(r.details) if r.details else None,
                "ip_address": r.ip_address,
                "user_agent": r.user_agent,
                "created_at": r.created_at,
            }
            for r in rows
        ]
