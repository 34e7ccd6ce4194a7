"""
auth/sessions.py -- Server-held bearer sessions.

A session binds an opaque 256-bit token to a user id. Only
HMAC-SHA256(SECRET_KEY, token) is stored; the raw token exists in the login
response and in the client's Authorization header, nowhere else.

Lifetime:
  expires_at = created_at + TTL (default 24 h), fixed at creation.
  validate_session() refreshes last_activity for audit and LRU eviction
  purposes but never moves expires_at, so every session has a hard upper
  bound on its lifetime.

Concurrency cap:
  create_session() evicts the least-recently-active session when the user
  already holds max_sessions active ones -- one eviction per creation. Two
  creations racing for the same user may both see the old count and end up
  one over the cap (or evict one more than needed). The cap is a soft bound;
  the next creation corrects it.

Revocation (terminate_*) flips is_active. Terminating an already inactive
session is a no-op.

Layer rule: no imports from api/ or notify/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import and_, case, func, select, update
from sqlalchemy.engine import Engine

from auth.models import Session
from auth.tokens import generate_session_token, hash_session_token
from core.db import from_iso, sessions, to_iso, users, utcnow

if TYPE_CHECKING:
    from auth.activity import ActivityLogger

logger = logging.getLogger("gatekeeper.sessions")

_s = sessions.c


class SessionManager:
    """Issue, validate, and revoke bearer sessions.

    Usage:
        mgr = SessionManager(engine)
        token = mgr.create_session(user_id, "203.0.113.7", "curl/8.0")
        session = mgr.validate_session(token)   # Session or None
        mgr.terminate_session(token)
    """

    def __init__(
        self,
        engine: Engine,
        activity: ActivityLogger | None = None,
        ttl: timedelta = timedelta(hours=24),
        max_sessions: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self.ttl = ttl
        self.max_sessions = max_sessions
        self._activity = activity
        self._clock = clock

    def _active(self, now_iso: str):
        return and_(_s.is_active == 1, _s.expires_at > now_iso)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_session(self, user_id: int, ip: str | None, user_agent: str | None) -> str:
        """Mint a session and return the raw bearer token.

        The INSERT is the commit point: if it fails nothing is visible.
        """
        now = self._clock()
        now_iso = to_iso(now)
        token = generate_session_token()
        user_active = and_(_s.user_id == user_id, self._active(now_iso))

        with self.engine.begin() as conn:
            count = conn.execute(select(func.count()).select_from(sessions).where(user_active)).scalar() or 0
            if count >= self.max_sessions:
                oldest_id = conn.execute(
                    select(_s.id).where(user_active).order_by(_s.last_activity.asc(), _s.id.asc()).limit(1)
                ).scalar()
                if oldest_id is not None:
                    conn.execute(
                        update(sessions).where(and_(_s.id == oldest_id, _s.is_active == 1)).values(is_active=0)
                    )
                    logger.info("Evicted session %s for user %s (cap=%d)", oldest_id, user_id, self.max_sessions)
            conn.execute(
                sessions.insert().values(
                    user_id=user_id,
                    token_hash=hash_session_token(token),
                    ip_address=ip,
                    user_agent=user_agent,
                    created_at=now_iso,
                    last_activity=now_iso,
                    expires_at=to_iso(now + self.ttl),
                    is_active=1,
                )
            )
        return token

    def validate_session(self, token: str) -> Session | None:
        """Return the active, unexpired session for token, or None.

        Refreshes last_activity; expires_at is left untouched.
        """
        now_iso = to_iso(self._clock())
        with self.engine.begin() as conn:
            row = conn.execute(
                select(sessions).where(and_(_s.token_hash == hash_session_token(token), self._active(now_iso)))
            ).fetchone()
            if row is None:
                return None
            conn.execute(update(sessions).where(_s.id == row.id).values(last_activity=now_iso))
        session = _row_to_session(row)
        session.last_activity = from_iso(now_iso)
        return session

    def session_expiry(self, token: str) -> datetime | None:
        """The stored expires_at for token, without touching last_activity."""
        with self.engine.connect() as conn:
            value = conn.execute(select(_s.expires_at).where(_s.token_hash == hash_session_token(token))).scalar()
        return from_iso(value) if value else None

    def terminate_session(self, token: str) -> bool:
        """Deactivate the session for token. Returns True if it was active."""
        with self.engine.begin() as conn:
            result = conn.execute(
                update(sessions)
                .where(and_(_s.token_hash == hash_session_token(token), _s.is_active == 1))
                .values(is_active=0)
            )
        return result.rowcount > 0

    def terminate_all_user_sessions(self, user_id: int) -> int:
        """Deactivate every active session of a user. Returns how many were active."""
        with self.engine.begin() as conn:
            result = conn.execute(
                update(sessions).where(and_(_s.user_id == user_id, _s.is_active == 1)).values(is_active=0)
            )
        return result.rowcount

    def terminate_session_by_admin(self, session_id: int, admin_id: int) -> bool:
        """Deactivate a session by id and record the admin action.

        Returns False only when no such session exists. An already inactive
        session returns True without a second audit event.
        """
        with self.engine.begin() as conn:
            exists = conn.execute(select(_s.id).where(_s.id == session_id)).scalar()
            if exists is None:
                return False
            result = conn.execute(
                update(sessions).where(and_(_s.id == session_id, _s.is_active == 1)).values(is_active=0)
            )
        if result.rowcount and self._activity is not None:
            self._activity.log(admin_id, "session_terminated", {"session_id": session_id})
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_active_sessions(self, user_id: int) -> list[Session]:
        """Active, unexpired sessions of a user, most recently active first."""
        now_iso = to_iso(self._clock())
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(sessions)
                .where(and_(_s.user_id == user_id, self._active(now_iso)))
                .order_by(_s.last_activity.desc(), _s.id.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def count_active_sessions(self, user_id: int) -> int:
        now_iso = to_iso(self._clock())
        with self.engine.connect() as conn:
            return (
                conn.execute(
                    select(func.count()).select_from(sessions).where(and_(_s.user_id == user_id, self._active(now_iso)))
                ).scalar()
                or 0
            )

    def get_all_sessions(self, limit: int = 100, offset: int = 0) -> list[dict]:
        """Every session (any state) with its owner's username, for the admin view."""
        stmt = (
            select(
                _s.id,
                _s.user_id,
                _s.ip_address,
                _s.user_agent,
                _s.is_active,
                _s.created_at,
                _s.last_activity,
                _s.expires_at,
                users.c.username,
            )
            .select_from(sessions.join(users, users.c.id == _s.user_id))
            .order_by(_s.last_activity.desc(), _s.id.desc())
            .limit(limit)
            .offset(offset)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [
            {
                "id": r.id,
                "user_id": r.user_id,
                "username": r.username,
                "ip_address": r.ip_address,
                "user_agent": r.user_agent,
                "is_active": bool(r.is_active),
                "created_at": r.created_at,
                "last_activity": r.last_activity,
                "expires_at": r.expires_at,
            }
            for r in rows
        ]

    def get_session_statistics(self) -> dict:
        now_iso = to_iso(self._clock())
        stmt = select(
            func.count().label("total"),
            func.sum(case((self._active(now_iso), 1), else_=0)).label("active"),
            func.sum(case((_s.is_active == 0, 1), else_=0)).label("terminated"),
            func.sum(case((_s.expires_at <= now_iso, 1), else_=0)).label("expired"),
        ).select_from(sessions)
        with self.engine.connect() as conn:
            row = conn.execute(stmt).one()
        return {
            "total_sessions": row.total or 0,
            "active_sessions": row.active or 0,
            "terminated_sessions": row.terminated or 0,
            "expired_sessions": row.expired or 0,
        }

    def cleanup_expired_sessions(self) -> int:
        """Mark expired-but-still-active rows inactive. Returns rows changed."""
        now_iso = to_iso(self._clock())
        with self.engine.begin() as conn:
            result = conn.execute(
                update(sessions).where(and_(_s.is_active == 1, _s.expires_at <= now_iso)).values(is_active=0)
            )
        logger.info("Cleaned up %d expired sessions", result.rowcount)
        return result.rowcount


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        created_at=from_iso(row.created_at),
        last_activity=from_iso(row.last_activity),
        expires_at=from_iso(row.expires_at),
        is_active=bool(row.is_active),
    )
