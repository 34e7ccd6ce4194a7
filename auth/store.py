"""
auth/store.py -- SQLAlchemy Core credential store.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user / _row_to_settings are the mappers.
Route and service code never touches the users table directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Updates go through closed field sets (_USER_FIELDS, _SETTINGS_FIELDS).
  Unknown keys raise ValidationError rather than being applied or silently
  dropped -- the column names that reach SQL come from the whitelist, never
  from the caller.

Security settings rows are created lazily: the first read or write for a
user inserts the default row with an insert-or-ignore statement, so two
concurrent first accesses cannot collide on the primary key.

Layer rule: no imports from api/ or notify/.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine

from auth.models import SecuritySettings, User
from core.db import from_iso, security_settings, to_iso, users, utcnow
from core.errors import ValidationError

_USER_FIELDS = frozenset({"email", "role", "is_active", "hashed_password"})
_SETTINGS_FIELDS = frozenset({"two_factor_enabled", "email_notifications", "security_alerts"})
_BOOL_FIELDS = frozenset({"is_active", "two_factor_enabled", "email_notifications", "security_alerts"})


def ensure_security_row(conn: Connection, user_id: int) -> None:
    """Insert the default security settings row for user_id if it is missing.

    Uses the dialect's native ON CONFLICT DO NOTHING so the insert is
    idempotent under concurrency. Other dialects fall back to check-then-insert.
    """
    dialect = conn.dialect.name
    if dialect == "sqlite":
        conn.execute(
            sqlite_insert(security_settings).values(user_id=user_id).on_conflict_do_nothing(index_elements=["user_id"])
        )
    elif dialect == "postgresql":
        conn.execute(
            pg_insert(security_settings).values(user_id=user_id).on_conflict_do_nothing(index_elements=["user_id"])
        )
    else:
        exists = conn.execute(
            select(security_settings.c.user_id).where(security_settings.c.user_id == user_id)
        ).first()
        if exists is None:
            conn.execute(security_settings.insert().values(user_id=user_id))


def _check_fields(fields: dict, allowed: frozenset) -> dict:
    unknown = set(fields) - allowed
    if unknown:
        raise ValidationError(f"Unknown fields: {sorted(unknown)!r}")
    return {k: (1 if v else 0) if k in _BOOL_FIELDS else v for k, v in fields.items()}


class UserStore:
    """Repository for credentials and their security settings.

    Usage:
        store = UserStore(engine)
        uid = store.create_user(User(username="alice", email="a@x.io", hashed_password=hash_password("pw")))
        user = store.get_by_username("alice")
        settings = store.get_security_settings(uid)
    """

    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utcnow) -> None:
        self.engine = engine
        self._clock = clock

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username or email already
        exists. Callers decide how to report the conflict.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                users.insert().values(
                    username=user.username,
                    email=user.email.lower(),
                    hashed_password=user.hashed_password,
                    role=user.role,
                    is_active=1 if user.is_active else 0,
                    created_at=to_iso(self._clock()),
                )
            )
            user_id = result.inserted_primary_key[0]
            ensure_security_row(conn, user_id)
        return user_id

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by exact username (case-sensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email. Emails are stored lowercased."""
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.email == email.lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_user(self, user_id: int, **fields) -> bool:
        """Update whitelisted fields on a user.

        Accepted fields: email, role, is_active, hashed_password.
        Returns True if a row was updated, False if user_id was not found.
        """
        values = _check_fields(fields, _USER_FIELDS)
        if not values:
            return False
        if "email" in values:
            values["email"] = values["email"].lower()
        with self.engine.begin() as conn:
            result = conn.execute(users.update().where(users.c.id == user_id).values(**values))
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        """Stamp last_login and mark the user online after a successful login."""
        with self.engine.begin() as conn:
            conn.execute(
                users.update().where(users.c.id == user_id).values(last_login=to_iso(self._clock()), is_online=1)
            )

    def set_offline(self, user_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(users.update().where(users.c.id == user_id).values(is_online=0))

    # ------------------------------------------------------------------
    # Security settings
    # ------------------------------------------------------------------

    def get_security_settings(self, user_id: int) -> SecuritySettings:
        """Return the user's security settings, creating the default row on first access."""
        with self.engine.begin() as conn:
            ensure_security_row(conn, user_id)
            row = conn.execute(
                security_settings.select().where(security_settings.c.user_id == user_id)
            ).fetchone()
        return _row_to_settings(row)

    def update_security_settings(self, user_id: int, **fields) -> SecuritySettings:
        """Update user-editable security preferences.

        Accepted fields: two_factor_enabled, email_notifications, security_alerts.
        Lockout counters are owned by LockoutGuard and cannot be set here.
        """
        values = _check_fields(fields, _SETTINGS_FIELDS)
        if not values:
            raise ValidationError("No fields to update.")
        with self.engine.begin() as conn:
            ensure_security_row(conn, user_id)
            conn.execute(security_settings.update().where(security_settings.c.user_id == user_id).values(**values))
            row = conn.execute(
                security_settings.select().where(security_settings.c.user_id == user_id)
            ).fetchone()
        return _row_to_settings(row)

    def security_stats(self) -> dict:
        """Counts for the admin overview: locked, with failures, 2FA-enabled."""
        now = to_iso(self._clock())
        t = security_settings.c
        with self.engine.connect() as conn:
            locked = conn.execute(
                select(func.count()).select_from(security_settings).where(t.account_locked_until > now)
            ).scalar()
            failing = conn.execute(
                select(func.count()).select_from(security_settings).where(t.failed_login_attempts > 0)
            ).scalar()
            two_factor = conn.execute(
                select(func.count()).select_from(security_settings).where(t.two_factor_enabled == 1)
            ).scalar()
        return {
            "locked_accounts": locked or 0,
            "accounts_with_failed_logins": failing or 0,
            "two_factor_users": two_factor or 0,
        }


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password,
        role=row.role,
        is_active=bool(row.is_active),
        is_online=bool(row.is_online),
        last_login=row.last_login,
        created_at=row.created_at,
    )


def _row_to_settings(row) -> SecuritySettings:
    return SecuritySettings(
        user_id=row.user_id,
        failed_login_attempts=row.failed_login_attempts,
        last_failed_login=from_iso(row.last_failed_login),
        account_locked_until=from_iso(row.account_locked_until),
        two_factor_enabled=bool(row.two_factor_enabled),
        email_notifications=bool(row.email_notifications),
        security_alerts=bool(row.security_alerts),
    )
