"""
core/db.py -- Shared SQLAlchemy Core schema and engine factory.

Uses SQLAlchemy Core (not ORM) so the dataclasses in auth/models.py remain
the authoritative domain representation. Swapping SQLite for PostgreSQL is a
connection string change, not a rewrite.

Every component of the auth core (credential store, code manager, lockout
guard, rate limiter, session manager, activity logger, email notifier) shares
one Engine built here. The schema lives in one place so that the tables the
rate limiter counts over (code_issuance_log, email_logs) are declared next to
the writers that append to them.

Timestamps:
  Stored as fixed-width UTC ISO-8601 text (microsecond precision, "+00:00"
  suffix). Fixed width means string comparison == chronological comparison,
  so window and expiry predicates (expires_at > :now) work as plain SQL on
  any backend.

Layer rule: core/ is the kernel. No imports from api/, auth/, or notify/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("role", String(30), nullable=False, server_default="user"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("is_online", Integer, nullable=False, server_default="0"),
    Column("last_login", String(32)),
    Column("created_at", String(32), nullable=False),
)

security_settings = Table(
    "user_security_settings",
    metadata,
    Column("user_id", Integer, primary_key=True),
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("last_failed_login", String(32)),
    Column("account_locked_until", String(32)),
    Column("two_factor_enabled", Integer, nullable=False, server_default="0"),
    Column("email_notifications", Integer, nullable=False, server_default="1"),
    Column("security_alerts", Integer, nullable=False, server_default="1"),
)

verification_codes = Table(
    "email_verification_codes",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer),  # owner; NULL for pre-registration codes
    Column("email", String(255), nullable=False),
    Column("code", String(8), nullable=False),
    Column("purpose", String(30), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("attempts", Integer, nullable=False, server_default="0"),
    Column("max_attempts", Integer, nullable=False, server_default="3"),
    Column("is_used", Integer, nullable=False, server_default="0"),
    Column("used_at", String(32)),
    Index("ix_codes_email_purpose", "email", "purpose"),
)

# Append-only. Code rows are purged on re-issue, so the code rate limit
# counts here instead of over email_verification_codes.
code_issuance_log = Table(
    "code_issuance_log",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False),
    Column("purpose", String(30), nullable=False),
    Column("created_at", String(32), nullable=False),
    Index("ix_issuance_email_purpose_created", "email", "purpose", "created_at"),
)

email_logs = Table(
    "email_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer),
    Column("email", String(255), nullable=False),
    Column("purpose", String(30), nullable=False),
    Column("subject", String(255), nullable=False),
    Column("status", String(10), nullable=False),  # "sent" | "failed"
    Column("error_message", Text),
    Column("sent_at", String(32), nullable=False),
    Index("ix_email_logs_email_purpose_sent", "email", "purpose", "sent_at"),
)

sessions = Table(
    "user_sessions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("created_at", String(32), nullable=False),
    Column("last_activity", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Index("ix_sessions_user_active", "user_id", "is_active"),
)

activity_logs = Table(
    "activity_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer),
    Column("action", String(100), nullable=False),
    Column("details", Text),  # JSON object serialized as text
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Serialize a datetime as fixed-width UTC ISO-8601 text.

    timespec="microseconds" keeps the width constant even when the
    microsecond field is zero, which isoformat() would otherwise omit.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_db_engine(db_url: str) -> Engine:
    """Build the shared Engine and create any missing tables.

    Usage:
        engine = create_db_engine("sqlite:///gatekeeper.db")
        engine = create_db_engine("postgresql://user:pw@host/db")
    """
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    metadata.create_all(engine)
    return engine
