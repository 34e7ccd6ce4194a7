"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services
do the work; these only own the domain shape.

Layer rule: no imports from api/ or notify/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class CodePurpose(str, Enum):
    """What a verification code proves. One live code per (email, purpose)."""

    registration = "registration"
    login_2fa = "login_2fa"
    password_reset = "password_reset"
    password_change = "password_change"
    admin_creation = "admin_creation"
    role_change = "role_change"
    security_alert = "security_alert"


@dataclass
class User:
    """A credential record from the credential store.

    hashed_password is a bcrypt hash. The core only writes last_login,
    is_online, and (on password reset) hashed_password.
    """

    username: str
    email: str
    hashed_password: str
    role: str = "user"  # "admin" | "user"
    id: int | None = None
    is_active: bool = True
    is_online: bool = False
    last_login: str | None = None
    created_at: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass
class SecuritySettings:
    """Per-user security state, 1:1 with User, created lazily with defaults."""

    user_id: int
    failed_login_attempts: int = 0
    last_failed_login: datetime | None = None
    account_locked_until: datetime | None = None
    two_factor_enabled: bool = False
    email_notifications: bool = True
    security_alerts: bool = True


@dataclass
class VerificationCode:
    email: str
    code: str
    purpose: CodePurpose
    created_at: datetime
    expires_at: datetime
    id: int | None = None
    user_id: int | None = None
    attempts: int = 0
    max_attempts: int = 3
    is_used: bool = False
    used_at: datetime | None = None


@dataclass
class IssuedCode:
    """Return value of create_code(). The raw code goes to the notifier only."""

    code: str
    expires_at: datetime


@dataclass
class Session:
    """A server-held bearer session. The raw token is never stored."""

    user_id: int
    token_hash: str
    created_at: datetime
    last_activity: datetime
    expires_at: datetime  # fixed at creation; activity does not extend it
    id: int | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    is_active: bool = True


@dataclass
class RateLimitStatus:
    allowed: bool
    remaining: int
    reset_time: datetime
