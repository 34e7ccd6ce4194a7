"""
auth/login.py -- Login / 2FA / password-reset state machine.

Composes the leaf services into the end-to-end flows. Every dependency is
injected; this module owns no storage of its own.

Login:
  START -> CHECK_LOCK -> CHECK_PASSWORD -> [PENDING_2FA -> CHECK_CODE] -> SESSION_ISSUED

  1. Unknown or inactive username: burn a bcrypt check against a dummy hash,
     then InvalidCredentials. Same status, message, and cost as a wrong
     password [C1].
  2. Locked account: AccountLocked, before the password is looked at.
  3. Wrong password: record_failed_login, then InvalidCredentials.
  4. Right password: reset_failed_logins.
  5. 2FA enabled: mint a login_2fa code (code rate limit applies), hand it to
     the notifier, return PendingTwoFactor. No session yet.
  6. Otherwise: create_session, stamp last_login, return Authenticated.

Side channels (notifier, activity log) are best-effort. A notifier that
raises or times out is logged and the flow carries on; the caller never
learns whether an email was delivered.

Layer rule: no imports from api/. Services are injected by api/main.py.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from auth.models import CodePurpose, IssuedCode, User
from auth.tokens import burn_password_check, hash_password, verify_password
from core.config import Settings
from core.errors import AccountLocked, CodeInvalidOrExpired, InvalidCredentials, RateLimited

if TYPE_CHECKING:
    from auth.activity import ActivityLogger
    from auth.codes import VerificationCodeManager
    from auth.lockout import LockoutGuard
    from auth.ratelimit import RateLimiter
    from auth.sessions import SessionManager
    from auth.store import UserStore
    from notify.email import EmailNotifier

logger = logging.getLogger("gatekeeper.login")


@dataclass
class Authenticated:
    token: str
    user: User
    expires_at: datetime


@dataclass
class PendingTwoFactor:
    user_id: int


class LoginOrchestrator:
    """Drive the login, two-factor, and password-reset flows.

    Usage:
        result = orchestrator.login("alice", "pw", ip="203.0.113.7", user_agent="curl/8.0")
        if isinstance(result, PendingTwoFactor):
            result = orchestrator.complete_two_factor(result.user_id, "12345678")
    """

    def __init__(
        self,
        users: UserStore,
        lockout: LockoutGuard,
        codes: VerificationCodeManager,
        rate_limiter: RateLimiter,
        sessions: SessionManager,
        notifier: EmailNotifier | None,
        activity: ActivityLogger,
        settings: Settings,
    ) -> None:
        self.users = users
        self.lockout = lockout
        self.codes = codes
        self.rate_limiter = rate_limiter
        self.sessions = sessions
        self.notifier = notifier
        self.activity = activity
        self.settings = settings

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(
        self,
        username: str,
        password: str,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> Authenticated | PendingTwoFactor:
        user = self.users.get_by_username(username)
        if user is None or not user.is_active:
            burn_password_check(password)
            self.activity.log(None, "login_failed", {"reason": "unknown_user"}, ip, user_agent)
            raise InvalidCredentials()

        if self.lockout.is_locked(user.id):
            self.activity.log(user.id, "login_blocked_locked", None, ip, user_agent)
            raise AccountLocked()

        if not verify_password(password, user.hashed_password):
            attempts = self.lockout.record_failed_login(user.id, ip)
            self.activity.log(user.id, "login_failed", {"reason": "bad_password", "attempts": attempts}, ip, user_agent)
            raise InvalidCredentials()

        self.lockout.reset_failed_logins(user.id)

        if self.users.get_security_settings(user.id).two_factor_enabled:
            self._issue_code(user.email, CodePurpose.login_2fa, owner_id=user.id)
            self.activity.log(user.id, "login_2fa_pending", None, ip, user_agent)
            return PendingTwoFactor(user_id=user.id)

        return self._issue_session(user, ip, user_agent, "user_login")

    def complete_two_factor(
        self,
        user_id: int,
        code: str,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> Authenticated:
        """Second login step. Surfaces the code manager's error unchanged on failure."""
        user = self.users.get_by_id(user_id)
        if user is None or not user.is_active:
            raise CodeInvalidOrExpired()
        if self.lockout.is_locked(user.id):
            raise AccountLocked()

        owner_id = self.codes.verify_code(user.email, code, CodePurpose.login_2fa)
        if owner_id != user.id:
            raise CodeInvalidOrExpired()
        return self._issue_session(user, ip, user_agent, "user_login_2fa")

    def logout(self, token: str, user_id: int, ip: str | None = None, user_agent: str | None = None) -> None:
        """Deactivate the presented session; the user goes offline when none remain."""
        self.sessions.terminate_session(token)
        if self.sessions.count_active_sessions(user_id) == 0:
            self.users.set_offline(user_id)
        self.activity.log(user_id, "user_logout", None, ip, user_agent)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str, ip: str | None = None, user_agent: str | None = None) -> None:
        """Start a reset. Returns nothing and raises nothing for unknown emails.

        A rate-limited request is dropped silently and the email is queued
        without waiting on delivery, so neither the body nor the response time
        tells a registered address from an unknown one.
        """
        user = self.users.get_by_email(email)
        if user is None or not user.is_active:
            logger.info("Password reset requested for an unregistered address")
            return
        try:
            self._issue_code(user.email, CodePurpose.password_reset, owner_id=user.id, wait=False)
        except RateLimited:
            logger.info("Password reset for user %s dropped by rate limit", user.id)
            return
        self.activity.log(user.id, "password_reset_requested", None, ip, user_agent)

    def complete_password_reset(self, email: str, code: str, new_password: str) -> None:
        """Set a new password, clear any lock, and end every session of the user."""
        owner_id = self.codes.verify_code(email, code, CodePurpose.password_reset)
        user = self.users.get_by_email(email)
        if user is None or owner_id != user.id:
            raise CodeInvalidOrExpired()

        self.users.update_user(user.id, hashed_password=hash_password(new_password))
        self.lockout.unlock_account(user.id)
        ended = self.sessions.terminate_all_user_sessions(user.id)
        self.users.set_offline(user.id)
        self.activity.log(user.id, "password_reset_completed", {"sessions_terminated": ended})
        logger.info("Password reset completed for user %s (%d sessions ended)", user.id, ended)

    # ------------------------------------------------------------------
    # Public email-code endpoints
    # ------------------------------------------------------------------

    def send_verification_code(self, email: str, purpose: CodePurpose) -> IssuedCode:
        """Mint and send a code for `purpose`. Raises RateLimited when either limit is spent.

        The owner id is taken from the account registered to `email`, if any.
        """
        purpose = CodePurpose(purpose)
        status = self.rate_limiter.check_email_rate_limit(email, purpose)
        if not status.allowed:
            raise RateLimited(status.reset_time)
        user = self.users.get_by_email(email)
        return self._issue_code(email, purpose, owner_id=user.id if user else None)

    def verify_code(self, email: str, code: str, purpose: CodePurpose) -> int | None:
        return self.codes.verify_code(email, code, CodePurpose(purpose))

    def code_ttl_minutes(self, purpose: CodePurpose) -> int:
        if purpose == CodePurpose.login_2fa:
            return self.settings.login_2fa_code_expiry_minutes
        return self.settings.verification_code_expiry_minutes

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _issue_code(
        self, email: str, purpose: CodePurpose, owner_id: int | None, wait: bool = True
    ) -> IssuedCode:
        status = self.rate_limiter.check_code_rate_limit(email, purpose)
        if not status.allowed:
            raise RateLimited(status.reset_time)

        ttl = self.code_ttl_minutes(purpose)
        issued = self.codes.create_code(email, purpose, ttl, owner_id=owner_id)
        if self.notifier is not None:
            try:
                delivered = self.notifier.send_verification_code(
                    owner_id, email, purpose.value, issued.code, ttl, wait=wait
                )
            except Exception:
                logger.warning("Verification email (purpose=%s) raised; code stays valid", purpose.value, exc_info=True)
            else:
                if not delivered:
                    logger.warning("Verification email (purpose=%s) not confirmed delivered", purpose.value)
        return issued

    def _issue_session(self, user: User, ip: str | None, user_agent: str | None, action: str) -> Authenticated:
        token = self.sessions.create_session(user.id, ip, user_agent)
        expires_at = self.sessions.session_expiry(token)
        self.users.update_last_login(user.id)
        self.activity.log(user.id, action, None, ip, user_agent)
        logger.info("Session issued for user %s", user.id)
        return Authenticated(token=token, user=self.users.get_by_id(user.id) or user, expires_at=expires_at)
