"""
notify/email.py -- Owned SMTP email client with a bounded send timeout.

EmailNotifier is constructed once in the API lifespan (start() on startup,
close() on shutdown) and passed to the services that need it. There is no
module-level transporter.

Timeout model:
  Delivery runs on the notifier's own thread pool. send() waits at most
  settings.email_send_timeout_seconds for the result, then returns False and
  lets delivery finish (or fail) in the background. A slow provider can
  therefore delay a login by at most the timeout, never indefinitely. The
  SMTP socket carries the same timeout so background workers are bounded too.
  Callers that must not reveal delivery time (password reset, lockout alerts)
  pass wait=False and return as soon as the message is queued.

Every delivery outcome is appended to email_logs ("sent" or "failed"). The
email rate limit in auth/ratelimit.py counts the "sent" rows.

Dev mode:
  When SMTP_HOST is not configured, emails are logged instead of sent and
  recorded as "sent" so rate limiting behaves the same as in production.

Layer rule: may import from core/. No imports from api/ or auth/.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from datetime import datetime
from email.message import EmailMessage

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from core.config import Settings
from core.db import email_logs, to_iso, utcnow
from notify.templates import render_alert, render_code

logger = logging.getLogger("gatekeeper.email")


def redact(email: str) -> str:
    """Redact an address for logging: 'alice@example.com' -> 'al***@example.com'."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailNotifier:
    """Send transactional email (verification codes, security alerts).

    Usage:
        notifier = EmailNotifier(settings, engine)
        notifier.start()
        notifier.send_verification_code(user_id, "a@x.io", "login_2fa", "12345678", 5)
        notifier.close()
    """

    def __init__(self, settings: Settings, engine: Engine, clock: Callable[[], datetime] = utcnow) -> None:
        self.settings = settings
        self.engine = engine
        self.timeout = settings.email_send_timeout_seconds
        self._clock = clock
        self._executor: ThreadPoolExecutor | None = None

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.smtp_host and self._from_email)

    @property
    def _from_email(self) -> str:
        return self.settings.smtp_from_email or self.settings.smtp_username

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.settings.email_workers, thread_name_prefix="email")
        if self.is_configured:
            logger.info("Email notifier started (smtp=%s:%d)", self.settings.smtp_host, self.settings.smtp_port)
        else:
            logger.warning("SMTP_HOST not configured -- emails will be logged, not sent")

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    def verify_connection(self) -> bool:
        """Open an SMTP connection and authenticate without sending. Checked once at startup."""
        if not self.is_configured:
            return False
        try:
            with self._connect() as server:
                server.noop()
            return True
        except (smtplib.SMTPException, OSError):
            logger.warning("SMTP connection check failed", exc_info=True)
            return False

    # ------------------------------------------------------------------
    # Public send API
    # ------------------------------------------------------------------

    def send_verification_code(
        self,
        user_id: int | None,
        email: str,
        purpose: str,
        code: str,
        expires_in_minutes: int,
        wait: bool = True,
    ) -> bool:
        subject, html_body = render_code(purpose, code, expires_in_minutes)
        return self.send(email, subject, html_body, purpose=purpose, user_id=user_id, wait=wait)

    def send_security_alert(
        self, user_id: int | None, email: str, alert_type: str, details: dict, wait: bool = True
    ) -> bool:
        subject, html_body = render_alert(alert_type, details)
        return self.send(email, subject, html_body, purpose="security_alert", user_id=user_id, wait=wait)

    def send(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        purpose: str,
        user_id: int | None = None,
        wait: bool = True,
    ) -> bool:
        """Deliver one email, waiting at most self.timeout seconds.

        Returns True when delivery completed within the timeout, False on
        failure or timeout. Never raises for delivery problems.

        With wait=False the message is queued and True is returned at once;
        the outcome is only visible in email_logs.
        """
        if self._executor is None:
            raise RuntimeError("EmailNotifier.start() must be called before sending")
        future = self._executor.submit(self._deliver, to_email, subject, html_body, purpose, user_id)
        if not wait:
            return True
        try:
            return future.result(timeout=self.timeout)
        except FuturesTimeout:
            logger.warning("Email to %s still pending after %.1fs; continuing without it", redact(to_email), self.timeout)
            return False

    # ------------------------------------------------------------------
    # Delivery (runs on the executor)
    # ------------------------------------------------------------------

    def _connect(self) -> smtplib.SMTP:
        cfg = self.settings
        context = ssl.create_default_context()
        if cfg.smtp_use_tls:
            server = smtplib.SMTP(cfg.smtp_host, cfg.smtp_port, timeout=self.timeout)
        else:
            server = smtplib.SMTP_SSL(cfg.smtp_host, cfg.smtp_port, context=context, timeout=self.timeout)
        # The socket is open from here on; close it if the handshake fails.
        try:
            if cfg.smtp_use_tls:
                server.starttls(context=context)
            if cfg.smtp_username and cfg.smtp_password:
                server.login(cfg.smtp_username, cfg.smtp_password)
        except Exception:
            server.close()
            raise
        return server

    def _deliver(self, to_email: str, subject: str, html_body: str, purpose: str, user_id: int | None) -> bool:
        if not self.is_configured:
            logger.info("email_dev_mode to=%s subject=%r", redact(to_email), subject)
            logger.debug("email_dev_mode body=%s", html_body)
            self._record(user_id, to_email, purpose, subject, "sent")
            return True

        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = f"{self.settings.smtp_from_name} <{self._from_email}>"
        msg["To"] = to_email
        msg.set_content("This message requires an HTML-capable mail client.")
        msg.add_alternative(html_body, subtype="html")

        try:
            with self._connect() as server:
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            # OSError covers socket timeouts, refused connections, and ssl.SSLError.
            logger.error("Email to %s failed: %s", redact(to_email), type(exc).__name__)
            self._record(user_id, to_email, purpose, subject, "failed", str(exc))
            return False

        logger.info("Email sent to %s (purpose=%s)", redact(to_email), purpose)
        self._record(user_id, to_email, purpose, subject, "sent")
        return True

    def _record(
        self,
        user_id: int | None,
        email: str,
        purpose: str,
        subject: str,
        status: str,
        error_message: str | None = None,
    ) -> None:
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    email_logs.insert().values(
                        user_id=user_id,
                        email=email.lower(),
                        purpose=purpose,
                        subject=subject[:255],
                        status=status,
                        error_message=error_message,
                        sent_at=to_iso(self._clock()),
                    )
                )
        except SQLAlchemyError:
            logger.warning("Could not record email log for %s", redact(email), exc_info=True)
