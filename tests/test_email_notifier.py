"""Unit tests for notify/email.py and notify/templates.py.

Covers:
- dev mode (no SMTP_HOST) logs instead of sending and records a "sent" row
- configured SMTP: success records "sent", SMTP errors record "failed",
  a failed STARTTLS or login closes the socket
- send() returns False once the timeout elapses, without raising
- send(wait=False) queues the message and returns at once
- send() before start() is a programming error
- templates escape interpolated values and reject unknown purposes
"""

from __future__ import annotations

import smtplib
import threading
import time
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import select

from core.config import Settings
from core.db import email_logs
from notify.email import EmailNotifier, redact
from notify.templates import render_alert, render_code

_SECRET = "k" * 40


def _settings(**overrides) -> Settings:
    values = {"debug": True, "secret_key": _SECRET, "email_send_timeout_seconds": 2.0}
    values.update(overrides)
    return Settings(**values)


def _logged(engine) -> list[tuple[str, str, str]]:
    with engine.connect() as conn:
        rows = conn.execute(select(email_logs.c.email, email_logs.c.purpose, email_logs.c.status)).fetchall()
    return [tuple(r) for r in rows]


@pytest.fixture
def dev_notifier(engine, clock):
    notifier = EmailNotifier(_settings(smtp_host=""), engine, clock=clock)
    notifier.start()
    yield notifier
    notifier.close()


@pytest.fixture
def smtp_notifier(engine, clock):
    notifier = EmailNotifier(
        _settings(smtp_host="smtp.example.com", smtp_from_email="noreply@example.com", smtp_use_tls=True),
        engine,
        clock=clock,
    )
    notifier.start()
    yield notifier
    notifier.close()


class TestDevMode:
    def test_not_configured(self, dev_notifier) -> None:
        assert dev_notifier.is_configured is False
        assert dev_notifier.verify_connection() is False

    def test_logs_and_records_sent(self, dev_notifier, engine) -> None:
        assert dev_notifier.send_verification_code(1, "Alice@Example.com", "registration", "12345678", 10) is True
        assert _logged(engine) == [("alice@example.com", "registration", "sent")]

    def test_security_alert_purpose(self, dev_notifier, engine) -> None:
        dev_notifier.send_security_alert(1, "a@example.com", "multiple_failed_logins", {"attempts": 5})
        assert _logged(engine) == [("a@example.com", "security_alert", "sent")]


class TestSmtpDelivery:
    def test_success(self, smtp_notifier, engine) -> None:
        with patch("notify.email.smtplib.SMTP") as smtp_cls:
            server = smtp_cls.return_value
            server.__enter__.return_value = server
            assert smtp_notifier.send_verification_code(2, "b@example.com", "login_2fa", "87654321", 5) is True

        smtp_cls.assert_called_once_with("smtp.example.com", 587, timeout=2.0)
        server.starttls.assert_called_once()
        message = server.send_message.call_args.args[0]
        assert message["To"] == "b@example.com"
        assert "87654321" in message.get_body(preferencelist=("html",)).get_content()
        assert _logged(engine) == [("b@example.com", "login_2fa", "sent")]

    def test_smtp_error_records_failure(self, smtp_notifier, engine) -> None:
        with patch("notify.email.smtplib.SMTP", side_effect=smtplib.SMTPConnectError(421, b"busy")):
            assert smtp_notifier.send_verification_code(2, "b@example.com", "login_2fa", "87654321", 5) is False
        assert _logged(engine) == [("b@example.com", "login_2fa", "failed")]

    def test_network_error_records_failure(self, smtp_notifier, engine) -> None:
        with patch("notify.email.smtplib.SMTP", side_effect=ConnectionRefusedError()):
            assert smtp_notifier.send_security_alert(2, "b@example.com", "multiple_failed_logins", {}) is False
        assert _logged(engine)[0][2] == "failed"

    def test_failed_starttls_closes_socket(self, smtp_notifier, engine) -> None:
        with patch("notify.email.smtplib.SMTP") as smtp_cls:
            server = smtp_cls.return_value
            server.starttls.side_effect = smtplib.SMTPNotSupportedError("STARTTLS extension not supported")
            assert smtp_notifier.send_verification_code(2, "b@example.com", "login_2fa", "87654321", 5) is False

        server.close.assert_called_once()
        server.send_message.assert_not_called()
        assert _logged(engine) == [("b@example.com", "login_2fa", "failed")]

    def test_failed_login_closes_socket(self, engine, clock) -> None:
        notifier = EmailNotifier(
            _settings(
                smtp_host="smtp.example.com",
                smtp_from_email="noreply@example.com",
                smtp_username="mailer",
                smtp_password="wrong",
                smtp_use_tls=False,
            ),
            engine,
            clock=clock,
        )
        notifier.start()
        try:
            with patch("notify.email.smtplib.SMTP_SSL") as smtp_cls:
                server = smtp_cls.return_value
                server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad credentials")
                assert notifier.send_security_alert(2, "b@example.com", "multiple_failed_logins", {}) is False
        finally:
            notifier.close()

        server.close.assert_called_once()
        assert _logged(engine)[0][2] == "failed"


class TestTimeout:
    def test_slow_provider_returns_false(self, engine, clock) -> None:
        notifier = EmailNotifier(_settings(smtp_host="", email_send_timeout_seconds=0.05), engine, clock=clock)
        notifier.start()
        release = threading.Event()
        try:
            with patch.object(notifier, "_deliver", side_effect=lambda *a: release.wait(5) or True):
                assert notifier.send("c@example.com", "s", "<p>x</p>", purpose="registration") is False
        finally:
            release.set()
            notifier.close()

    def test_send_without_wait_returns_at_once(self, engine, clock) -> None:
        notifier = EmailNotifier(_settings(smtp_host="", email_send_timeout_seconds=2.0), engine, clock=clock)
        notifier.start()
        delivering = threading.Event()
        release = threading.Event()

        def _slow(*args):
            delivering.set()
            release.wait(5)
            return True

        try:
            with patch.object(notifier, "_deliver", side_effect=_slow):
                started = time.perf_counter()
                assert notifier.send_security_alert(1, "c@example.com", "multiple_failed_logins", {}, wait=False) is True
                assert time.perf_counter() - started < 0.5
                assert delivering.wait(2)
        finally:
            release.set()
            notifier.close()

    def test_send_requires_start(self, engine) -> None:
        notifier = EmailNotifier(_settings(), engine)
        with pytest.raises(RuntimeError):
            notifier.send("c@example.com", "s", "<p>x</p>", purpose="registration")


class TestTemplates:
    def test_code_template(self) -> None:
        subject, body = render_code("password_reset", "12345678", 10)
        assert "Password reset" in subject
        assert "12345678" in body and "10 minutes" in body

    def test_alert_values_are_escaped(self) -> None:
        _subject, body = render_alert("multiple_failed_logins", {"ip_address": "<script>"})
        assert "<script>" not in body
        assert "&lt;script&gt;" in body

    def test_unknown_purpose(self) -> None:
        with pytest.raises(KeyError):
            render_code("not_a_purpose", "12345678", 10)

    def test_redact(self) -> None:
        assert redact("alice@example.com") == "al***@example.com"
        assert redact("garbage") == "redacted"


def test_verify_connection_reports_failure(engine) -> None:
    notifier = EmailNotifier(_settings(smtp_host="smtp.example.com", smtp_from_email="n@example.com"), engine)
    with patch("notify.email.smtplib.SMTP", side_effect=OSError("unreachable")):
        assert notifier.verify_connection() is False
    with patch("notify.email.smtplib.SMTP", MagicMock()):
        assert notifier.verify_connection() is True
