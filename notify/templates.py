"""
notify/templates.py -- Subject and HTML body per email purpose.

Copy is intentionally minimal; only the structure matters to the core.
All interpolated values are HTML-escaped.
"""

from __future__ import annotations

import html

_APP = "Gatekeeper"

_CODE_TEMPLATES: dict[str, tuple[str, str]] = {
    "registration": ("Complete your registration", "Use this code to complete your registration."),
    "login_2fa": ("Your sign-in code", "Someone is signing in to your account. If this was you, enter this code."),
    "password_reset": ("Password reset code", "Use this code to reset your password."),
    "password_change": ("Password change code", "Use this code to confirm your password change."),
    "admin_creation": ("Admin account created", "Use this code to finish setting up your admin account."),
    "role_change": ("Confirm role change", "Use this code to confirm the change to your account role."),
    "security_alert": ("Security check", "Use this code to confirm it was you."),
}

_ALERT_TEMPLATES: dict[str, tuple[str, str]] = {
    "multiple_failed_logins": (
        "Multiple failed sign-in attempts",
        "Your account was temporarily locked after repeated failed sign-in attempts.",
    ),
    "suspicious_activity": ("Suspicious activity detected", "We noticed unusual activity on your account."),
}


def _wrap(headline: str, body: str) -> str:
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        f"<h2>{html.escape(headline)}</h2>{body}"
        f'<p style="color: #666; font-size: 12px;">Automated message from {_APP}.</p></div>'
    )


def render_code(purpose: str, code: str, expires_in_minutes: int) -> tuple[str, str]:
    """Return (subject, html) for a verification code email.

    Raises KeyError for an unknown purpose.
    """
    subject, intro = _CODE_TEMPLATES[purpose]
    body = (
        f"<p>{html.escape(intro)}</p>"
        f'<h1 style="letter-spacing: 4px;">{html.escape(code)}</h1>'
        f"<p>This code expires in {int(expires_in_minutes)} minutes. "
        "If you did not request it, you can ignore this email.</p>"
    )
    return f"{subject} - {_APP}", _wrap(subject, body)


def render_alert(alert_type: str, details: dict) -> tuple[str, str]:
    """Return (subject, html) for a security alert. Raises KeyError for an unknown type."""
    subject, intro = _ALERT_TEMPLATES[alert_type]
    items = "".join(
        f"<li>{html.escape(str(k).replace('_', ' ').title())}: {html.escape(str(v))}</li>"
        for k, v in sorted(details.items())
    )
    body = (
        f"<p>{html.escape(intro)}</p><ul>{items}</ul>"
        "<p>If this was not you, change your password as soon as you can sign in again.</p>"
    )
    return f"{subject} - {_APP}", _wrap("Security alert", body)
