"""
core/errors.py -- Domain error taxonomy for the authentication core.

Every denial the core can produce is an AuthError subclass carrying a stable
machine-readable code, a client-safe message, and the HTTP status the API
layer maps it to. api/main.py registers one exception handler for AuthError,
so services raise and routes stay thin.

Messages are deliberately non-specific: they must never reveal whether a
username or email exists, whether a submitted password was correct on a
locked account, or whether an email was delivered.

Layer rule: core/ is the kernel. No imports from api/, auth/, or notify/.
"""

from __future__ import annotations

from datetime import datetime


class AuthError(Exception):
    """Base class for every client-visible authentication failure."""

    code = "auth_error"
    status_code = 400
    message = "Request could not be completed."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)
        if message:
            self.message = message


class InvalidCredentials(AuthError):
    # Same code, status, and message for unknown username and wrong password.
    code = "invalid_credentials"
    status_code = 401
    message = "Invalid username or password."


class AccountLocked(AuthError):
    code = "account_locked"
    status_code = 423
    message = "Account temporarily locked due to repeated failed logins. Try again later."


class CodeInvalidOrExpired(AuthError):
    code = "code_invalid"
    status_code = 400
    message = "Invalid or expired code."


class MaxAttemptsExceeded(AuthError):
    code = "max_attempts_exceeded"
    status_code = 400
    message = "Maximum attempts exceeded. Request a new code."


class RateLimited(AuthError):
    code = "rate_limited"
    status_code = 429
    message = "Too many requests. Please try again later."

    def __init__(self, reset_time: datetime, message: str | None = None) -> None:
        super().__init__(message)
        self.reset_time = reset_time


class ValidationError(AuthError):
    code = "validation_error"
    status_code = 422
    message = "Request validation failed."


class InternalError(AuthError):
    code = "internal_error"
    status_code = 500
    message = "An unexpected error occurred."
