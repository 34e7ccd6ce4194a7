"""
API request and response models for Gatekeeper REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Shape and format are enforced here, before any store access: a malformed
email, a code that is not exactly 8 digits, or an unknown settings field is
rejected with 422 by the RequestValidationError handler in api/main.py.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import User

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CODE_PATTERN = r"^\d{8}$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


def _normalize_email(value: str) -> str:
    return str(value).strip().lower()


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class PublicCodeType(str, Enum):
    """Code purposes a client may request directly.

    login_2fa and password_reset codes are only minted by their own flows.
    """

    registration = "registration"
    password_change = "password_change"
    admin_creation = "admin_creation"
    role_change = "role_change"
    security_alert = "security_alert"


class VerifyCodeType(str, Enum):
    registration = "registration"
    login_2fa = "login_2fa"
    password_reset = "password_reset"
    password_change = "password_change"
    admin_creation = "admin_creation"
    role_change = "role_change"
    security_alert = "security_alert"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    username: str = Field(min_length=1, max_length=64)
    password: str = Field(min_length=1, max_length=128)


class CompleteTwoFactorRequest(BaseModel):
    """Request body for POST /api/v1/auth/complete-2fa."""

    model_config = ConfigDict(str_strip_whitespace=True)

    user_id: int = Field(gt=0)
    code: str = Field(pattern=CODE_PATTERN)


class _EmailBody(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=254, pattern=EMAIL_PATTERN)

    @field_validator("email", mode="after")
    @classmethod
    def lowercase_email(cls, value: str) -> str:
        return _normalize_email(value)


class PasswordResetRequest(_EmailBody):
    """Request body for POST /api/v1/auth/request-password-reset."""


class PasswordResetComplete(_EmailBody):
    """Request body for POST /api/v1/auth/reset-password."""

    code: str = Field(pattern=CODE_PATTERN)
    new_password: str = Field(min_length=8, max_length=128)


class SendCodeRequest(_EmailBody):
    """Request body for POST /api/v1/email/send-verification-code."""

    type: PublicCodeType


class VerifyCodeRequest(_EmailBody):
    """Request body for POST /api/v1/email/verify-code."""

    code: str = Field(pattern=CODE_PATTERN)
    type: VerifyCodeType


class SecuritySettingsPatch(BaseModel):
    """Request body for PATCH /api/v1/security/settings.

    Closed field set: anything else is a 422, never silently ignored.
    """

    model_config = ConfigDict(extra="forbid")

    two_factor_enabled: Optional[bool] = None
    email_notifications: Optional[bool] = None
    security_alerts: Optional[bool] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a credential record. Never carries the password hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: str
    role: str
    is_active: bool
    last_login: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            role=user.role,
            is_active=user.is_active,
            last_login=user.last_login,
        )


class LoginResponse(BaseModel):
    """Session issued: returned by login (2FA off) and complete-2fa."""

    model_config = ConfigDict(frozen=True)

    token: str
    token_type: str = "bearer"
    expires_at: str
    user: UserResponse


class TwoFactorRequiredResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    requires_2fa: bool = True
    user_id: int


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class SendCodeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str = "Verification code sent."
    expires_in: int = Field(description="Code lifetime in seconds.")


class VerifyCodeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    valid: bool = True
    user_id: Optional[int] = None


class SessionResponse(BaseModel):
    """One session as shown to its owner. The token hash is never exposed."""

    model_config = ConfigDict(frozen=True)

    id: int
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: str
    last_activity: str
    expires_at: str
    is_current: bool = False


class AdminSessionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: int
    username: str
    ip_address: Optional[str]
    user_agent: Optional[str]
    is_active: bool
    created_at: str
    last_activity: str
    expires_at: str


class SessionStatsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_sessions: int
    active_sessions: int
    terminated_sessions: int
    expired_sessions: int


class TerminatedResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    terminated: int


class SecuritySettingsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    two_factor_enabled: bool
    email_notifications: bool
    security_alerts: bool
    failed_login_attempts: int
    account_locked_until: Optional[str] = None


class ActivityEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: Optional[int]
    action: str
    details: Optional[dict] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: str


class VerificationStatsRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    purpose: str
    total_codes: int
    used_codes: int
    expired_codes: int
    max_attempts_exceeded: int


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
