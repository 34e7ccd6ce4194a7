"""
core/config.py -- Gatekeeper settings, read from the environment and .env.

Every tunable of the auth core lives here: lockout threshold and duration,
code lifetimes and attempt cap, the durable rate-limit windows, session TTL
and per-user cap, SMTP, and the send timeout. Nothing else reads os.environ;
modules call get_settings(), which builds Settings once and caches it.

SECRET_KEY keys the HMAC under which session tokens are stored:
  [M6] Keys shorter than 32 characters are rejected.
  [M7] Production (DEBUG unset or false) refuses to start without one. A
       generated key would orphan every stored session hash on restart.
       DEBUG=true generates a throwaway key and logs a warning.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or notify/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("gatekeeper.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'gatekeeper.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    allowed_hosts: list[str] = Field(default_factory=lambda: ["localhost", "127.0.0.1", "*.localhost", "testserver"])
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost", "http://localhost:3000"])

    # ------------------------------------------------------------------
    # Lockout
    # ------------------------------------------------------------------

    max_failed_attempts: int = Field(default=5, ge=1)
    lockout_duration_minutes: int = Field(default=30, ge=1)

    # ------------------------------------------------------------------
    # Verification codes
    # ------------------------------------------------------------------

    verification_code_expiry_minutes: int = Field(default=10, ge=1)
    login_2fa_code_expiry_minutes: int = Field(default=5, ge=1)
    code_max_attempts: int = Field(default=3, ge=1)

    # ------------------------------------------------------------------
    # Rate limiting
    #
    # login_rate_limit is the slowapi per-IP limit (in-process, coarse).
    # The email/code windows are durable COUNT(*) windows in the database
    # and hold across server processes.
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    email_rate_limit_window_minutes: int = Field(default=15, ge=1)
    email_rate_limit_max: int = Field(default=10, ge=1)
    code_rate_limit_window_minutes: int = Field(default=5, ge=1)
    code_rate_limit_max: int = Field(default=3, ge=1)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    # Fixed lifetime from creation. Activity never extends it.
    session_ttl_hours: int = Field(default=24, ge=1)
    max_sessions_per_user: int = Field(default=5, ge=1)

    # ------------------------------------------------------------------
    # Email (SMTP). Empty smtp_host = dev mode: emails are logged, not sent.
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    smtp_from_email: str = ""
    smtp_from_name: str = "Gatekeeper"
    # Upper bound on how long a request waits for the SMTP provider.
    email_send_timeout_seconds: float = Field(default=10.0, gt=0)
    email_workers: int = Field(default=4, ge=1)

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Stored session hashes will not survive restart -- acceptable
            for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Sessions will not persist across restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the cached Settings. Tests that change the environment call get_settings.cache_clear()."""
    return Settings()
