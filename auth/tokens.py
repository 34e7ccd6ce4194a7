"""
auth/tokens.py -- Password hashing, session tokens, and verification codes.

Security design decisions:
  Passwords: bcrypt directly. Bcrypt is the right choice for low-entropy
       secrets (passwords) because its cost factor makes brute-force
       expensive. The _DUMMY_HASH constant enables timing equalization in
       the login flow so response time does not reveal whether a username
       exists [C1].

  Session tokens: secrets.token_hex(32) gives 256 bits of entropy --
       brute-force is computationally infeasible. We store
       HMAC-SHA256(SECRET_KEY, raw_token) so lookup is O(1) and a leaked
       sessions table cannot be replayed as bearer tokens.

  Verification codes: 8 digits drawn from secrets.randbelow over
       [10000000, 99999999]. Short-lived and attempt-capped, so the small
       keyspace is acceptable.

  SECRET_KEY: sourced from core.config.get_settings(). See core/config.py
       for the startup policy [M6] [M7].

Layer rule: no imports from api/ or notify/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets

import bcrypt

from core.config import get_settings

logger = logging.getLogger("gatekeeper.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_CODE_MIN = 10_000_000
_CODE_MAX = 99_999_999

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are silently truncated by bcrypt. The API
    layer caps password fields at 128 characters.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash -- treat as a mismatch, never as a match.
        logger.warning("Stored password hash is malformed")
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("gatekeeper_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run a bcrypt comparison whose result is discarded.

    Called for unknown usernames so that "no such user" costs the same as
    "wrong password" [C1].
    """
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------


def generate_session_token() -> str:
    """Return a 64-hex-char opaque bearer token (256 bits of entropy)."""
    return secrets.token_hex(32)


def hash_session_token(raw_token: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_token) as a hex string.

    Deterministic, so the session store can look tokens up by UNIQUE index.
    """
    return hmac.new(
        _settings.secret_key.encode(),
        raw_token.encode(),
        hashlib.sha256,
    ).hexdigest()


# ---------------------------------------------------------------------------
# Verification codes
# ---------------------------------------------------------------------------


def generate_verification_code() -> str:
    """Return an 8-digit numeric code from a CSPRNG."""
    return str(_CODE_MIN + secrets.randbelow(_CODE_MAX - _CODE_MIN + 1))


def codes_match(submitted: str, stored: str) -> bool:
    """Constant-time comparison of a submitted code against the stored one."""
    return hmac.compare_digest(submitted.encode(), stored.encode())
