"""
auth/dependencies.py -- FastAPI Depends() helpers for bearer-session auth.

One auth method: Authorization: Bearer <token>, where the token is an
opaque session token minted by SessionManager.create_session().

  Missing or malformed header          -> 401 unauthorized
  Token present but unknown / expired  -> 403 invalid_session

The two cases are deliberately distinct: 401 tells the client to log in, 403
tells it that the credential it holds is no longer any good.

get_current_session() returns an AuthContext (user + session + raw token) so
logout and terminate-current can act on the presented session.
require_admin() wraps it and raises 403 if the user is not an admin.

Layer rule: may import from fastapi (Depends/HTTPException/Request) because
this module is part of the FastAPI dependency injection system. No imports
from api/ or notify/.
"""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import HTTPException, Request

from auth.models import Session, User


@dataclass
class AuthContext:
    user: User
    session: Session
    token: str


def client_meta(request: Request) -> tuple[str | None, str | None]:
    """Return (ip, user_agent) for activity logging and session records."""
    ip = request.client.host if request.client else None
    user_agent = request.headers.get("User-Agent")
    return ip, user_agent[:255] if user_agent else None


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_current_session(request: Request) -> AuthContext:
    """Require a valid bearer session.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(ctx: AuthContext = Depends(get_current_session)): ...
    """
    token = _bearer_token(request)
    if token is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )

    session = request.app.state.session_manager.validate_session(token)
    user = request.app.state.user_store.get_by_id(session.user_id) if session is not None else None
    if session is None or user is None or not user.is_active:
        raise HTTPException(
            status_code=403,
            detail={"code": "invalid_session", "message": "Session is invalid or has expired."},
        )
    return AuthContext(user=user, session=session, token=token)


def get_current_user(request: Request) -> User:
    return get_current_session(request).user


def require_admin(request: Request) -> User:
    """Require admin role. Raises HTTP 401/403 as above, or 403 if not admin."""
    user = get_current_user(request)
    if not user.is_admin:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return user
