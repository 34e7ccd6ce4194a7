"""
api/routes/v1/auth.py -- Login, 2FA, logout, and password-reset endpoints.

Routes:
  POST /api/v1/auth/login                   -- password login; session token or 2FA challenge
  POST /api/v1/auth/complete-2fa            -- second step; session token
  POST /api/v1/auth/logout                  -- end the presented session (requires auth)
  GET  /api/v1/auth/me                      -- current user info (requires auth)
  POST /api/v1/auth/request-password-reset  -- always the same 200
  POST /api/v1/auth/reset-password          -- consume reset code, set new password

Security:
  [H2] POST /login and /complete-2fa are rate-limited per IP (LOGIN_RATE_LIMIT).
  [C1] LoginOrchestrator.login() provides timing equalization -- never inline
       get_by_username() + verify_password() here.
  [M5] Cache-Control: no-store on every response that carries a token.
  Denials are raised as core.errors.AuthError subclasses and rendered by the
  AuthError handler in api/main.py.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import LOGIN_LIMIT, limiter
from api.models import (
    CompleteTwoFactorRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    PasswordResetComplete,
    PasswordResetRequest,
    TwoFactorRequiredResponse,
    UserResponse,
)
from auth.dependencies import AuthContext, client_meta, get_current_session, get_current_user
from auth.login import Authenticated, LoginOrchestrator, PendingTwoFactor
from auth.models import User
from core.db import to_iso

# Auth policy:
# - POST /api/v1/auth/login:                  public
# - POST /api/v1/auth/complete-2fa:           public (holder of the emailed code)
# - POST /api/v1/auth/request-password-reset: public
# - POST /api/v1/auth/reset-password:         public (holder of the emailed code)
# - POST /api/v1/auth/logout:                 requires auth (get_current_session)
# - GET  /api/v1/auth/me:                     requires auth (get_current_user)
router = APIRouter()

_RESET_MESSAGE = "If an account with that email exists, a password reset code has been sent."


def _session_response(result: Authenticated) -> JSONResponse:
    resp = JSONResponse(
        content=LoginResponse(
            token=result.token,
            expires_at=to_iso(result.expires_at),
            user=UserResponse.from_user(result.user),
        ).model_dump()
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(LOGIN_LIMIT)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login")
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password.

    200 {token, token_type, expires_at, user} when 2FA is off,
    200 {requires_2fa: true, user_id} when a code was sent instead.
    Unknown username and wrong password produce the same 401.
    """
    orchestrator: LoginOrchestrator = request.app.state.login
    ip, user_agent = client_meta(request)
    result = orchestrator.login(body.username, body.password, ip=ip, user_agent=user_agent)
    if isinstance(result, PendingTwoFactor):
        resp = JSONResponse(content=TwoFactorRequiredResponse(user_id=result.user_id).model_dump())
        resp.headers["Cache-Control"] = "no-store"
        return resp
    return _session_response(result)


@limiter.limit(LOGIN_LIMIT)
@router.post("/auth/complete-2fa", response_model=LoginResponse)
def complete_two_factor(request: Request, body: CompleteTwoFactorRequest) -> JSONResponse:
    """Exchange the emailed login_2fa code for a session token."""
    orchestrator: LoginOrchestrator = request.app.state.login
    ip, user_agent = client_meta(request)
    result = orchestrator.complete_two_factor(body.user_id, body.code, ip=ip, user_agent=user_agent)
    return _session_response(result)


@router.post("/auth/request-password-reset", response_model=MessageResponse)
def request_password_reset(request: Request, body: PasswordResetRequest) -> MessageResponse:
    """Send a reset code if the email is registered. The response never says which."""
    orchestrator: LoginOrchestrator = request.app.state.login
    ip, user_agent = client_meta(request)
    orchestrator.request_password_reset(body.email, ip=ip, user_agent=user_agent)
    return MessageResponse(message=_RESET_MESSAGE)


@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(request: Request, body: PasswordResetComplete) -> MessageResponse:
    """Set a new password with a password_reset code. Ends every existing session."""
    orchestrator: LoginOrchestrator = request.app.state.login
    orchestrator.complete_password_reset(body.email, body.code, body.new_password)
    return MessageResponse(message="Password has been reset. Please log in again.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, ctx: AuthContext = Depends(get_current_session)) -> MessageResponse:
    """Deactivate the session that made this request."""
    orchestrator: LoginOrchestrator = request.app.state.login
    ip, user_agent = client_meta(request)
    orchestrator.logout(ctx.token, ctx.user.id, ip=ip, user_agent=user_agent)
    return MessageResponse(message="Logged out.")


@router.get("/auth/me", response_model=UserResponse)
def me(current_user: User = Depends(get_current_user)) -> UserResponse:
    """Return identity information for the currently authenticated user."""
    return UserResponse.from_user(current_user)
