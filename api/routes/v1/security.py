"""
api/routes/v1/security.py -- Session management and security settings.

Routes (authenticated):
  GET   /api/v1/security/sessions                      -- caller's active sessions
  POST  /api/v1/security/sessions/terminate-current    -- end the presented session
  POST  /api/v1/security/sessions/terminate-all        -- end every session of the caller
  GET   /api/v1/security/settings                      -- caller's security settings
  PATCH /api/v1/security/settings                      -- closed field set; unknown fields -> 422

Routes (admin only):
  GET   /api/v1/security/sessions/all                  -- every session, newest activity first
  GET   /api/v1/security/sessions/statistics
  POST  /api/v1/security/sessions/{session_id}/terminate
  POST  /api/v1/security/users/{user_id}/unlock
  GET   /api/v1/security/activity                      -- newest audit events, optionally for one user

Static paths (/sessions/all, /sessions/statistics) are registered before the
parameterised /sessions/{session_id}/terminate so they are never captured by it.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from api.models import (
    ActivityEntry,
    AdminSessionResponse,
    MessageResponse,
    SecuritySettingsPatch,
    SecuritySettingsResponse,
    SessionResponse,
    SessionStatsResponse,
    TerminatedResponse,
)
from auth.activity import ActivityLogger
from auth.dependencies import AuthContext, client_meta, get_current_session, get_current_user, require_admin
from auth.lockout import LockoutGuard
from auth.models import SecuritySettings, User
from auth.sessions import SessionManager
from auth.store import UserStore
from core.db import to_iso

router = APIRouter()


def _settings_response(settings: SecuritySettings) -> SecuritySettingsResponse:
    return SecuritySettingsResponse(
        two_factor_enabled=settings.two_factor_enabled,
        email_notifications=settings.email_notifications,
        security_alerts=settings.security_alerts,
        failed_login_attempts=settings.failed_login_attempts,
        account_locked_until=to_iso(settings.account_locked_until) if settings.account_locked_until else None,
    )


# ---------------------------------------------------------------------------
# Own sessions
# ---------------------------------------------------------------------------


@router.get("/security/sessions", response_model=list[SessionResponse])
def list_sessions(request: Request, ctx: AuthContext = Depends(get_current_session)) -> list[SessionResponse]:
    mgr: SessionManager = request.app.state.session_manager
    return [
        SessionResponse(
            id=s.id,
            ip_address=s.ip_address,
            user_agent=s.user_agent,
            created_at=to_iso(s.created_at),
            last_activity=to_iso(s.last_activity),
            expires_at=to_iso(s.expires_at),
            is_current=s.id == ctx.session.id,
        )
        for s in mgr.get_active_sessions(ctx.user.id)
    ]


@router.post("/security/sessions/terminate-current", response_model=MessageResponse)
def terminate_current(request: Request, ctx: AuthContext = Depends(get_current_session)) -> MessageResponse:
    mgr: SessionManager = request.app.state.session_manager
    mgr.terminate_session(ctx.token)
    return MessageResponse(message="Session terminated.")


@router.post("/security/sessions/terminate-all", response_model=TerminatedResponse)
def terminate_all(request: Request, ctx: AuthContext = Depends(get_current_session)) -> TerminatedResponse:
    """End every session of the caller, including the one making this request."""
    mgr: SessionManager = request.app.state.session_manager
    activity: ActivityLogger = request.app.state.activity
    count = mgr.terminate_all_user_sessions(ctx.user.id)
    request.app.state.user_store.set_offline(ctx.user.id)
    ip, user_agent = client_meta(request)
    activity.log(ctx.user.id, "sessions_terminated_all", {"count": count}, ip, user_agent)
    return TerminatedResponse(message="All sessions terminated.", terminated=count)


# ---------------------------------------------------------------------------
# Security settings
# ---------------------------------------------------------------------------


@router.get("/security/settings", response_model=SecuritySettingsResponse)
def read_security_settings(request: Request, current_user: User = Depends(get_current_user)) -> SecuritySettingsResponse:
    store: UserStore = request.app.state.user_store
    return _settings_response(store.get_security_settings(current_user.id))


@router.patch("/security/settings", response_model=SecuritySettingsResponse)
def update_security_settings(
    request: Request,
    body: SecuritySettingsPatch,
    current_user: User = Depends(get_current_user),
) -> SecuritySettingsResponse:
    """Update preferences. Lockout counters are not user-editable."""
    store: UserStore = request.app.state.user_store
    updates = body.model_dump(exclude_none=True)
    if not updates:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    settings = store.update_security_settings(current_user.id, **updates)
    ip, user_agent = client_meta(request)
    request.app.state.activity.log(current_user.id, "security_settings_updated", updates, ip, user_agent)
    return _settings_response(settings)


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


@router.get("/security/sessions/all", response_model=list[AdminSessionResponse])
def list_all_sessions(
    request: Request,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    current_user: User = Depends(require_admin),
) -> list[AdminSessionResponse]:
    mgr: SessionManager = request.app.state.session_manager
    return [AdminSessionResponse(**row) for row in mgr.get_all_sessions(limit=limit, offset=offset)]


@router.get("/security/sessions/statistics", response_model=SessionStatsResponse)
def session_statistics(request: Request, current_user: User = Depends(require_admin)) -> SessionStatsResponse:
    mgr: SessionManager = request.app.state.session_manager
    return SessionStatsResponse(**mgr.get_session_statistics())


@router.post("/security/sessions/{session_id}/terminate", response_model=MessageResponse)
def admin_terminate_session(
    request: Request,
    session_id: int,
    current_user: User = Depends(require_admin),
) -> MessageResponse:
    mgr: SessionManager = request.app.state.session_manager
    if not mgr.terminate_session_by_admin(session_id, current_user.id):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Session not found."},
        )
    return MessageResponse(message="Session terminated.")


@router.post("/security/users/{user_id}/unlock", response_model=MessageResponse)
def unlock_user(request: Request, user_id: int, current_user: User = Depends(require_admin)) -> MessageResponse:
    lockout: LockoutGuard = request.app.state.lockout
    store: UserStore = request.app.state.user_store
    if store.get_by_id(user_id) is None or not lockout.unlock_account(user_id):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )
    request.app.state.activity.log(current_user.id, "account_unlocked", {"user_id": user_id})
    return MessageResponse(message="Account unlocked.")


@router.get("/security/activity", response_model=list[ActivityEntry])
def recent_activity(
    request: Request,
    user_id: int | None = Query(default=None, gt=0),
    limit: int = Query(default=50, ge=1, le=500),
    current_user: User = Depends(require_admin),
) -> list[ActivityEntry]:
    activity: ActivityLogger = request.app.state.activity
    return [ActivityEntry(**row) for row in activity.recent(user_id=user_id, limit=limit)]
