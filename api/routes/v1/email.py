"""
api/routes/v1/email.py -- Email verification code endpoints.

Routes:
  POST /api/v1/email/send-verification-code  -- mint + send a code; 429 when rate-limited
  POST /api/v1/email/verify-code             -- consume a code
  GET  /api/v1/email/verification-stats      -- per-purpose totals (admin only)

Rate limiting here is per account (email + purpose) and durable, enforced by
LoginOrchestrator.send_verification_code() through auth/ratelimit.py. A 429
carries reset_time in the error envelope and a Retry-After header.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from api.models import SendCodeRequest, SendCodeResponse, VerificationStatsRow, VerifyCodeRequest, VerifyCodeResponse
from auth.codes import VerificationCodeManager
from auth.dependencies import require_admin
from auth.login import LoginOrchestrator
from auth.models import CodePurpose, User

# Auth policy:
# - POST /api/v1/email/send-verification-code: public (per-account rate limit)
# - POST /api/v1/email/verify-code:            public (attempt-capped per code)
# - GET  /api/v1/email/verification-stats:     requires admin (require_admin)
router = APIRouter()


@router.post("/email/send-verification-code", response_model=SendCodeResponse)
def send_verification_code(request: Request, body: SendCodeRequest) -> SendCodeResponse:
    orchestrator: LoginOrchestrator = request.app.state.login
    purpose = CodePurpose(body.type.value)
    orchestrator.send_verification_code(body.email, purpose)
    return SendCodeResponse(expires_in=orchestrator.code_ttl_minutes(purpose) * 60)


@router.post("/email/verify-code", response_model=VerifyCodeResponse)
def verify_code(request: Request, body: VerifyCodeRequest) -> VerifyCodeResponse:
    """Consume a code. 400 code_invalid / max_attempts_exceeded on failure."""
    orchestrator: LoginOrchestrator = request.app.state.login
    owner_id = orchestrator.verify_code(body.email, body.code, CodePurpose(body.type.value))
    return VerifyCodeResponse(user_id=owner_id)


@router.get("/email/verification-stats", response_model=list[VerificationStatsRow])
def verification_stats(
    request: Request,
    days: int = Query(default=30, ge=1, le=365),
    current_user: User = Depends(require_admin),
) -> list[VerificationStatsRow]:
    codes: VerificationCodeManager = request.app.state.code_manager
    return [VerificationStatsRow(**row) for row in codes.verification_stats(days=days)]
