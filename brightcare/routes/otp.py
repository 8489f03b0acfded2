"""
OTP Routes
Unauthenticated: callers who forgot their password have no session.
"""

import logging
import secrets
import string
from typing import Optional

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..config import (
    OTP_APP_NAME,
    OTP_EXPIRY_MINUTES,
    OTP_RATE_LIMIT_PER_EMAIL,
    OTP_RATE_LIMIT_PER_IP,
    OTP_RATE_LIMIT_WINDOW_SECONDS,
)
from ..dependencies import get_dispatch_service
from ..email_service import NotificationDispatchService
from ..rate_limiter import create_rate_limiter, enforce_rate_limit
from ..schemas import DispatchResult, OtpDispatchRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/otp", tags=["OTP"])

VALIDATION_CODES = {"missing_request", "invalid_email", "invalid_otp"}

rate_limit_otp = create_rate_limiter(
    limit=OTP_RATE_LIMIT_PER_IP,
    window_seconds=OTP_RATE_LIMIT_WINDOW_SECONDS,
    key_prefix="otp",
)


class ForgotPasswordRequest(BaseModel):
    email: Optional[str] = None


class ForgotPasswordResponse(BaseModel):
    success: bool
    message: str
    expires_in_minutes: int
    auth_method_used: Optional[str] = None
    risk_flagged: bool = False


def generate_otp(length: int = 6) -> str:
    """Generate a cryptographically secure random numeric OTP code"""
    return "".join(secrets.choice(string.digits) for _ in range(length))


def dispatch_response(result: DispatchResult) -> JSONResponse:
    if result.success:
        status_code = 200
    elif result.error_code in VALIDATION_CODES:
        status_code = 400
    else:
        status_code = 502
    return JSONResponse(status_code=status_code, content=result.model_dump())


def limit_recipient(email: Optional[str]) -> None:
    """Per-address window so one inbox cannot be flooded from many IPs"""
    if isinstance(email, str) and email.strip():
        enforce_rate_limit(
            f"otp_email:{email.strip().lower()}",
            OTP_RATE_LIMIT_PER_EMAIL,
            OTP_RATE_LIMIT_WINDOW_SECONDS,
        )


@router.post("/send", response_model=DispatchResult)
async def send_otp(
    request: Optional[OtpDispatchRequest] = Body(None),
    service: NotificationDispatchService = Depends(get_dispatch_service),
    _: None = Depends(rate_limit_otp),
):
    """Email a caller-supplied OTP under the server's own branding"""
    if request is not None:
        limit_recipient(request.email)
        # Branding and expiry text are never taken from an unauthenticated caller
        request = request.model_copy(
            update={"app_name": OTP_APP_NAME, "expiry_minutes": OTP_EXPIRY_MINUTES}
        )
    result = await service.dispatch_otp(request)
    return dispatch_response(result)


@router.post("/forgot-password", response_model=ForgotPasswordResponse)
async def forgot_password(
    data: ForgotPasswordRequest,
    service: NotificationDispatchService = Depends(get_dispatch_service),
    _: None = Depends(rate_limit_otp),
):
    """Generate a fresh OTP and email it; the code itself is never returned"""
    limit_recipient(data.email)
    request = OtpDispatchRequest(
        email=data.email, otp=generate_otp(), expiry_minutes=OTP_EXPIRY_MINUTES, app_name=OTP_APP_NAME
    )
    result = await service.dispatch_otp(request)
    if not result.success:
        return dispatch_response(result)

    logger.info("📨 Password reset OTP dispatched")
    return ForgotPasswordResponse(
        success=True,
        message="Verification code sent to your email",
        expires_in_minutes=request.expiry_minutes,
        auth_method_used=result.auth_method_used,
        risk_flagged=result.risk_flagged,
    )
