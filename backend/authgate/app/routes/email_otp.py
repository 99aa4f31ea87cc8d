"""Endpoints driven by emailed one-time codes."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ...db import models as db_models
from ..accounts import fetch_user_by_email, normalise_email, start_session
from ..audit import record_auth_event
from ..config import Settings
from ..dependencies import (
    get_email_dispatcher,
    get_session,
    get_session_service,
    get_settings,
    rate_limit,
)
from ..email import EmailDispatcher
from ..otp_service import EmailOtpService, OtpCheck
from ..schemas.auth import AuthResult, OperationStatus, serialize_user
from ..security import hash_password
from ..sessions import SessionService

router = APIRouter(prefix="/auth", tags=["email-otp"])

_FAILURE_DETAILS = {
    OtpCheck.INVALID: (status.HTTP_400_BAD_REQUEST, "Invalid OTP"),
    OtpCheck.EXPIRED: (status.HTTP_400_BAD_REQUEST, "OTP expired"),
    OtpCheck.TOO_MANY_ATTEMPTS: (status.HTTP_403_FORBIDDEN, "Too many attempts"),
}


class SendOtpRequest(BaseModel):
    email: EmailStr
    type: db_models.EmailOtpType


class VerifyOtpRequest(BaseModel):
    email: EmailStr
    otp: str = Field(min_length=1, max_length=32)


class ForgetPasswordOtpRequest(BaseModel):
    email: EmailStr


class ResetPasswordOtpRequest(BaseModel):
    email: EmailStr
    otp: str = Field(min_length=1, max_length=32)
    password: str = Field(min_length=8, max_length=128)


def _otp_service(db: AsyncSession, settings: Settings) -> EmailOtpService:
    return EmailOtpService(
        db,
        length=settings.auth.otp_length,
        ttl_seconds=settings.auth.otp_ttl_seconds,
        allowed_attempts=settings.auth.otp_allowed_attempts,
    )


async def _send_code(
    db: AsyncSession,
    dispatcher: EmailDispatcher,
    settings: Settings,
    *,
    email: str,
    otp_type: db_models.EmailOtpType,
) -> None:
    user = await fetch_user_by_email(db, email)
    if user is None:
        return
    _, code = await _otp_service(db, settings).issue(email=user.email, otp_type=otp_type)
    await db.commit()
    await dispatcher.send_otp_email(email=user.email, otp=code, otp_type=otp_type)


async def _check_code(
    db: AsyncSession,
    request: Request,
    settings: Settings,
    *,
    email: str,
    otp: str,
    otp_type: db_models.EmailOtpType,
    action: str,
) -> db_models.User:
    """Validate ``otp``; failures are committed before the error is raised."""

    outcome = await _otp_service(db, settings).check(email=email, otp_type=otp_type, code=otp)
    user = await fetch_user_by_email(db, email) if outcome is OtpCheck.VALID else None
    if outcome is OtpCheck.VALID and user is None:
        outcome = OtpCheck.INVALID

    if outcome is not OtpCheck.VALID:
        await record_auth_event(
            db,
            request,
            action=action,
            result="failure",
            metadata={"reason": outcome.value, "email": email},
        )
        await db.commit()
        status_code, detail = _FAILURE_DETAILS[outcome]
        raise HTTPException(status_code, detail=detail)
    return user


@router.post(
    "/email-otp/send-verification-otp",
    response_model=OperationStatus,
    dependencies=[Depends(rate_limit("otp"))],
)
async def send_verification_otp(
    payload: SendOtpRequest,
    db: AsyncSession = Depends(get_session),
    email_dispatcher: EmailDispatcher = Depends(get_email_dispatcher),
    settings: Settings = Depends(get_settings),
) -> OperationStatus:
    await _send_code(
        db,
        email_dispatcher,
        settings,
        email=normalise_email(str(payload.email)),
        otp_type=payload.type,
    )
    return OperationStatus(message="Verification code sent")


@router.post(
    "/email-otp/verify-email",
    response_model=AuthResult,
    dependencies=[Depends(rate_limit("otp"))],
)
async def verify_email_otp(
    payload: VerifyOtpRequest,
    request: Request,
    db: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> AuthResult:
    user = await _check_code(
        db,
        request,
        settings,
        email=normalise_email(str(payload.email)),
        otp=payload.otp,
        otp_type=db_models.EmailOtpType.EMAIL_VERIFICATION,
        action="auth.email_otp.verify_email",
    )
    user.email_verified = True
    await record_auth_event(
        db,
        request,
        action="auth.email_otp.verify_email",
        result="success",
        actor_user_id=user.id,
    )
    await db.commit()
    return AuthResult(message="Email verified successfully", user=serialize_user(user))


@router.post(
    "/sign-in/email-otp",
    response_model=AuthResult,
    dependencies=[Depends(rate_limit("otp"))],
)
async def sign_in_email_otp(
    payload: VerifyOtpRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_session),
    sessions: SessionService = Depends(get_session_service),
    settings: Settings = Depends(get_settings),
) -> AuthResult:
    user = await _check_code(
        db,
        request,
        settings,
        email=normalise_email(str(payload.email)),
        otp=payload.otp,
        otp_type=db_models.EmailOtpType.SIGN_IN,
        action="auth.email_otp.sign_in",
    )
    # the code proves control of the mailbox
    user.email_verified = True
    await record_auth_event(
        db,
        request,
        action="auth.email_otp.sign_in",
        result="success",
        actor_user_id=user.id,
        metadata={"method": "email_otp"},
    )
    await start_session(
        db,
        sessions,
        user=user,
        auth_method="email_otp",
        request=request,
        response=response,
    )
    return AuthResult(message="Signed in successfully", user=serialize_user(user))


@router.post(
    "/forget-password/email-otp",
    response_model=OperationStatus,
    dependencies=[Depends(rate_limit("otp"))],
)
async def forgot_password_email_otp(
    payload: ForgetPasswordOtpRequest,
    db: AsyncSession = Depends(get_session),
    email_dispatcher: EmailDispatcher = Depends(get_email_dispatcher),
    settings: Settings = Depends(get_settings),
) -> OperationStatus:
    await _send_code(
        db,
        email_dispatcher,
        settings,
        email=normalise_email(str(payload.email)),
        otp_type=db_models.EmailOtpType.FORGET_PASSWORD,
    )
    return OperationStatus(message="Password reset code sent")


@router.post(
    "/email-otp/reset-password",
    response_model=OperationStatus,
    dependencies=[Depends(rate_limit("otp"))],
)
async def reset_password_email_otp(
    payload: ResetPasswordOtpRequest,
    request: Request,
    db: AsyncSession = Depends(get_session),
    sessions: SessionService = Depends(get_session_service),
    settings: Settings = Depends(get_settings),
) -> OperationStatus:
    user = await _check_code(
        db,
        request,
        settings,
        email=normalise_email(str(payload.email)),
        otp=payload.otp,
        otp_type=db_models.EmailOtpType.FORGET_PASSWORD,
        action="auth.email_otp.reset_password",
    )
    user.password_hash = hash_password(payload.password)
    user.email_verified = True
    revoked = 0
    if settings.auth.revoke_sessions_on_password_reset:
        revoked = await sessions.revoke_all(user.id)
    await record_auth_event(
        db,
        request,
        action="auth.email_otp.reset_password",
        result="success",
        actor_user_id=user.id,
        metadata={"revoked_sessions": revoked},
    )
    await db.commit()
    return OperationStatus(message="Password reset successfully")
