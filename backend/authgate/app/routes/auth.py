"""Email and password account endpoints."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ...db import models as db_models
from ..accounts import (
    ensure_safe_redirect,
    fetch_user_by_email,
    normalise_email,
    start_session,
)
from ..audit import extract_client_ip, record_auth_event
from ..bruteforce import BruteForceProtector
from ..config import Settings
from ..dependencies import (
    get_bruteforce_service,
    get_email_dispatcher,
    get_optional_auth_session,
    get_session,
    get_session_service,
    get_settings,
    rate_limit,
    require_auth_session,
    require_verified_user,
)
from ..email import EmailDispatcher
from ..otp_service import EmailOtpService
from ..schemas.auth import (
    AuthResult,
    OperationStatus,
    SessionState,
    TwoFactorChallenge,
    UserProfile,
    build_session_state,
    serialize_session,
    serialize_user,
)
from ..security import hash_password, verify_password
from ..sessions import ResolvedSession, SessionService
from ..token_service import TokenService

router = APIRouter(prefix="/auth", tags=["auth"])

logger = logging.getLogger(__name__)


class SignUpRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8, max_length=128)
    name: str = Field(min_length=1, max_length=255)


class SignInRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=128)


class SendVerificationEmailRequest(BaseModel):
    email: EmailStr
    callback_url: str = Field(default="/dashboard", alias="callbackURL")

    model_config = ConfigDict(populate_by_name=True)


class ForgotPasswordRequest(BaseModel):
    email: EmailStr
    redirect_to: str = Field(default="/auth/reset-password", alias="redirectTo")

    model_config = ConfigDict(populate_by_name=True)


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=16)
    new_password: str = Field(min_length=8, max_length=128, alias="newPassword")

    model_config = ConfigDict(populate_by_name=True)


async def send_verification_otp(
    db: AsyncSession,
    dispatcher: EmailDispatcher,
    settings: Settings,
    *,
    email: str,
    otp_type: db_models.EmailOtpType,
) -> None:
    """Store a fresh code, commit, then mail it."""

    service = EmailOtpService(
        db,
        length=settings.auth.otp_length,
        ttl_seconds=settings.auth.otp_ttl_seconds,
        allowed_attempts=settings.auth.otp_allowed_attempts,
    )
    _, code = await service.issue(email=email, otp_type=otp_type)
    await db.commit()
    await dispatcher.send_otp_email(email=email, otp=code, otp_type=otp_type)


@router.post(
    "/sign-up/email",
    response_model=AuthResult,
    dependencies=[Depends(rate_limit("sign-up"))],
    responses={status.HTTP_409_CONFLICT: {"model": OperationStatus}},
)
async def sign_up(
    payload: SignUpRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_session),
    sessions: SessionService = Depends(get_session_service),
    email_dispatcher: EmailDispatcher = Depends(get_email_dispatcher),
    settings: Settings = Depends(get_settings),
) -> AuthResult:
    email = normalise_email(str(payload.email))
    if await fetch_user_by_email(db, email) is not None:
        await record_auth_event(
            db,
            request,
            action="auth.sign_up",
            result="failure",
            metadata={"reason": "email_taken", "email": email},
        )
        await db.commit()
        raise HTTPException(status.HTTP_409_CONFLICT, detail="An account with this email already exists")

    user = db_models.User(
        email=email,
        name=payload.name.strip() or email,
        password_hash=hash_password(payload.password),
        email_verified=False,
    )
    db.add(user)
    try:
        await db.flush()
    except IntegrityError as exc:
        await db.rollback()
        raise HTTPException(
            status.HTTP_409_CONFLICT,
            detail="An account with this email already exists",
        ) from exc
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Failed to create account for %s", email)
        raise HTTPException(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create account. Please try again.",
        ) from exc

    await record_auth_event(
        db,
        request,
        action="auth.sign_up",
        result="success",
        actor_user_id=user.id,
    )
    await start_session(
        db,
        sessions,
        user=user,
        auth_method="password",
        request=request,
        response=response,
    )

    if settings.auth.send_verification_on_sign_up:
        try:
            await send_verification_otp(
                db,
                email_dispatcher,
                settings,
                email=user.email,
                otp_type=db_models.EmailOtpType.EMAIL_VERIFICATION,
            )
        except HTTPException:
            logger.warning("Verification code for %s could not be delivered", user.email)

    return AuthResult(message="Account created successfully", user=serialize_user(user))


@router.post(
    "/sign-in/email",
    response_model=AuthResult,
    dependencies=[Depends(rate_limit("sign-in"))],
    responses={
        status.HTTP_202_ACCEPTED: {"model": TwoFactorChallenge},
        status.HTTP_401_UNAUTHORIZED: {"model": OperationStatus},
        status.HTTP_429_TOO_MANY_REQUESTS: {"model": OperationStatus},
    },
)
async def sign_in(
    payload: SignInRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_session),
    sessions: SessionService = Depends(get_session_service),
    bruteforce: BruteForceProtector = Depends(get_bruteforce_service),
    settings: Settings = Depends(get_settings),
):
    client_ip = extract_client_ip(request)
    email = normalise_email(str(payload.email))
    status_check = await bruteforce.evaluate(email=email, ip_address=client_ip)
    if status_check.blocked:
        await record_auth_event(
            db,
            request,
            action="auth.sign_in.blocked",
            result="failure",
            metadata={"reason": "rate_limited", "email": email},
        )
        await db.commit()
        raise HTTPException(
            status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many login attempts. Try again later.",
        )

    user = await fetch_user_by_email(db, email)
    if user is None or not verify_password(user.password_hash, payload.password):
        await record_auth_event(
            db,
            request,
            action="auth.sign_in",
            result="failure",
            actor_user_id=user.id if user else None,
            metadata={"reason": "invalid_credentials", "email": email},
        )
        await bruteforce.register_failure(email=email, ip_address=client_ip)
        await db.commit()
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Invalid email or password")

    if user.two_factor_enabled:
        ttl_seconds = settings.auth.two_factor_challenge_ttl_seconds
        _, challenge_token = await TokenService(db).issue(
            user=user,
            purpose=db_models.UserTokenPurpose.TWO_FACTOR_CHALLENGE,
            ttl_seconds=ttl_seconds,
        )
        await record_auth_event(
            db,
            request,
            action="auth.sign_in",
            result="pending",
            actor_user_id=user.id,
            metadata={"two_factor_required": True},
        )
        await db.commit()
        challenge = TwoFactorChallenge(challenge_token=challenge_token, ttl_seconds=ttl_seconds)
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content=challenge.model_dump(by_alias=True),
        )

    await bruteforce.reset(email=email, ip_address=client_ip)
    await record_auth_event(
        db,
        request,
        action="auth.sign_in",
        result="success",
        actor_user_id=user.id,
        metadata={"method": "password"},
    )
    await start_session(
        db,
        sessions,
        user=user,
        auth_method="password",
        request=request,
        response=response,
    )
    return AuthResult(message="Signed in successfully", user=serialize_user(user))


@router.post("/sign-out", response_model=OperationStatus)
async def sign_out(
    request: Request,
    response: Response,
    resolved: ResolvedSession = Depends(require_auth_session),
    db: AsyncSession = Depends(get_session),
    sessions: SessionService = Depends(get_session_service),
) -> OperationStatus:
    await sessions.revoke(resolved.record)
    await record_auth_event(
        db,
        request,
        action="auth.sign_out",
        result="success",
        actor_user_id=resolved.user.id,
    )
    await db.commit()
    sessions.clear_cookie(response)
    return OperationStatus(message="Signed out successfully")


@router.get("/session", response_model=SessionState)
async def get_session_state(
    resolved: ResolvedSession | None = Depends(get_optional_auth_session),
) -> SessionState:
    return build_session_state(resolved)


@router.get("/profile", response_model=UserProfile)
async def get_user_profile(
    resolved: ResolvedSession = Depends(require_auth_session),
) -> UserProfile:
    return UserProfile(user=serialize_user(resolved.user), session=serialize_session(resolved.record))


@router.get("/profile/verified", response_model=UserProfile)
async def get_verified_profile(
    user: db_models.User = Depends(require_verified_user),
    resolved: ResolvedSession = Depends(require_auth_session),
) -> UserProfile:
    return UserProfile(user=serialize_user(user), session=serialize_session(resolved.record))


@router.post(
    "/send-verification-email",
    response_model=OperationStatus,
    dependencies=[Depends(rate_limit("email"))],
)
async def send_verification_email(
    payload: SendVerificationEmailRequest,
    request: Request,
    db: AsyncSession = Depends(get_session),
    email_dispatcher: EmailDispatcher = Depends(get_email_dispatcher),
    settings: Settings = Depends(get_settings),
) -> OperationStatus:
    callback_url = ensure_safe_redirect(payload.callback_url, settings.auth)
    detail = OperationStatus(message="Verification email sent successfully")
    user = await fetch_user_by_email(db, str(payload.email))
    if user is None or user.email_verified:
        return detail

    _, token = await TokenService(db).issue(
        user=user,
        purpose=db_models.UserTokenPurpose.EMAIL_VERIFICATION,
        ttl_seconds=settings.auth.email_verification_token_ttl_seconds,
    )
    await db.commit()

    url = email_dispatcher.build_url(
        str(request.url_for("verify_email")), token=token, callbackURL=callback_url
    )
    await email_dispatcher.send_email_verification(email=user.email, url=url)
    return detail


@router.get("/verify-email", response_model=OperationStatus, name="verify_email")
async def verify_email(
    token: str,
    request: Request,
    callback_url: str | None = Query(default=None, alias="callbackURL"),
    db: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
):
    redirect_target = None
    if callback_url:
        redirect_target = ensure_safe_redirect(callback_url, settings.auth)

    record = await TokenService(db).consume(
        token=token,
        purpose=db_models.UserTokenPurpose.EMAIL_VERIFICATION,
    )
    if record is None:
        await record_auth_event(
            db,
            request,
            action="auth.verify_email",
            result="failure",
            metadata={"reason": "invalid_or_expired_token"},
        )
        await db.commit()
        if redirect_target:
            separator = "&" if "?" in redirect_target else "?"
            return RedirectResponse(f"{redirect_target}{separator}error=invalid_token", status_code=302)
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail="Invalid or expired verification token")

    user = record.user
    user.email_verified = True
    await record_auth_event(
        db,
        request,
        action="auth.verify_email",
        result="success",
        actor_user_id=user.id,
    )
    await db.commit()
    if redirect_target:
        return RedirectResponse(redirect_target, status_code=302)
    return OperationStatus(message="Email verified successfully")


@router.post(
    "/forgot-password",
    response_model=OperationStatus,
    dependencies=[Depends(rate_limit("email"))],
)
async def forgot_password(
    payload: ForgotPasswordRequest,
    db: AsyncSession = Depends(get_session),
    email_dispatcher: EmailDispatcher = Depends(get_email_dispatcher),
    settings: Settings = Depends(get_settings),
) -> OperationStatus:
    redirect_to = ensure_safe_redirect(payload.redirect_to, settings.auth)
    detail = OperationStatus(message="Password reset email sent successfully")
    user = await fetch_user_by_email(db, str(payload.email))
    if user is None:
        return detail

    _, token = await TokenService(db).issue(
        user=user,
        purpose=db_models.UserTokenPurpose.PASSWORD_RESET,
        ttl_seconds=settings.auth.password_reset_token_ttl_seconds,
    )
    await db.commit()

    url = email_dispatcher.build_url(redirect_to, token=token)
    await email_dispatcher.send_password_reset_email(email=user.email, url=url)
    return detail


@router.post("/reset-password", response_model=OperationStatus)
async def reset_password(
    payload: ResetPasswordRequest,
    request: Request,
    db: AsyncSession = Depends(get_session),
    sessions: SessionService = Depends(get_session_service),
    settings: Settings = Depends(get_settings),
) -> OperationStatus:
    record = await TokenService(db).consume(
        token=payload.token,
        purpose=db_models.UserTokenPurpose.PASSWORD_RESET,
    )
    if record is None:
        await record_auth_event(
            db,
            request,
            action="auth.reset_password",
            result="failure",
            metadata={"reason": "invalid_or_expired_token"},
        )
        await db.commit()
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail="Invalid or expired reset token")

    user = record.user
    user.password_hash = hash_password(payload.new_password)
    revoked = 0
    if settings.auth.revoke_sessions_on_password_reset:
        revoked = await sessions.revoke_all(user.id)
    await record_auth_event(
        db,
        request,
        action="auth.reset_password",
        result="success",
        actor_user_id=user.id,
        metadata={"revoked_sessions": revoked},
    )
    await db.commit()
    return OperationStatus(message="Password reset successfully")
