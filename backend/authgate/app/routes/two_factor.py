"""TOTP two-factor enrolment and sign-in completion."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ...db import models as db_models
from ..accounts import start_session
from ..audit import extract_client_ip, record_auth_event
from ..bruteforce import BruteForceProtector
from ..config import Settings
from ..dependencies import (
    get_bruteforce_service,
    get_session,
    get_session_service,
    get_settings,
    require_auth_session,
)
from ..mfa import (
    build_otpauth_uri,
    clear_backup_codes,
    generate_totp_secret,
    remaining_backup_codes,
    rotate_backup_codes,
    validate_second_factor,
    verify_totp,
)
from ..schemas.auth import AuthResult, OperationStatus, serialize_user
from ..security import verify_password
from ..sessions import ResolvedSession, SessionService
from ..token_service import TokenService

router = APIRouter(prefix="/auth/two-factor", tags=["two-factor"])


class TwoFactorSetupResponse(BaseModel):
    secret: str
    totp_uri: str = Field(alias="totpURI")

    model_config = ConfigDict(populate_by_name=True)


class TwoFactorEnableRequest(BaseModel):
    code: str = Field(min_length=6, max_length=32)


class BackupCodesResponse(BaseModel):
    success: bool = True
    message: str
    backup_codes: list[str] = Field(alias="backupCodes")

    model_config = ConfigDict(populate_by_name=True)


class TwoFactorProofRequest(BaseModel):
    password: str | None = None
    code: str | None = None


class TwoFactorVerifyRequest(BaseModel):
    challenge_token: str = Field(min_length=16, alias="challengeToken")
    code: str = Field(min_length=6, max_length=32)

    model_config = ConfigDict(populate_by_name=True)


class TwoFactorStatus(BaseModel):
    enabled: bool
    backup_codes_remaining: int = Field(alias="backupCodesRemaining")

    model_config = ConfigDict(populate_by_name=True)


async def _verify_proof(
    db: AsyncSession, user: db_models.User, payload: TwoFactorProofRequest
) -> bool:
    if payload.code and await validate_second_factor(db, user, payload.code) is not None:
        return True
    if payload.password:
        return verify_password(user.password_hash, payload.password)
    return False


@router.get("", response_model=TwoFactorStatus)
async def get_two_factor_status(
    resolved: ResolvedSession = Depends(require_auth_session),
    db: AsyncSession = Depends(get_session),
) -> TwoFactorStatus:
    user = resolved.user
    remaining = await remaining_backup_codes(db, user) if user.two_factor_enabled else 0
    return TwoFactorStatus(enabled=user.two_factor_enabled, backup_codes_remaining=remaining)


@router.post("/setup", response_model=TwoFactorSetupResponse)
async def setup_two_factor(
    resolved: ResolvedSession = Depends(require_auth_session),
    db: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> TwoFactorSetupResponse:
    user = resolved.user
    if user.two_factor_enabled:
        raise HTTPException(
            status.HTTP_400_BAD_REQUEST,
            detail="Two-factor authentication is already enabled",
        )

    secret = generate_totp_secret()
    user.totp_secret = secret
    user.totp_last_step = None
    await db.commit()
    return TwoFactorSetupResponse(
        secret=secret,
        totp_uri=build_otpauth_uri(user, secret, issuer=settings.auth.totp_issuer),
    )


@router.post("/enable", response_model=BackupCodesResponse)
async def enable_two_factor(
    payload: TwoFactorEnableRequest,
    request: Request,
    resolved: ResolvedSession = Depends(require_auth_session),
    db: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> BackupCodesResponse:
    user = resolved.user
    if user.two_factor_enabled:
        raise HTTPException(
            status.HTTP_400_BAD_REQUEST,
            detail="Two-factor authentication is already enabled",
        )
    if not user.totp_secret:
        raise HTTPException(
            status.HTTP_400_BAD_REQUEST,
            detail="Two-factor setup has not been started",
        )

    if not verify_totp(user, payload.code):
        await record_auth_event(
            db,
            request,
            action="auth.two_factor.enable",
            result="failure",
            actor_user_id=user.id,
            metadata={"reason": "invalid_verification_code"},
        )
        await db.commit()
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail="Invalid verification code")

    user.two_factor_enabled = True
    backup_codes = await rotate_backup_codes(db, user, count=settings.auth.backup_code_count)
    await record_auth_event(
        db,
        request,
        action="auth.two_factor.enable",
        result="success",
        actor_user_id=user.id,
        metadata={"backup_codes": len(backup_codes)},
    )
    await db.commit()
    return BackupCodesResponse(
        message="Two-factor authentication enabled",
        backup_codes=backup_codes,
    )


@router.post(
    "/verify",
    response_model=AuthResult,
    responses={status.HTTP_429_TOO_MANY_REQUESTS: {"model": OperationStatus}},
)
async def verify_two_factor(
    payload: TwoFactorVerifyRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_session),
    sessions: SessionService = Depends(get_session_service),
    bruteforce: BruteForceProtector = Depends(get_bruteforce_service),
) -> AuthResult:
    client_ip = extract_client_ip(request)
    token_service = TokenService(db)
    record = await token_service.find_active(
        token=payload.challenge_token,
        purpose=db_models.UserTokenPurpose.TWO_FACTOR_CHALLENGE,
    )
    if record is None:
        await record_auth_event(
            db,
            request,
            action="auth.two_factor.verify",
            result="failure",
            metadata={"reason": "invalid_or_expired_challenge"},
        )
        await db.commit()
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail="Invalid or expired challenge")

    user = record.user
    status_check = await bruteforce.evaluate(email=user.email, ip_address=client_ip)
    if status_check.blocked:
        await record_auth_event(
            db,
            request,
            action="auth.two_factor.verify.blocked",
            result="failure",
            actor_user_id=user.id,
            metadata={"reason": "rate_limited"},
        )
        await db.commit()
        raise HTTPException(
            status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many login attempts. Try again later.",
        )

    method = await validate_second_factor(db, user, payload.code)
    if method is None:
        await record_auth_event(
            db,
            request,
            action="auth.two_factor.verify",
            result="failure",
            actor_user_id=user.id,
            metadata={"reason": "invalid_verification_code"},
        )
        await bruteforce.register_failure(email=user.email, ip_address=client_ip)
        await db.commit()
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail="Invalid verification code")

    await token_service.mark_consumed(record)
    await bruteforce.reset(email=user.email, ip_address=client_ip)
    await record_auth_event(
        db,
        request,
        action="auth.two_factor.verify",
        result="success",
        actor_user_id=user.id,
        metadata={"method": method},
    )
    await start_session(
        db,
        sessions,
        user=user,
        auth_method=f"password+{method}",
        request=request,
        response=response,
    )
    return AuthResult(message="Signed in successfully", user=serialize_user(user))


@router.post("/disable", response_model=OperationStatus)
async def disable_two_factor(
    payload: TwoFactorProofRequest,
    request: Request,
    resolved: ResolvedSession = Depends(require_auth_session),
    db: AsyncSession = Depends(get_session),
    sessions: SessionService = Depends(get_session_service),
) -> OperationStatus:
    user = resolved.user
    if not user.two_factor_enabled:
        return OperationStatus(message="Two-factor authentication is already disabled")

    if not await _verify_proof(db, user, payload):
        await record_auth_event(
            db,
            request,
            action="auth.two_factor.disable",
            result="failure",
            actor_user_id=user.id,
            metadata={"reason": "verification_required"},
        )
        await db.commit()
        raise HTTPException(
            status.HTTP_400_BAD_REQUEST,
            detail="Verification required to disable two-factor authentication",
        )

    user.two_factor_enabled = False
    user.totp_secret = None
    user.totp_last_step = None
    await clear_backup_codes(db, user)
    revoked = await sessions.revoke_all(user.id, keep_session_id=resolved.record.id)
    await record_auth_event(
        db,
        request,
        action="auth.two_factor.disable",
        result="success",
        actor_user_id=user.id,
        metadata={"revoked_sessions": revoked},
    )
    await db.commit()
    return OperationStatus(message="Two-factor authentication disabled")


@router.post("/backup-codes", response_model=BackupCodesResponse)
async def regenerate_backup_codes(
    payload: TwoFactorProofRequest,
    request: Request,
    resolved: ResolvedSession = Depends(require_auth_session),
    db: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> BackupCodesResponse:
    user = resolved.user
    if not user.two_factor_enabled:
        raise HTTPException(
            status.HTTP_400_BAD_REQUEST,
            detail="Two-factor authentication is not enabled",
        )
    if not await _verify_proof(db, user, payload):
        raise HTTPException(
            status.HTTP_400_BAD_REQUEST,
            detail="Verification required to regenerate backup codes",
        )

    backup_codes = await rotate_backup_codes(db, user, count=settings.auth.backup_code_count)
    await record_auth_event(
        db,
        request,
        action="auth.two_factor.backup_codes",
        result="success",
        actor_user_id=user.id,
    )
    await db.commit()
    return BackupCodesResponse(message="Backup codes regenerated", backup_codes=backup_codes)
