"""Passkey registration, sign-in and management endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ...db import models as db_models
from ..accounts import fetch_user_by_email, start_session
from ..audit import record_auth_event
from ..config import Settings
from ..dependencies import (
    get_session,
    get_session_service,
    get_settings,
    rate_limit,
    require_auth_session,
)
from ..passkeys import PasskeyError, PasskeyService
from ..schemas.auth import OperationStatus, UserResource, serialize_user
from ..sessions import ResolvedSession, SessionService

router = APIRouter(prefix="/auth/passkey", tags=["passkeys"])


class RegistrationOptionsRequest(BaseModel):
    name: str | None = Field(default=None, max_length=255)


class VerifyRegistrationRequest(BaseModel):
    name: str | None = Field(default=None, max_length=255)
    response: dict[str, Any]


class AuthenticationOptionsRequest(BaseModel):
    email: EmailStr | None = None


class VerifyAuthenticationRequest(BaseModel):
    response: dict[str, Any]


class VerificationResult(BaseModel):
    verified: bool


class PasskeySignInResult(VerificationResult):
    user: UserResource


class AuthenticatorResource(BaseModel):
    id: int
    name: str | None = None
    credential_id: str = Field(alias="credentialID")
    device_type: str = Field(alias="deviceType")
    backed_up: bool = Field(alias="backedUp")
    transports: list[str]
    counter: int
    created_at: datetime = Field(alias="createdAt")
    last_used_at: datetime | None = Field(default=None, alias="lastUsedAt")

    model_config = ConfigDict(populate_by_name=True)


def serialize_authenticator(record: db_models.Authenticator) -> AuthenticatorResource:
    return AuthenticatorResource(
        id=record.id,
        name=record.name,
        credential_id=record.credential_id,
        device_type=record.device_type,
        backed_up=record.backed_up,
        transports=record.transport_list,
        counter=record.counter,
        created_at=record.created_at,
        last_used_at=record.last_used_at,
    )


def get_passkey_service(
    db: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> PasskeyService:
    return PasskeyService(db, settings.webauthn, origin=settings.webauthn_origin)


async def _reject(
    db: AsyncSession, request: Request, exc: PasskeyError, *, action: str, user_id: int | None
) -> HTTPException:
    await record_auth_event(
        db,
        request,
        action=action,
        result="failure",
        actor_user_id=user_id,
        metadata={"reason": exc.detail},
    )
    await db.commit()
    return HTTPException(exc.status_code, detail=exc.detail)


@router.post("/registration-options")
async def registration_options(
    payload: RegistrationOptionsRequest,
    resolved: ResolvedSession = Depends(require_auth_session),
    db: AsyncSession = Depends(get_session),
    passkeys: PasskeyService = Depends(get_passkey_service),
) -> dict[str, Any]:
    user = resolved.user
    options = await passkeys.registration_options(user, payload.name or user.name)
    await db.commit()
    return options


@router.post("/verify-registration", response_model=VerificationResult)
async def verify_registration(
    payload: VerifyRegistrationRequest,
    request: Request,
    resolved: ResolvedSession = Depends(require_auth_session),
    db: AsyncSession = Depends(get_session),
    passkeys: PasskeyService = Depends(get_passkey_service),
) -> VerificationResult:
    user = resolved.user
    try:
        verified = await passkeys.verify_registration(user, payload.name or user.name, payload.response)
    except PasskeyError as exc:
        raise await _reject(db, request, exc, action="auth.passkey.register", user_id=user.id) from exc

    await record_auth_event(
        db,
        request,
        action="auth.passkey.register",
        result="success",
        actor_user_id=user.id,
    )
    await db.commit()
    return VerificationResult(verified=verified)


@router.post(
    "/authentication-options",
    dependencies=[Depends(rate_limit("passkey"))],
)
async def authentication_options(
    payload: AuthenticationOptionsRequest,
    db: AsyncSession = Depends(get_session),
    passkeys: PasskeyService = Depends(get_passkey_service),
) -> dict[str, Any]:
    user = await fetch_user_by_email(db, str(payload.email)) if payload.email else None
    options = await passkeys.authentication_options(user)
    await db.commit()
    return options


@router.post(
    "/verify-authentication",
    response_model=PasskeySignInResult,
    dependencies=[Depends(rate_limit("passkey"))],
)
async def verify_authentication(
    payload: VerifyAuthenticationRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_session),
    sessions: SessionService = Depends(get_session_service),
    passkeys: PasskeyService = Depends(get_passkey_service),
) -> PasskeySignInResult:
    try:
        authenticator = await passkeys.verify_authentication(payload.response)
    except PasskeyError as exc:
        raise await _reject(db, request, exc, action="auth.passkey.sign_in", user_id=None) from exc

    user = authenticator.user
    await record_auth_event(
        db,
        request,
        action="auth.passkey.sign_in",
        result="success",
        actor_user_id=user.id,
        metadata={"authenticator_id": authenticator.id},
    )
    await start_session(
        db,
        sessions,
        user=user,
        auth_method="passkey",
        request=request,
        response=response,
    )
    return PasskeySignInResult(verified=True, user=serialize_user(user))


@router.get("", response_model=list[AuthenticatorResource])
async def list_passkeys(
    resolved: ResolvedSession = Depends(require_auth_session),
    passkeys: PasskeyService = Depends(get_passkey_service),
) -> list[AuthenticatorResource]:
    records = await passkeys.list_authenticators(resolved.user)
    return [serialize_authenticator(record) for record in records]


@router.delete("/{authenticator_id}", response_model=OperationStatus)
async def delete_passkey(
    authenticator_id: int,
    request: Request,
    resolved: ResolvedSession = Depends(require_auth_session),
    db: AsyncSession = Depends(get_session),
    passkeys: PasskeyService = Depends(get_passkey_service),
) -> OperationStatus:
    removed = await passkeys.remove_authenticator(resolved.user, authenticator_id)
    if not removed:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail="Authenticator not found")
    await record_auth_event(
        db,
        request,
        action="auth.passkey.delete",
        result="success",
        actor_user_id=resolved.user.id,
        metadata={"authenticator_id": authenticator_id},
    )
    await db.commit()
    return OperationStatus(message="Passkey removed")
