"""Response models for users, sessions and simple operation results."""
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from ...db import models as db_models
from ..sessions import ResolvedSession


class UserResource(BaseModel):
    id: int
    email: EmailStr
    name: str
    image: str | None = None
    email_verified: bool = Field(alias="emailVerified")
    two_factor_enabled: bool = Field(alias="twoFactorEnabled")
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True)


class SessionResource(BaseModel):
    id: int
    auth_method: str = Field(alias="authMethod")
    created_at: datetime = Field(alias="createdAt")
    expires_at: datetime = Field(alias="expiresAt")
    ip_address: str | None = Field(default=None, alias="ipAddress")
    user_agent: str | None = Field(default=None, alias="userAgent")

    model_config = ConfigDict(populate_by_name=True)


class OperationStatus(BaseModel):
    success: bool = True
    message: str


class AuthResult(OperationStatus):
    user: UserResource


class TwoFactorChallenge(BaseModel):
    """Returned with 202 when a password sign-in still needs a second factor."""

    success: bool = True
    message: str = "Two-factor verification required"
    two_factor_required: bool = Field(default=True, alias="twoFactorRequired")
    challenge_token: str = Field(alias="challengeToken")
    methods: list[str] = Field(default_factory=lambda: ["totp", "backup_code"])
    ttl_seconds: int = Field(alias="ttlSeconds")

    model_config = ConfigDict(populate_by_name=True)


class VerificationStatus(BaseModel):
    is_verified: bool = Field(alias="isVerified")
    can_access_protected: bool = Field(alias="canAccessProtected")
    should_redirect_to_verification: bool = Field(alias="shouldRedirectToVerification")

    model_config = ConfigDict(populate_by_name=True)


class SessionState(BaseModel):
    """Everything a client needs to decide what the current visitor may see."""

    user: UserResource | None = None
    session: SessionResource | None = None
    is_authenticated: bool = Field(alias="isAuthenticated")
    is_email_verified: bool = Field(alias="isEmailVerified")
    requires_verification: bool = Field(alias="requiresVerification")
    verification_status: VerificationStatus | None = Field(default=None, alias="verificationStatus")

    model_config = ConfigDict(populate_by_name=True)


class UserProfile(BaseModel):
    user: UserResource
    session: SessionResource


def serialize_user(user: db_models.User) -> UserResource:
    return UserResource(
        id=user.id,
        email=user.email,
        name=user.name,
        image=user.image,
        email_verified=user.email_verified,
        two_factor_enabled=user.two_factor_enabled,
        created_at=user.created_at,
        updated_at=user.updated_at,
    )


def serialize_session(record: db_models.AuthSession) -> SessionResource:
    return SessionResource(
        id=record.id,
        auth_method=record.auth_method,
        created_at=record.created_at,
        expires_at=record.expires_at,
        ip_address=record.ip_address,
        user_agent=record.user_agent,
    )


def build_session_state(resolved: ResolvedSession | None) -> SessionState:
    if resolved is None:
        return SessionState(
            is_authenticated=False,
            is_email_verified=False,
            requires_verification=False,
        )
    verified = resolved.user.email_verified
    return SessionState(
        user=serialize_user(resolved.user),
        session=serialize_session(resolved.record),
        is_authenticated=True,
        is_email_verified=verified,
        requires_verification=not verified,
        verification_status=VerificationStatus(
            is_verified=verified,
            can_access_protected=verified,
            should_redirect_to_verification=not verified,
        ),
    )


__all__ = [
    "AuthResult",
    "OperationStatus",
    "SessionResource",
    "SessionState",
    "TwoFactorChallenge",
    "UserProfile",
    "UserResource",
    "VerificationStatus",
    "build_session_state",
    "serialize_session",
    "serialize_user",
]
