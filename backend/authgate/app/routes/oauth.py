"""Google sign-in: redirect flow and One Tap."""
from __future__ import annotations

from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ...db import models as db_models
from ..accounts import ensure_safe_redirect, fetch_user_by_email, start_session
from ..audit import record_auth_event
from ..config import Settings
from ..dependencies import (
    get_google_client,
    get_session,
    get_session_service,
    get_settings,
    rate_limit,
)
from ..google import GoogleOAuthClient
from ..logging import get_logger
from ..schemas.auth import AuthResult, serialize_user
from ..security import IdTokenClaims
from ..sessions import SessionService

router = APIRouter(prefix="/auth", tags=["oauth"])

logger = get_logger("authgate.oauth")

GOOGLE_PROVIDER = "google"


class OneTapRequest(BaseModel):
    credential: str = Field(min_length=1)


async def link_google_account(
    db: AsyncSession, claims: IdTokenClaims
) -> tuple[db_models.User, bool]:
    """Return the user for ``claims`` and whether it was just created.

    An existing ``(google, subject)`` link wins. Otherwise a user with the same
    email is linked only when Google vouches for the address, and failing that
    a new user is created.
    """

    stmt = (
        select(db_models.Account)
        .options(selectinload(db_models.Account.user))
        .where(
            db_models.Account.provider == GOOGLE_PROVIDER,
            db_models.Account.provider_account_id == claims.subject,
        )
    )
    account = (await db.execute(stmt)).scalars().first()
    if account is not None:
        user = account.user
        if claims.email_verified and claims.email == user.email and not user.email_verified:
            user.email_verified = True
        return user, False

    user = await fetch_user_by_email(db, claims.email)
    created = False
    if user is not None:
        if not claims.email_verified:
            raise HTTPException(
                status.HTTP_409_CONFLICT,
                detail="An account with this email already exists",
            )
        user.email_verified = True
        if not user.image and claims.picture:
            user.image = claims.picture
    else:
        user = db_models.User(
            email=claims.email,
            name=claims.name or claims.email,
            image=claims.picture,
            email_verified=claims.email_verified,
        )
        db.add(user)
        await db.flush()
        created = True

    db.add(
        db_models.Account(
            user_id=user.id,
            provider=GOOGLE_PROVIDER,
            provider_account_id=claims.subject,
        )
    )
    await db.flush()
    return user, created


async def _sign_in_with_id_token(
    db: AsyncSession,
    request: Request,
    response: Response,
    sessions: SessionService,
    google: GoogleOAuthClient,
    *,
    id_token: str,
    action: str,
) -> db_models.User:
    try:
        claims = await google.verify_id_token(id_token)
        user, created = await link_google_account(db, claims)
    except HTTPException as exc:
        await db.rollback()
        await record_auth_event(
            db,
            request,
            action=action,
            result="failure",
            metadata={"reason": "google_account_rejected", "detail": exc.detail},
        )
        await db.commit()
        raise

    await record_auth_event(
        db,
        request,
        action=action,
        result="success",
        actor_user_id=user.id,
        metadata={"provider": GOOGLE_PROVIDER, "created": created, "subject": claims.subject},
    )
    await start_session(
        db,
        sessions,
        user=user,
        auth_method=GOOGLE_PROVIDER,
        request=request,
        response=response,
    )
    return user


@router.get("/google", name="google_authorize")
async def google_authorize(
    request: Request,
    callback_url: str = Query(default="/dashboard", alias="callbackURL"),
    google: GoogleOAuthClient = Depends(get_google_client),
    settings: Settings = Depends(get_settings),
) -> RedirectResponse:
    target = ensure_safe_redirect(callback_url, settings.auth)
    url = await google.begin(
        redirect_uri=str(request.url_for("google_callback")),
        callback_url=target,
    )
    return RedirectResponse(url, status_code=status.HTTP_302_FOUND)


@router.get("/google/callback", name="google_callback")
async def google_callback(
    request: Request,
    state: str | None = None,
    code: str | None = None,
    error: str | None = None,
    db: AsyncSession = Depends(get_session),
    sessions: SessionService = Depends(get_session_service),
    google: GoogleOAuthClient = Depends(get_google_client),
) -> RedirectResponse:
    pending = await google.take_state(state) if state else None
    if pending is None:
        await record_auth_event(
            db,
            request,
            action="auth.google.callback",
            result="failure",
            metadata={"reason": "invalid_state"},
        )
        await db.commit()
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail="Invalid or expired state")

    if error or not code:
        logger.info("google_authorization_declined", error=error)
        separator = "&" if "?" in pending.callback_url else "?"
        query = urlencode({"error": error or "missing_code"})
        return RedirectResponse(
            f"{pending.callback_url}{separator}{query}",
            status_code=status.HTTP_302_FOUND,
        )

    id_token = await google.exchange_code(code=code, pending=pending)
    redirect = RedirectResponse(pending.callback_url, status_code=status.HTTP_302_FOUND)
    await _sign_in_with_id_token(
        db,
        request,
        redirect,
        sessions,
        google,
        id_token=id_token,
        action="auth.google.callback",
    )
    return redirect


@router.post(
    "/google/one-tap",
    response_model=AuthResult,
    dependencies=[Depends(rate_limit("sign-in"))],
)
async def google_one_tap(
    payload: OneTapRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_session),
    sessions: SessionService = Depends(get_session_service),
    google: GoogleOAuthClient = Depends(get_google_client),
) -> AuthResult:
    user = await _sign_in_with_id_token(
        db,
        request,
        response,
        sessions,
        google,
        id_token=payload.credential,
        action="auth.google.one_tap",
    )
    return AuthResult(message="Signed in successfully", user=serialize_user(user))
