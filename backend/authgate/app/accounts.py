"""User lookup and sign-in helpers shared by the authentication routers."""
from __future__ import annotations

from urllib.parse import urlsplit

from fastapi import HTTPException, Request, Response, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import models as db_models
from .config import AuthSettings, origin_of
from .sessions import SessionService


def normalise_email(email: str) -> str:
    return email.strip().lower()


async def fetch_user_by_email(db: AsyncSession, email: str) -> db_models.User | None:
    stmt = select(db_models.User).where(db_models.User.email == normalise_email(email))
    return (await db.execute(stmt)).scalars().first()


async def start_session(
    db: AsyncSession,
    sessions: SessionService,
    *,
    user: db_models.User,
    auth_method: str,
    request: Request,
    response: Response,
) -> db_models.AuthSession:
    """Persist a new session for ``user`` and attach its cookie to ``response``."""

    record, token = await sessions.create(user=user, auth_method=auth_method, request=request)
    await db.commit()
    sessions.set_cookie(response, token, record.expires_at)
    return record


def ensure_safe_redirect(target: str, config: AuthSettings) -> str:
    """Accept relative paths or absolute URLs on a trusted origin."""

    cleaned = target.strip()
    if cleaned.startswith("/") and not cleaned.startswith("//") and "\\" not in cleaned:
        return cleaned
    parts = urlsplit(cleaned)
    if parts.scheme in {"http", "https"} and parts.netloc:
        if origin_of(cleaned) in config.allowed_origins:
            return cleaned
    raise HTTPException(status.HTTP_400_BAD_REQUEST, detail="Invalid redirect URL")


__all__ = [
    "ensure_safe_redirect",
    "fetch_user_by_email",
    "normalise_email",
    "start_session",
]
