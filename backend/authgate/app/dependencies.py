"""Common FastAPI dependency helpers."""
from __future__ import annotations

from typing import Awaitable, Callable

from fastapi import Depends, HTTPException, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import models as db_models
from ..db.session import get_session
from .audit import extract_client_ip
from .bruteforce import BruteForceProtector, RateLimiter
from .config import Settings
from .email import EmailDispatcher
from .google import GoogleOAuthClient
from .sessions import ResolvedSession, SessionService


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_email_dispatcher(request: Request) -> EmailDispatcher:
    """Return the e-mail dispatcher configured for this application."""

    return request.app.state.email_dispatcher


def get_bruteforce_service(request: Request) -> BruteForceProtector:
    return request.app.state.bruteforce


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_google_client(request: Request) -> GoogleOAuthClient:
    return request.app.state.google_client


def get_session_service(
    db: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> SessionService:
    return SessionService(db, settings.auth)


async def get_optional_auth_session(
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_session),
    sessions: SessionService = Depends(get_session_service),
    settings: Settings = Depends(get_settings),
) -> ResolvedSession | None:
    """Resolve the session cookie, extending it when it is due for a refresh."""

    token = request.cookies.get(settings.auth.session_cookie_name)
    resolved = await sessions.resolve(token)
    if resolved is not None and resolved.refreshed and token:
        await db.commit()
        sessions.set_cookie(response, token, resolved.record.expires_at)
    return resolved


async def require_auth_session(
    resolved: ResolvedSession | None = Depends(get_optional_auth_session),
) -> ResolvedSession:
    if resolved is None:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return resolved


async def get_current_user(
    resolved: ResolvedSession = Depends(require_auth_session),
) -> db_models.User:
    return resolved.user


async def require_verified_user(
    user: db_models.User = Depends(get_current_user),
) -> db_models.User:
    if not user.email_verified:
        raise HTTPException(
            status.HTTP_403_FORBIDDEN,
            detail="You must verify your email address to access this resource",
        )
    return user


def rate_limit(identifier: str) -> Callable[..., Awaitable[None]]:
    """Build a dependency enforcing the ``identifier`` rule from ``AUTH__RATE_LIMITS``."""

    async def dependency(
        request: Request,
        limiter: RateLimiter = Depends(get_rate_limiter),
        settings: Settings = Depends(get_settings),
    ) -> None:
        rule = settings.auth.rate_limits.get(identifier)
        if rule is None:
            return
        result = await limiter.hit(
            identifier=identifier,
            ip_address=extract_client_ip(request),
            limit=rule.limit,
            window_seconds=rule.window_seconds,
        )
        if not result.allowed:
            raise HTTPException(
                status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many requests. Please try again later.",
                headers={"Retry-After": str(result.retry_after)},
            )

    return dependency


__all__ = [
    "get_bruteforce_service",
    "get_current_user",
    "get_email_dispatcher",
    "get_google_client",
    "get_optional_auth_session",
    "get_rate_limiter",
    "get_session",
    "get_session_service",
    "get_settings",
    "rate_limit",
    "require_auth_session",
    "require_verified_user",
]
