"""Opaque cookie sessions with a sliding expiry."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from fastapi import Request, Response
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..db import models as db_models
from .config import AuthSettings
from .security import generate_token, hash_token
from .timeutils import as_utc, utcnow


@dataclass(slots=True)
class ResolvedSession:
    """An active session and whether its expiry was just extended."""

    record: db_models.AuthSession
    user: db_models.User
    refreshed: bool


class SessionService:
    """Create, resolve and revoke sign-in sessions."""

    def __init__(self, session: AsyncSession, config: AuthSettings) -> None:
        self._session = session
        self._config = config

    async def create(
        self,
        *,
        user: db_models.User,
        auth_method: str,
        request: Request | None = None,
    ) -> tuple[db_models.AuthSession, str]:
        now = utcnow()
        token = generate_token()
        user_agent = request.headers.get("user-agent") if request else None
        record = db_models.AuthSession(
            user_id=user.id,
            token_hash=hash_token(token),
            auth_method=auth_method,
            user_agent=user_agent[:255] if user_agent else None,
            ip_address=(request.client.host if request and request.client else None),
            refreshed_at=now,
            expires_at=now + timedelta(seconds=self._config.session_ttl_seconds),
        )
        self._session.add(record)
        user.last_login_at = now
        await self._session.flush()
        return record, token

    async def resolve(self, token: str | None) -> ResolvedSession | None:
        """Return the live session for ``token``; expired or revoked ones resolve to ``None``."""

        if not token:
            return None
        stmt = (
            select(db_models.AuthSession)
            .options(selectinload(db_models.AuthSession.user))
            .where(db_models.AuthSession.token_hash == hash_token(token))
        )
        record = (await self._session.execute(stmt)).scalars().first()
        if record is None or record.revoked_at is not None:
            return None

        now = utcnow()
        if as_utc(record.expires_at) <= now:
            return None

        refreshed = False
        age = now - as_utc(record.refreshed_at)
        if age >= timedelta(seconds=self._config.session_update_age_seconds):
            record.refreshed_at = now
            record.expires_at = now + timedelta(seconds=self._config.session_ttl_seconds)
            await self._session.flush()
            refreshed = True
        return ResolvedSession(record=record, user=record.user, refreshed=refreshed)

    async def revoke(self, record: db_models.AuthSession) -> None:
        record.revoked_at = utcnow()
        await self._session.flush()

    async def revoke_all(self, user_id: int, *, keep_session_id: int | None = None) -> int:
        stmt = update(db_models.AuthSession).where(
            db_models.AuthSession.user_id == user_id,
            db_models.AuthSession.revoked_at.is_(None),
        )
        if keep_session_id is not None:
            stmt = stmt.where(db_models.AuthSession.id != keep_session_id)
        result = await self._session.execute(stmt.values(revoked_at=utcnow()))
        return result.rowcount or 0

    def set_cookie(self, response: Response, token: str, expires_at: datetime) -> None:
        response.set_cookie(
            key=self._config.session_cookie_name,
            value=token,
            httponly=True,
            secure=self._config.cookie_secure,
            samesite="lax",
            max_age=self._config.session_ttl_seconds,
            expires=as_utc(expires_at),
            path="/",
        )

    def clear_cookie(self, response: Response) -> None:
        response.delete_cookie(
            key=self._config.session_cookie_name,
            path="/",
            httponly=True,
            secure=self._config.cookie_secure,
            samesite="lax",
        )


__all__ = ["ResolvedSession", "SessionService"]
