"""Issue and redeem single-use tokens for email links and sign-in challenges."""
from __future__ import annotations

from datetime import timedelta
from typing import Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..db import models as db_models
from .security import generate_token, hash_token
from .timeutils import as_utc, utcnow


class TokenService:
    """Issue and consume single-use tokens associated with a user."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def issue(
        self,
        *,
        user: db_models.User,
        purpose: db_models.UserTokenPurpose,
        ttl_seconds: int,
    ) -> Tuple[db_models.UserToken, str]:
        """Create a token for ``user``, retiring earlier live ones of the same purpose."""

        issued_at = utcnow()
        await self._session.execute(
            update(db_models.UserToken)
            .where(
                db_models.UserToken.user_id == user.id,
                db_models.UserToken.purpose == purpose,
                db_models.UserToken.consumed_at.is_(None),
            )
            .values(consumed_at=issued_at)
        )

        token = generate_token()
        record = db_models.UserToken(
            user_id=user.id,
            purpose=purpose,
            token_hash=hash_token(token),
            expires_at=issued_at + timedelta(seconds=int(ttl_seconds)),
        )
        self._session.add(record)
        await self._session.flush()
        return record, token

    async def find_active(
        self,
        *,
        token: str,
        purpose: db_models.UserTokenPurpose,
    ) -> db_models.UserToken | None:
        """Return the unexpired, unconsumed record for ``token`` without redeeming it."""

        stmt = (
            select(db_models.UserToken)
            .options(selectinload(db_models.UserToken.user))
            .where(
                db_models.UserToken.token_hash == hash_token(token),
                db_models.UserToken.purpose == purpose,
            )
        )
        record = (await self._session.execute(stmt)).scalars().first()
        if record is None or record.consumed_at is not None:
            return None
        if as_utc(record.expires_at) <= utcnow():
            return None
        return record

    async def mark_consumed(self, record: db_models.UserToken) -> None:
        record.consumed_at = utcnow()
        await self._session.flush()

    async def consume(
        self,
        *,
        token: str,
        purpose: db_models.UserTokenPurpose,
    ) -> db_models.UserToken | None:
        """Mark ``token`` as consumed and return the associated record if valid."""

        record = await self.find_active(token=token, purpose=purpose)
        if record is not None:
            await self.mark_consumed(record)
        return record


__all__ = ["TokenService"]
