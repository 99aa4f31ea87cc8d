"""Emailed one-time codes for verification, sign-in and password reset."""
from __future__ import annotations

import enum
import hmac
import secrets
from datetime import timedelta
from typing import Tuple

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import models as db_models
from .security import hash_token
from .timeutils import as_utc, utcnow


class OtpCheck(str, enum.Enum):
    """Outcome of checking a submitted code."""

    VALID = "valid"
    INVALID = "invalid"
    EXPIRED = "expired"
    TOO_MANY_ATTEMPTS = "too_many_attempts"


def generate_otp(length: int) -> str:
    return "".join(str(secrets.randbelow(10)) for _ in range(length))


class EmailOtpService:
    """Store hashed codes, one live code per email and type."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        length: int = 6,
        ttl_seconds: int = 300,
        allowed_attempts: int = 3,
    ) -> None:
        self._session = session
        self._length = length
        self._ttl_seconds = ttl_seconds
        self._allowed_attempts = allowed_attempts

    async def _find(self, email: str, otp_type: db_models.EmailOtpType) -> db_models.EmailOtp | None:
        stmt = select(db_models.EmailOtp).where(
            db_models.EmailOtp.email == email,
            db_models.EmailOtp.type == otp_type,
        )
        return (await self._session.execute(stmt)).scalars().first()

    async def issue(
        self, *, email: str, otp_type: db_models.EmailOtpType
    ) -> Tuple[db_models.EmailOtp, str]:
        """Replace any earlier code for ``email`` and ``otp_type`` with a fresh one."""

        await self._session.execute(
            delete(db_models.EmailOtp).where(
                db_models.EmailOtp.email == email,
                db_models.EmailOtp.type == otp_type,
            )
        )
        code = generate_otp(self._length)
        record = db_models.EmailOtp(
            email=email,
            type=otp_type,
            code_hash=hash_token(code),
            attempts=0,
            expires_at=utcnow() + timedelta(seconds=self._ttl_seconds),
        )
        self._session.add(record)
        await self._session.flush()
        return record, code

    async def check(self, *, email: str, otp_type: db_models.EmailOtpType, code: str) -> OtpCheck:
        """Check ``code``; the caller commits so attempt counters persist on failure."""

        record = await self._find(email, otp_type)
        if record is None:
            return OtpCheck.INVALID

        if as_utc(record.expires_at) <= utcnow():
            await self._session.delete(record)
            await self._session.flush()
            return OtpCheck.EXPIRED

        if record.attempts >= self._allowed_attempts:
            await self._session.delete(record)
            await self._session.flush()
            return OtpCheck.TOO_MANY_ATTEMPTS

        if not hmac.compare_digest(record.code_hash, hash_token(code.strip())):
            record.attempts += 1
            await self._session.flush()
            return OtpCheck.INVALID

        await self._session.delete(record)
        await self._session.flush()
        return OtpCheck.VALID


__all__ = ["EmailOtpService", "OtpCheck", "generate_otp"]
