"""TOTP and backup code helpers for two-factor authentication."""
from __future__ import annotations

import secrets
from datetime import datetime

import pyotp
from pyotp.utils import strings_equal
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import models as db_models
from .security import hash_password, verify_password
from .timeutils import utcnow

_BACKUP_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
_BACKUP_CODE_LENGTH = 10


def generate_totp_secret() -> str:
    return pyotp.random_base32()


def build_otpauth_uri(user: db_models.User, secret: str, *, issuer: str) -> str:
    return pyotp.TOTP(secret).provisioning_uri(name=user.email, issuer_name=issuer)


def clean_code(code: str) -> str:
    return "".join(ch for ch in code.strip() if ch.isalnum()).upper()


def match_totp_step(
    secret: str | None,
    code: str,
    *,
    last_step: int | None = None,
    for_time: datetime | None = None,
) -> int | None:
    """Return the time step ``code`` was generated for, or ``None``.

    One step of clock drift is tolerated either way. Steps at or before
    ``last_step`` never match, so an accepted code cannot be replayed.
    """

    if not secret:
        return None
    cleaned = clean_code(code)
    if len(cleaned) != 6 or not cleaned.isdigit():
        return None
    totp = pyotp.TOTP(secret)
    current = totp.timecode(for_time or utcnow())
    for step in range(current - 1, current + 2):
        if last_step is not None and step <= last_step:
            continue
        if strings_equal(cleaned, totp.generate_otp(step)):
            return step
    return None


def verify_totp(user: db_models.User, code: str) -> bool:
    """Check ``code`` against the user's secret and burn its time step."""

    step = match_totp_step(user.totp_secret, code, last_step=user.totp_last_step)
    if step is None:
        return False
    user.totp_last_step = step
    return True


def generate_backup_code() -> str:
    return "".join(secrets.choice(_BACKUP_CODE_ALPHABET) for _ in range(_BACKUP_CODE_LENGTH))


async def rotate_backup_codes(db: AsyncSession, user: db_models.User, *, count: int) -> list[str]:
    """Replace every stored backup code of ``user`` with ``count`` new ones."""

    await clear_backup_codes(db, user)
    codes = [generate_backup_code() for _ in range(count)]
    for code in codes:
        db.add(db_models.TwoFactorBackupCode(user_id=user.id, code_hash=hash_password(code)))
    await db.flush()
    return codes


async def clear_backup_codes(db: AsyncSession, user: db_models.User) -> None:
    await db.execute(
        delete(db_models.TwoFactorBackupCode).where(db_models.TwoFactorBackupCode.user_id == user.id)
    )


async def consume_backup_code(db: AsyncSession, user: db_models.User, code: str) -> bool:
    cleaned = clean_code(code)
    if len(cleaned) != _BACKUP_CODE_LENGTH:
        return False
    stmt = select(db_models.TwoFactorBackupCode).where(
        db_models.TwoFactorBackupCode.user_id == user.id,
        db_models.TwoFactorBackupCode.used_at.is_(None),
    )
    for record in (await db.execute(stmt)).scalars():
        if verify_password(record.code_hash, cleaned):
            record.used_at = utcnow()
            await db.flush()
            return True
    return False


async def remaining_backup_codes(db: AsyncSession, user: db_models.User) -> int:
    stmt = select(db_models.TwoFactorBackupCode.id).where(
        db_models.TwoFactorBackupCode.user_id == user.id,
        db_models.TwoFactorBackupCode.used_at.is_(None),
    )
    return len((await db.execute(stmt)).all())


async def validate_second_factor(db: AsyncSession, user: db_models.User, code: str) -> str | None:
    """Return ``"totp"`` or ``"backup_code"`` for an accepted code, else ``None``."""

    if not clean_code(code):
        return None
    if verify_totp(user, code):
        return "totp"
    if await consume_backup_code(db, user, code):
        return "backup_code"
    return None


__all__ = [
    "build_otpauth_uri",
    "clean_code",
    "clear_backup_codes",
    "consume_backup_code",
    "generate_backup_code",
    "generate_totp_secret",
    "match_totp_step",
    "remaining_backup_codes",
    "rotate_backup_codes",
    "validate_second_factor",
    "verify_totp",
]
