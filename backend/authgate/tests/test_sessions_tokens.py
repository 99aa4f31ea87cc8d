"""Session lifecycle and single-use token tests."""
from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from backend.authgate.app.config import AuthSettings
from backend.authgate.app.security import hash_token
from backend.authgate.app.sessions import SessionService
from backend.authgate.app.timeutils import as_utc, utcnow
from backend.authgate.app.token_service import TokenService
from backend.authgate.db.models import AuthSession, UserToken, UserTokenPurpose

from .utils import create_user


@pytest.mark.asyncio
async def test_session_token_is_stored_hashed(db_session):
    user = await create_user(db_session, email="hash@example.com")
    service = SessionService(db_session, AuthSettings())

    record, token = await service.create(user=user, auth_method="password")
    await db_session.commit()

    assert record.token_hash == hash_token(token)
    assert record.token_hash != token
    assert user.last_login_at is not None

    resolved = await service.resolve(token)
    assert resolved is not None
    assert resolved.user.id == user.id
    assert resolved.refreshed is False
    assert await service.resolve("not-a-token") is None
    assert await service.resolve(None) is None


@pytest.mark.asyncio
async def test_session_expiry_slides_after_update_age(db_session):
    user = await create_user(db_session, email="slide@example.com")
    config = AuthSettings(session_ttl_seconds=7_200, session_update_age_seconds=60)
    service = SessionService(db_session, config)
    record, token = await service.create(user=user, auth_method="password")

    record.refreshed_at = utcnow() - timedelta(seconds=120)
    record.expires_at = utcnow() + timedelta(seconds=100)
    await db_session.commit()

    resolved = await service.resolve(token)
    assert resolved is not None
    assert resolved.refreshed is True
    assert as_utc(resolved.record.expires_at) > utcnow() + timedelta(seconds=7_000)


@pytest.mark.asyncio
async def test_expired_and_revoked_sessions_do_not_resolve(db_session):
    user = await create_user(db_session, email="gone@example.com")
    service = SessionService(db_session, AuthSettings())

    expired, expired_token = await service.create(user=user, auth_method="password")
    expired.expires_at = utcnow() - timedelta(seconds=1)
    revoked, revoked_token = await service.create(user=user, auth_method="password")
    await service.revoke(revoked)
    await db_session.commit()

    assert await service.resolve(expired_token) is None
    assert await service.resolve(revoked_token) is None


@pytest.mark.asyncio
async def test_revoke_all_can_keep_current_session(db_session):
    user = await create_user(db_session, email="many@example.com")
    service = SessionService(db_session, AuthSettings())
    current, _ = await service.create(user=user, auth_method="password")
    await service.create(user=user, auth_method="passkey")
    await service.create(user=user, auth_method="google")

    revoked = await service.revoke_all(user.id, keep_session_id=current.id)
    await db_session.commit()
    assert revoked == 2

    records = (await db_session.execute(select(AuthSession).order_by(AuthSession.id))).scalars().all()
    await db_session.refresh(records[0])
    assert records[0].revoked_at is None
    assert all(record.revoked_at is not None for record in records[1:])


@pytest.mark.asyncio
async def test_issuing_a_token_retires_earlier_ones(db_session):
    user = await create_user(db_session, email="tokens@example.com")
    service = TokenService(db_session)

    _, first = await service.issue(user=user, purpose=UserTokenPurpose.PASSWORD_RESET, ttl_seconds=600)
    _, other = await service.issue(user=user, purpose=UserTokenPurpose.EMAIL_VERIFICATION, ttl_seconds=600)
    _, second = await service.issue(user=user, purpose=UserTokenPurpose.PASSWORD_RESET, ttl_seconds=600)
    await db_session.commit()

    assert await service.consume(token=first, purpose=UserTokenPurpose.PASSWORD_RESET) is None
    assert await service.find_active(token=other, purpose=UserTokenPurpose.EMAIL_VERIFICATION) is not None

    record = await service.consume(token=second, purpose=UserTokenPurpose.PASSWORD_RESET)
    assert record is not None
    assert record.user.email == "tokens@example.com"
    assert await service.consume(token=second, purpose=UserTokenPurpose.PASSWORD_RESET) is None

    stored = (await db_session.execute(select(UserToken))).scalars().all()
    assert all(item.token_hash not in {first, second, other} for item in stored)


@pytest.mark.asyncio
async def test_tokens_are_bound_to_purpose_and_expiry(db_session):
    user = await create_user(db_session, email="purpose@example.com")
    service = TokenService(db_session)

    record, token = await service.issue(user=user, purpose=UserTokenPurpose.TWO_FACTOR_CHALLENGE, ttl_seconds=300)
    assert await service.find_active(token=token, purpose=UserTokenPurpose.PASSWORD_RESET) is None

    record.expires_at = utcnow() - timedelta(seconds=1)
    await db_session.commit()
    assert await service.find_active(token=token, purpose=UserTokenPurpose.TWO_FACTOR_CHALLENGE) is None
