"""TOTP two-factor enrolment and sign-in."""
from __future__ import annotations

import time
from datetime import datetime, timezone

import pyotp
import pytest
from sqlalchemy import select

from backend.authgate.app.mfa import match_totp_step
from backend.authgate.db.models import AuditEvent, TwoFactorBackupCode

from .utils import create_user, sign_in


def _totp(secret: str, *, steps: int = 0) -> str:
    return pyotp.TOTP(secret).at(time.time() + steps * 30)


async def _enable_two_factor(client) -> tuple[str, list[str]]:
    setup = await client.post("/auth/two-factor/setup")
    assert setup.status_code == 200
    payload = setup.json()
    secret = payload["secret"]
    assert payload["totpURI"].startswith("otpauth://totp/")
    assert "issuer=Authgate" in payload["totpURI"]

    enable = await client.post("/auth/two-factor/enable", json={"code": _totp(secret, steps=-1)})
    assert enable.status_code == 200, enable.text
    return secret, enable.json()["backupCodes"]


@pytest.mark.asyncio
async def test_enable_two_factor_returns_backup_codes(client, db_session):
    user = await create_user(db_session, email="mfa@example.com")
    await sign_in(client, email="mfa@example.com")

    _, backup_codes = await _enable_two_factor(client)
    assert len(backup_codes) == 10
    assert len(set(backup_codes)) == 10

    await db_session.refresh(user)
    assert user.two_factor_enabled is True

    stored = (await db_session.execute(select(TwoFactorBackupCode))).scalars().all()
    assert len(stored) == 10
    assert all(record.code_hash not in backup_codes for record in stored)

    status_response = await client.get("/auth/two-factor")
    assert status_response.json() == {"enabled": True, "backupCodesRemaining": 10}


@pytest.mark.asyncio
async def test_enable_rejects_invalid_code(client, db_session):
    await create_user(db_session, email="typo@example.com")
    await sign_in(client, email="typo@example.com")
    await client.post("/auth/two-factor/setup")

    response = await client.post("/auth/two-factor/enable", json={"code": "12345x"})
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid verification code"


@pytest.mark.asyncio
async def test_sign_in_requires_second_factor(client, db_session):
    await create_user(db_session, email="second@example.com")
    await sign_in(client, email="second@example.com")
    secret, _ = await _enable_two_factor(client)
    await client.post("/auth/sign-out")

    challenge = await client.post(
        "/auth/sign-in/email",
        json={"email": "second@example.com", "password": "correct-horse"},
    )
    assert challenge.status_code == 202
    body = challenge.json()
    assert body["twoFactorRequired"] is True
    assert body["methods"] == ["totp", "backup_code"]
    assert body["ttlSeconds"] == 300
    assert (await client.get("/auth/session")).json()["isAuthenticated"] is False

    wrong = await client.post(
        "/auth/two-factor/verify",
        json={"challengeToken": body["challengeToken"], "code": "abcdef"},
    )
    assert wrong.status_code == 400
    assert wrong.json()["detail"] == "Invalid verification code"

    verified = await client.post(
        "/auth/two-factor/verify",
        json={"challengeToken": body["challengeToken"], "code": _totp(secret)},
    )
    assert verified.status_code == 200, verified.text
    assert verified.json()["message"] == "Signed in successfully"

    session = (await client.get("/auth/session")).json()
    assert session["isAuthenticated"] is True
    assert session["session"]["authMethod"] == "password+totp"

    reused = await client.post(
        "/auth/two-factor/verify",
        json={"challengeToken": body["challengeToken"], "code": _totp(secret)},
    )
    assert reused.status_code == 400
    assert reused.json()["detail"] == "Invalid or expired challenge"


@pytest.mark.asyncio
async def test_backup_codes_are_single_use(client, db_session):
    await create_user(db_session, email="backup@example.com")
    await sign_in(client, email="backup@example.com")
    _, backup_codes = await _enable_two_factor(client)
    await client.post("/auth/sign-out")

    async def _challenge() -> str:
        response = await client.post(
            "/auth/sign-in/email",
            json={"email": "backup@example.com", "password": "correct-horse"},
        )
        assert response.status_code == 202
        return response.json()["challengeToken"]

    first = await client.post(
        "/auth/two-factor/verify",
        json={"challengeToken": await _challenge(), "code": backup_codes[0].lower()},
    )
    assert first.status_code == 200
    assert (await client.get("/auth/session")).json()["session"]["authMethod"] == "password+backup_code"
    await client.post("/auth/sign-out")

    second = await client.post(
        "/auth/two-factor/verify",
        json={"challengeToken": await _challenge(), "code": backup_codes[0]},
    )
    assert second.status_code == 400
    assert second.json()["detail"] == "Invalid verification code"

    events = (
        await db_session.execute(
            select(AuditEvent).where(AuditEvent.action == "auth.two_factor.verify")
        )
    ).scalars().all()
    assert [event.result for event in events] == ["success", "failure"]


@pytest.mark.asyncio
async def test_disable_requires_proof(client, db_session):
    user = await create_user(db_session, email="off@example.com")
    await sign_in(client, email="off@example.com")
    await _enable_two_factor(client)

    refused = await client.post("/auth/two-factor/disable", json={"password": "nope-nope"})
    assert refused.status_code == 400

    disabled = await client.post("/auth/two-factor/disable", json={"password": "correct-horse"})
    assert disabled.status_code == 200
    assert disabled.json()["message"] == "Two-factor authentication disabled"

    await db_session.refresh(user)
    assert user.two_factor_enabled is False
    assert user.totp_secret is None
    assert (await db_session.execute(select(TwoFactorBackupCode))).scalars().first() is None
    assert (await client.get("/auth/profile")).status_code == 200


@pytest.mark.asyncio
async def test_regenerate_backup_codes(client, db_session):
    await create_user(db_session, email="rotate@example.com")
    await sign_in(client, email="rotate@example.com")
    secret, original = await _enable_two_factor(client)

    response = await client.post(
        "/auth/two-factor/backup-codes",
        json={"code": _totp(secret)},
    )
    assert response.status_code == 200
    fresh = response.json()["backupCodes"]
    assert len(fresh) == 10
    assert not set(fresh) & set(original)


@pytest.mark.asyncio
async def test_failed_second_factor_counts_toward_lockout(client, db_session):
    await create_user(db_session, email="guess@example.com")
    await sign_in(client, email="guess@example.com")
    secret, _ = await _enable_two_factor(client)
    await client.post("/auth/sign-out")

    challenge = await client.post(
        "/auth/sign-in/email",
        json={"email": "guess@example.com", "password": "correct-horse"},
    )
    token = challenge.json()["challengeToken"]

    for _ in range(5):
        wrong = await client.post(
            "/auth/two-factor/verify",
            json={"challengeToken": token, "code": "abcdef"},
        )
        assert wrong.status_code == 400

    blocked = await client.post(
        "/auth/two-factor/verify",
        json={"challengeToken": token, "code": _totp(secret)},
    )
    assert blocked.status_code == 429
    assert blocked.json()["detail"] == "Too many login attempts. Try again later."
    assert (await client.get("/auth/session")).json()["isAuthenticated"] is False


@pytest.mark.asyncio
async def test_accepted_totp_code_cannot_be_replayed(client, db_session):
    user = await create_user(db_session, email="replay@example.com")
    await sign_in(client, email="replay@example.com")
    secret, _ = await _enable_two_factor(client)
    await client.post("/auth/sign-out")

    async def _challenge() -> str:
        response = await client.post(
            "/auth/sign-in/email",
            json={"email": "replay@example.com", "password": "correct-horse"},
        )
        assert response.status_code == 202
        return response.json()["challengeToken"]

    code = _totp(secret)
    first = await client.post(
        "/auth/two-factor/verify",
        json={"challengeToken": await _challenge(), "code": code},
    )
    assert first.status_code == 200

    await db_session.refresh(user)
    assert user.totp_last_step is not None

    refused_proof = await client.post("/auth/two-factor/disable", json={"code": code})
    assert refused_proof.status_code == 400
    await client.post("/auth/sign-out")

    replayed = await client.post(
        "/auth/two-factor/verify",
        json={"challengeToken": await _challenge(), "code": code},
    )
    assert replayed.status_code == 400
    assert replayed.json()["detail"] == "Invalid verification code"


def test_match_totp_step_skips_used_steps():
    secret = pyotp.random_base32()
    totp = pyotp.TOTP(secret)
    moment = datetime(2026, 1, 1, 12, 0, 10, tzinfo=timezone.utc)
    step = totp.timecode(moment)
    code = totp.at(moment)

    assert match_totp_step(secret, code, for_time=moment) == step
    assert match_totp_step(secret, totp.generate_otp(step - 1), for_time=moment) == step - 1
    assert match_totp_step(secret, totp.generate_otp(step + 2), for_time=moment) is None
    assert match_totp_step(secret, code, last_step=step, for_time=moment) is None
    assert match_totp_step(secret, totp.generate_otp(step + 1), last_step=step, for_time=moment) == step + 1
    assert match_totp_step(None, code, for_time=moment) is None
    assert match_totp_step(secret, "12a456", for_time=moment) is None
