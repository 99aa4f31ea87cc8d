"""Email and password account flow tests."""
from __future__ import annotations

from urllib.parse import parse_qs, urlsplit

import pytest
from sqlalchemy import select

from backend.authgate.app.security import verify_password
from backend.authgate.db.models import AuditEvent, AuthSession, User

from .utils import create_user, last_email, sign_in

COOKIE_NAME = "authgate.session_token"


@pytest.mark.asyncio
async def test_sign_up_creates_user_session_and_sends_code(client, db_session, email_dispatcher):
    response = await client.post(
        "/auth/sign-up/email",
        json={"email": "New.User@Example.com", "password": "longenough", "name": "New User"},
    )
    assert response.status_code == 200, response.text
    payload = response.json()
    assert payload["success"] is True
    assert payload["message"] == "Account created successfully"
    assert payload["user"]["email"] == "new.user@example.com"
    assert payload["user"]["emailVerified"] is False
    assert payload["user"]["twoFactorEnabled"] is False

    set_cookie = response.headers.get("set-cookie")
    assert set_cookie is not None
    assert f"{COOKIE_NAME}=" in set_cookie
    assert "HttpOnly" in set_cookie
    assert "samesite=lax" in set_cookie.lower()

    user = (await db_session.execute(select(User))).scalars().one()
    assert user.password_hash != "longenough"
    assert verify_password(user.password_hash, "longenough")

    sent = last_email(email_dispatcher, to="new.user@example.com", kind="otp")
    assert sent["type"] == "email-verification"
    assert len(sent["otp"]) == 6 and sent["otp"].isdigit()

    session_response = await client.get("/auth/session")
    state = session_response.json()
    assert state["isAuthenticated"] is True
    assert state["isEmailVerified"] is False
    assert state["requiresVerification"] is True
    assert state["verificationStatus"] == {
        "isVerified": False,
        "canAccessProtected": False,
        "shouldRedirectToVerification": True,
    }
    assert state["session"]["authMethod"] == "password"


@pytest.mark.asyncio
async def test_sign_up_rejects_duplicate_email(client, db_session):
    await create_user(db_session, email="taken@example.com")

    response = await client.post(
        "/auth/sign-up/email",
        json={"email": "TAKEN@example.com", "password": "longenough", "name": "Someone"},
    )
    assert response.status_code == 409
    assert response.json()["detail"] == "An account with this email already exists"

    events = (
        await db_session.execute(select(AuditEvent).where(AuditEvent.action == "auth.sign_up"))
    ).scalars().all()
    assert [event.result for event in events] == ["failure"]
    assert events[0].metadata_json["reason"] == "email_taken"


@pytest.mark.asyncio
async def test_sign_up_validates_password_length(client):
    response = await client.post(
        "/auth/sign-up/email",
        json={"email": "short@example.com", "password": "short", "name": "Short"},
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_sign_in_with_wrong_password_is_rejected(client, db_session):
    await create_user(db_session, email="user@example.com")

    response = await client.post(
        "/auth/sign-in/email",
        json={"email": "user@example.com", "password": "not-the-password"},
    )
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid email or password"

    unknown = await client.post(
        "/auth/sign-in/email",
        json={"email": "nobody@example.com", "password": "whatever"},
    )
    assert unknown.status_code == 401
    assert unknown.json()["detail"] == "Invalid email or password"


@pytest.mark.asyncio
async def test_sign_in_blocks_after_repeated_failures(client, db_session):
    await create_user(db_session, email="target@example.com")

    for _ in range(5):
        response = await client.post(
            "/auth/sign-in/email",
            json={"email": "target@example.com", "password": "wrong-password"},
        )
        assert response.status_code == 401

    blocked = await client.post(
        "/auth/sign-in/email",
        json={"email": "target@example.com", "password": "correct-horse"},
    )
    assert blocked.status_code == 429
    assert blocked.json()["detail"] == "Too many login attempts. Try again later."


@pytest.mark.asyncio
async def test_sign_in_session_profile_and_sign_out(client, db_session):
    await create_user(db_session, email="member@example.com", email_verified=True)

    payload = await sign_in(client, email="member@example.com")
    assert payload["message"] == "Signed in successfully"
    assert payload["user"]["emailVerified"] is True

    profile = await client.get("/auth/profile")
    assert profile.status_code == 200
    assert profile.json()["user"]["email"] == "member@example.com"
    assert profile.json()["session"]["authMethod"] == "password"

    verified = await client.get("/auth/profile/verified")
    assert verified.status_code == 200

    sign_out = await client.post("/auth/sign-out")
    assert sign_out.status_code == 200
    assert sign_out.json()["message"] == "Signed out successfully"

    record = (await db_session.execute(select(AuthSession))).scalars().one()
    assert record.revoked_at is not None

    anonymous = await client.get("/auth/session")
    assert anonymous.json() == {
        "user": None,
        "session": None,
        "isAuthenticated": False,
        "isEmailVerified": False,
        "requiresVerification": False,
        "verificationStatus": None,
    }
    assert (await client.get("/auth/profile")).status_code == 401


@pytest.mark.asyncio
async def test_verified_profile_requires_verified_email(client, db_session):
    await create_user(db_session, email="pending@example.com")
    await sign_in(client, email="pending@example.com")

    response = await client.get("/auth/profile/verified")
    assert response.status_code == 403
    assert response.json()["detail"] == "You must verify your email address to access this resource"


@pytest.mark.asyncio
async def test_profile_requires_session(client):
    response = await client.get("/auth/profile")
    assert response.status_code == 401
    assert response.json()["detail"] == "Not authenticated"


@pytest.mark.asyncio
async def test_sign_out_requires_session(client):
    response = await client.post("/auth/sign-out")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_email_link_verification_flow(client, db_session, email_dispatcher):
    user = await create_user(db_session, email="verify@example.com")

    response = await client.post(
        "/auth/send-verification-email",
        json={"email": "verify@example.com", "callbackURL": "/dashboard"},
    )
    assert response.status_code == 200
    assert response.json()["message"] == "Verification email sent successfully"

    sent = last_email(email_dispatcher, to="verify@example.com", kind="email_verification")
    link = urlsplit(sent["url"])
    assert link.path == "/auth/verify-email"
    query = parse_qs(link.query)
    assert query["callbackURL"] == ["/dashboard"]
    token = query["token"][0]

    verify = await client.get("/auth/verify-email", params={"token": token})
    assert verify.status_code == 200
    assert verify.json()["message"] == "Email verified successfully"

    await db_session.refresh(user)
    assert user.email_verified is True

    reused = await client.get("/auth/verify-email", params={"token": token})
    assert reused.status_code == 400
    assert reused.json()["detail"] == "Invalid or expired verification token"


@pytest.mark.asyncio
async def test_verify_email_redirects_to_callback(client, db_session, email_dispatcher):
    await create_user(db_session, email="redirect@example.com")
    await client.post("/auth/send-verification-email", json={"email": "redirect@example.com"})
    token = parse_qs(urlsplit(last_email(email_dispatcher, to="redirect@example.com")["url"]).query)["token"][0]

    response = await client.get(
        "/auth/verify-email",
        params={"token": token, "callbackURL": "/welcome"},
    )
    assert response.status_code == 302
    assert response.headers["location"] == "/welcome"

    failed = await client.get(
        "/auth/verify-email",
        params={"token": token, "callbackURL": "/welcome"},
    )
    assert failed.status_code == 302
    assert failed.headers["location"] == "/welcome?error=invalid_token"


@pytest.mark.asyncio
async def test_send_verification_email_is_silent_for_unknown_accounts(client, email_dispatcher):
    response = await client.post(
        "/auth/send-verification-email",
        json={"email": "ghost@example.com"},
    )
    assert response.status_code == 200
    assert email_dispatcher.list_captured() == []


@pytest.mark.asyncio
async def test_redirect_targets_must_be_trusted(client, db_session):
    await create_user(db_session, email="redirects@example.com")

    rejected = await client.post(
        "/auth/send-verification-email",
        json={"email": "redirects@example.com", "callbackURL": "https://evil.example.net/steal"},
    )
    assert rejected.status_code == 400
    assert rejected.json()["detail"] == "Invalid redirect URL"

    protocol_relative = await client.post(
        "/auth/forgot-password",
        json={"email": "redirects@example.com", "redirectTo": "//evil.example.net"},
    )
    assert protocol_relative.status_code == 400

    trusted = await client.post(
        "/auth/forgot-password",
        json={"email": "redirects@example.com", "redirectTo": "https://app.example.com/reset"},
    )
    assert trusted.status_code == 200


@pytest.mark.asyncio
async def test_password_reset_flow_revokes_sessions(client, db_session, email_dispatcher):
    user = await create_user(db_session, email="reset@example.com")
    await sign_in(client, email="reset@example.com")

    response = await client.post("/auth/forgot-password", json={"email": "reset@example.com"})
    assert response.status_code == 200
    assert response.json()["message"] == "Password reset email sent successfully"

    sent = last_email(email_dispatcher, to="reset@example.com", kind="password_reset")
    link = urlsplit(sent["url"])
    assert f"{link.scheme}://{link.netloc}{link.path}" == "http://localhost:3000/auth/reset-password"
    assert "This link will expire in 1 hour." in sent["text"]
    token = parse_qs(link.query)["token"][0]

    reset = await client.post(
        "/auth/reset-password",
        json={"token": token, "newPassword": "brand-new-password"},
    )
    assert reset.status_code == 200
    assert reset.json()["message"] == "Password reset successfully"

    await db_session.refresh(user)
    assert verify_password(user.password_hash, "brand-new-password")

    sessions = (await db_session.execute(select(AuthSession))).scalars().all()
    assert sessions and all(record.revoked_at is not None for record in sessions)
    assert (await client.get("/auth/profile")).status_code == 401

    reused = await client.post(
        "/auth/reset-password",
        json={"token": token, "newPassword": "another-password"},
    )
    assert reused.status_code == 400
    assert reused.json()["detail"] == "Invalid or expired reset token"


@pytest.mark.asyncio
async def test_forgot_password_answers_the_same_for_unknown_accounts(client, email_dispatcher):
    response = await client.post("/auth/forgot-password", json={"email": "missing@example.com"})
    assert response.status_code == 200
    assert response.json()["message"] == "Password reset email sent successfully"
    assert email_dispatcher.list_captured() == []
