"""Passkey registration, sign-in and management."""
from __future__ import annotations

import json
from types import SimpleNamespace

import pytest
from sqlalchemy import select
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url
from webauthn.helpers.exceptions import InvalidAuthenticationResponse, InvalidRegistrationResponse

from backend.authgate.app import passkeys as passkeys_module
from backend.authgate.app.passkeys import extract_client_challenge
from backend.authgate.db.models import AuditEvent, Authenticator, AuthSession, User, WebAuthnChallenge

from .utils import create_user, sign_in

CREDENTIAL_ID = bytes_to_base64url(b"credential-one")


def _client_data(challenge: str, ceremony: str = "webauthn.get") -> str:
    payload = {"type": ceremony, "challenge": challenge, "origin": "http://localhost"}
    return bytes_to_base64url(json.dumps(payload).encode("utf-8"))


def _assertion(challenge: str, credential_id: str = CREDENTIAL_ID) -> dict:
    return {
        "id": credential_id,
        "rawId": credential_id,
        "type": "public-key",
        "response": {
            "clientDataJSON": _client_data(challenge),
            "authenticatorData": "AAAA",
            "signature": "AAAA",
        },
    }


async def _add_authenticator(db_session, user: User, *, credential_id: str = CREDENTIAL_ID, counter: int = 3) -> Authenticator:
    record = Authenticator(
        user_id=user.id,
        name="Laptop",
        credential_id=credential_id,
        public_key=b"public-key-bytes",
        counter=counter,
        device_type="single_device",
        backed_up=False,
        transports="internal",
    )
    db_session.add(record)
    await db_session.commit()
    await db_session.refresh(record)
    return record


def test_extract_client_challenge():
    assert extract_client_challenge(_assertion("abc123")) == "abc123"
    assert extract_client_challenge({"response": {"clientDataJSON": "not-json"}}) is None
    assert extract_client_challenge({"response": "nope"}) is None
    assert extract_client_challenge({}) is None


@pytest.mark.asyncio
async def test_register_passkey(client, db_session, monkeypatch):
    user = await create_user(db_session, email="keys@example.com")
    await sign_in(client, email="keys@example.com")

    options_response = await client.post("/auth/passkey/registration-options", json={"name": "Phone"})
    assert options_response.status_code == 200
    options = options_response.json()
    assert options["rp"]["id"] == "localhost"
    assert options["user"]["name"] == "keys@example.com"
    assert options["user"]["displayName"] == "Phone"

    await db_session.refresh(user)
    assert user.current_challenge == options["challenge"]

    seen: dict = {}

    def fake_verify(**kwargs):
        seen.update(kwargs)
        return SimpleNamespace(
            credential_id=b"credential-one",
            credential_public_key=b"public-key-bytes",
            sign_count=0,
            credential_device_type="multi_device",
            credential_backed_up=True,
        )

    monkeypatch.setattr(passkeys_module, "verify_registration_response", fake_verify)

    credential = {
        "id": CREDENTIAL_ID,
        "rawId": CREDENTIAL_ID,
        "type": "public-key",
        "response": {
            "clientDataJSON": _client_data(options["challenge"], "webauthn.create"),
            "attestationObject": "AAAA",
            "transports": ["internal", "hybrid", "carrier-pigeon"],
        },
    }
    response = await client.post(
        "/auth/passkey/verify-registration",
        json={"name": "Phone", "response": credential},
    )
    assert response.status_code == 200, response.text
    assert response.json() == {"verified": True}

    assert seen["expected_challenge"] == base64url_to_bytes(options["challenge"])
    assert seen["expected_origin"] == "http://localhost"
    assert seen["expected_rp_id"] == "localhost"

    await db_session.refresh(user)
    assert user.current_challenge is None

    listing = await client.get("/auth/passkey")
    assert listing.status_code == 200
    [entry] = listing.json()
    assert entry["name"] == "Phone"
    assert entry["credentialID"] == CREDENTIAL_ID
    assert entry["deviceType"] == "multi_device"
    assert entry["backedUp"] is True
    assert entry["transports"] == ["internal", "hybrid"]
    assert entry["counter"] == 0


@pytest.mark.asyncio
async def test_registration_requires_pending_challenge(client, db_session):
    await create_user(db_session, email="nochallenge@example.com")
    await sign_in(client, email="nochallenge@example.com")

    response = await client.post(
        "/auth/passkey/verify-registration",
        json={"response": {"id": CREDENTIAL_ID, "response": {}}},
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "No challenge found for user"


@pytest.mark.asyncio
async def test_failed_registration_keeps_challenge(client, db_session, monkeypatch):
    user = await create_user(db_session, email="retry@example.com")
    await sign_in(client, email="retry@example.com")
    options = (await client.post("/auth/passkey/registration-options", json={})).json()

    def fake_verify(**kwargs):
        raise InvalidRegistrationResponse("bad attestation")

    monkeypatch.setattr(passkeys_module, "verify_registration_response", fake_verify)

    response = await client.post(
        "/auth/passkey/verify-registration",
        json={"response": {"id": CREDENTIAL_ID, "response": {}}},
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "Failed to verify registration"

    await db_session.refresh(user)
    assert user.current_challenge == options["challenge"]
    events = (
        await db_session.execute(select(AuditEvent).where(AuditEvent.action == "auth.passkey.register"))
    ).scalars().all()
    assert [event.result for event in events] == ["failure"]


@pytest.mark.asyncio
async def test_duplicate_credential_is_rejected(client, db_session, monkeypatch):
    user = await create_user(db_session, email="dupe@example.com")
    await _add_authenticator(db_session, user)
    await sign_in(client, email="dupe@example.com")

    options = (await client.post("/auth/passkey/registration-options", json={})).json()
    assert [item["id"] for item in options["excludeCredentials"]] == [CREDENTIAL_ID]

    monkeypatch.setattr(
        passkeys_module,
        "verify_registration_response",
        lambda **kwargs: SimpleNamespace(
            credential_id=b"credential-one",
            credential_public_key=b"other",
            sign_count=0,
            credential_device_type="single_device",
            credential_backed_up=False,
        ),
    )
    response = await client.post(
        "/auth/passkey/verify-registration",
        json={"response": {"id": CREDENTIAL_ID, "response": {}}},
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "Credential already registered"
    assert len((await db_session.execute(select(Authenticator))).scalars().all()) == 1


@pytest.mark.asyncio
async def test_sign_in_with_passkey(client, db_session, monkeypatch):
    user = await create_user(db_session, email="passkey@example.com", password=None, email_verified=True)
    authenticator = await _add_authenticator(db_session, user)

    options_response = await client.post(
        "/auth/passkey/authentication-options",
        json={"email": "passkey@example.com"},
    )
    assert options_response.status_code == 200
    options = options_response.json()
    assert [item["id"] for item in options["allowCredentials"]] == [CREDENTIAL_ID]

    stored = (await db_session.execute(select(WebAuthnChallenge))).scalars().one()
    assert stored.challenge == options["challenge"]
    assert stored.user_id == user.id

    seen: dict = {}

    def fake_verify(**kwargs):
        seen.update(kwargs)
        return SimpleNamespace(new_sign_count=4)

    monkeypatch.setattr(passkeys_module, "verify_authentication_response", fake_verify)

    response = await client.post(
        "/auth/passkey/verify-authentication",
        json={"response": _assertion(options["challenge"])},
    )
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["verified"] is True
    assert body["user"]["email"] == "passkey@example.com"
    assert "authgate.session_token=" in response.headers["set-cookie"]

    assert seen["credential_public_key"] == b"public-key-bytes"
    assert seen["credential_current_sign_count"] == 3
    assert seen["expected_challenge"] == base64url_to_bytes(options["challenge"])

    await db_session.refresh(authenticator)
    assert authenticator.counter == 4
    assert authenticator.last_used_at is not None

    session = (await client.get("/auth/session")).json()
    assert session["session"]["authMethod"] == "passkey"
    record = (await db_session.execute(select(AuthSession))).scalars().one()
    assert record.user_id == user.id

    replay = await client.post(
        "/auth/passkey/verify-authentication",
        json={"response": _assertion(options["challenge"])},
    )
    assert replay.status_code == 400
    assert replay.json()["detail"] == "No challenge found for user"


@pytest.mark.asyncio
async def test_discoverable_sign_in_without_email(client, db_session, monkeypatch):
    user = await create_user(db_session, email="discover@example.com")
    await _add_authenticator(db_session, user)

    options = (await client.post("/auth/passkey/authentication-options", json={})).json()
    assert options.get("allowCredentials", []) == []
    stored = (await db_session.execute(select(WebAuthnChallenge))).scalars().one()
    assert stored.user_id is None

    monkeypatch.setattr(
        passkeys_module,
        "verify_authentication_response",
        lambda **kwargs: SimpleNamespace(new_sign_count=9),
    )
    response = await client.post(
        "/auth/passkey/verify-authentication",
        json={"response": _assertion(options["challenge"])},
    )
    assert response.status_code == 200
    assert response.json()["user"]["email"] == "discover@example.com"


@pytest.mark.asyncio
async def test_challenge_bound_to_another_user_is_refused(client, db_session, monkeypatch):
    owner = await create_user(db_session, email="owner@example.com")
    await create_user(db_session, email="other@example.com")
    await _add_authenticator(db_session, owner)

    options = (
        await client.post("/auth/passkey/authentication-options", json={"email": "other@example.com"})
    ).json()

    def fail_if_called(**kwargs):
        raise AssertionError("verification must not run")

    monkeypatch.setattr(passkeys_module, "verify_authentication_response", fail_if_called)
    response = await client.post(
        "/auth/passkey/verify-authentication",
        json={"response": _assertion(options["challenge"])},
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "No challenge found for user"


@pytest.mark.asyncio
async def test_unknown_credential_returns_not_found(client, db_session):
    options = (await client.post("/auth/passkey/authentication-options", json={})).json()

    response = await client.post(
        "/auth/passkey/verify-authentication",
        json={"response": _assertion(options["challenge"], credential_id="bm9wZQ")},
    )
    assert response.status_code == 404
    assert response.json()["detail"] == "Authenticator not found"


@pytest.mark.asyncio
async def test_failed_assertion_consumes_challenge(client, db_session, monkeypatch):
    user = await create_user(db_session, email="bad-sig@example.com")
    authenticator = await _add_authenticator(db_session, user)
    options = (
        await client.post("/auth/passkey/authentication-options", json={"email": "bad-sig@example.com"})
    ).json()

    def fake_verify(**kwargs):
        raise InvalidAuthenticationResponse("signature mismatch")

    monkeypatch.setattr(passkeys_module, "verify_authentication_response", fake_verify)
    failed = await client.post(
        "/auth/passkey/verify-authentication",
        json={"response": _assertion(options["challenge"])},
    )
    assert failed.status_code == 400
    assert failed.json()["detail"] == "Failed to verify authentication"

    retry = await client.post(
        "/auth/passkey/verify-authentication",
        json={"response": _assertion(options["challenge"])},
    )
    assert retry.status_code == 400
    assert retry.json()["detail"] == "No challenge found for user"

    await db_session.refresh(authenticator)
    assert authenticator.counter == 3
    assert (await db_session.execute(select(AuthSession))).scalars().first() is None


@pytest.mark.asyncio
async def test_delete_passkey_checks_owner(client, db_session):
    owner = await create_user(db_session, email="mine@example.com")
    stranger = await create_user(db_session, email="theirs@example.com")
    mine = await _add_authenticator(db_session, owner)
    theirs = await _add_authenticator(db_session, stranger, credential_id=bytes_to_base64url(b"other"))
    await sign_in(client, email="mine@example.com")

    forbidden = await client.delete(f"/auth/passkey/{theirs.id}")
    assert forbidden.status_code == 404
    assert forbidden.json()["detail"] == "Authenticator not found"

    removed = await client.delete(f"/auth/passkey/{mine.id}")
    assert removed.status_code == 200
    assert removed.json()["message"] == "Passkey removed"
    assert (await client.get("/auth/passkey")).json() == []

    remaining = (await db_session.execute(select(Authenticator))).scalars().all()
    assert [record.id for record in remaining] == [theirs.id]


@pytest.mark.asyncio
async def test_passkey_management_requires_session(client):
    assert (await client.get("/auth/passkey")).status_code == 401
    assert (await client.post("/auth/passkey/registration-options", json={})).status_code == 401
