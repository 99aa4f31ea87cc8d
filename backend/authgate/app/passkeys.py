"""WebAuthn (passkey) registration and authentication ceremonies.

Cryptographic verification is delegated to ``py_webauthn``. This module keeps
the challenges, persists credentials and tracks signature counters.
"""
from __future__ import annotations

import binascii
import json
from datetime import timedelta
from typing import Any, Mapping

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url
from webauthn.helpers.exceptions import WebAuthnException
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorAttachment,
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from ..db import models as db_models
from .config import WebAuthnSettings
from .logging import get_logger
from .timeutils import as_utc, utcnow


logger = get_logger("authgate.passkeys")

_KNOWN_TRANSPORTS = {transport.value for transport in AuthenticatorTransport}


class PasskeyError(Exception):
    """A ceremony step failed; carries the HTTP status to answer with."""

    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


def _descriptor(authenticator: db_models.Authenticator) -> PublicKeyCredentialDescriptor:
    transports = [
        AuthenticatorTransport(value)
        for value in authenticator.transport_list
        if value in _KNOWN_TRANSPORTS
    ]
    return PublicKeyCredentialDescriptor(
        id=base64url_to_bytes(authenticator.credential_id),
        transports=transports or None,
    )


def _response_transports(credential: Mapping[str, Any]) -> str | None:
    response = credential.get("response")
    raw = response.get("transports") if isinstance(response, Mapping) else None
    if not isinstance(raw, list):
        return None
    cleaned = [item for item in raw if isinstance(item, str) and item in _KNOWN_TRANSPORTS]
    return ",".join(cleaned) or None


def extract_client_challenge(credential: Mapping[str, Any]) -> str | None:
    """Return the base64url challenge echoed in ``clientDataJSON``."""

    response = credential.get("response")
    if not isinstance(response, Mapping):
        return None
    raw = response.get("clientDataJSON")
    if not isinstance(raw, str) or not raw:
        return None
    try:
        client_data = json.loads(base64url_to_bytes(raw))
    except (ValueError, binascii.Error):
        return None
    challenge = client_data.get("challenge") if isinstance(client_data, dict) else None
    return challenge if isinstance(challenge, str) and challenge else None


class PasskeyService:
    """Run passkey ceremonies for one database session."""

    def __init__(self, db: AsyncSession, config: WebAuthnSettings, *, origin: str) -> None:
        self._db = db
        self._config = config
        self._origin = origin

    async def list_authenticators(self, user: db_models.User) -> list[db_models.Authenticator]:
        stmt = (
            select(db_models.Authenticator)
            .where(db_models.Authenticator.user_id == user.id)
            .order_by(db_models.Authenticator.created_at, db_models.Authenticator.id)
        )
        return list((await self._db.execute(stmt)).scalars())

    async def registration_options(self, user: db_models.User, name: str) -> dict[str, Any]:
        existing = await self.list_authenticators(user)
        options = generate_registration_options(
            rp_id=self._config.rp_id,
            rp_name=self._config.rp_name,
            user_id=str(user.id).encode("utf-8"),
            user_name=user.email,
            user_display_name=name,
            attestation=AttestationConveyancePreference.NONE,
            authenticator_selection=AuthenticatorSelectionCriteria(
                authenticator_attachment=AuthenticatorAttachment.PLATFORM,
                resident_key=ResidentKeyRequirement.PREFERRED,
                user_verification=UserVerificationRequirement.PREFERRED,
            ),
            exclude_credentials=[_descriptor(item) for item in existing],
        )
        user.current_challenge = bytes_to_base64url(options.challenge)
        await self._db.flush()
        return json.loads(options_to_json(options))

    async def verify_registration(
        self,
        user: db_models.User,
        name: str,
        credential: Mapping[str, Any],
    ) -> bool:
        expected_challenge = user.current_challenge
        if not expected_challenge:
            raise PasskeyError(400, "No challenge found for user")

        try:
            verification = verify_registration_response(
                credential=dict(credential),
                expected_challenge=base64url_to_bytes(expected_challenge),
                expected_origin=self._origin,
                expected_rp_id=self._config.rp_id,
                require_user_verification=True,
            )
        except (WebAuthnException, ValueError, KeyError, TypeError) as exc:
            logger.warning("passkey_registration_failed", user_id=user.id, error=str(exc))
            raise PasskeyError(400, "Failed to verify registration") from exc

        credential_id = bytes_to_base64url(verification.credential_id)
        duplicate = await self._db.scalar(
            select(db_models.Authenticator.id).where(
                db_models.Authenticator.credential_id == credential_id
            )
        )
        user.current_challenge = None
        if duplicate is not None:
            await self._db.flush()
            raise PasskeyError(400, "Credential already registered")

        device_type = getattr(verification.credential_device_type, "value", verification.credential_device_type)
        self._db.add(
            db_models.Authenticator(
                user_id=user.id,
                name=name,
                credential_id=credential_id,
                public_key=verification.credential_public_key,
                counter=verification.sign_count,
                device_type=str(device_type),
                backed_up=bool(verification.credential_backed_up),
                transports=_response_transports(credential),
            )
        )
        await self._db.flush()
        return True

    async def authentication_options(self, user: db_models.User | None = None) -> dict[str, Any]:
        now = utcnow()
        await self._db.execute(
            delete(db_models.WebAuthnChallenge).where(db_models.WebAuthnChallenge.expires_at <= now)
        )
        allow_credentials = []
        if user is not None:
            allow_credentials = [_descriptor(item) for item in await self.list_authenticators(user)]
        options = generate_authentication_options(
            rp_id=self._config.rp_id,
            allow_credentials=allow_credentials,
            user_verification=UserVerificationRequirement.PREFERRED,
        )
        self._db.add(
            db_models.WebAuthnChallenge(
                challenge=bytes_to_base64url(options.challenge),
                user_id=user.id if user is not None else None,
                expires_at=now + timedelta(seconds=self._config.challenge_ttl_seconds),
            )
        )
        await self._db.flush()
        return json.loads(options_to_json(options))

    async def verify_authentication(self, credential: Mapping[str, Any]) -> db_models.Authenticator:
        """Verify an assertion and return the authenticator that produced it."""

        credential_id = credential.get("id")
        authenticator = None
        if isinstance(credential_id, str) and credential_id:
            stmt = (
                select(db_models.Authenticator)
                .options(selectinload(db_models.Authenticator.user))
                .where(db_models.Authenticator.credential_id == credential_id)
            )
            authenticator = (await self._db.execute(stmt)).scalars().first()
        if authenticator is None:
            raise PasskeyError(404, "Authenticator not found")

        challenge = await self._claim_challenge(credential, authenticator.user_id)
        if challenge is None:
            raise PasskeyError(400, "No challenge found for user")

        try:
            verification = verify_authentication_response(
                credential=dict(credential),
                expected_challenge=base64url_to_bytes(challenge.challenge),
                expected_rp_id=self._config.rp_id,
                expected_origin=self._origin,
                credential_public_key=authenticator.public_key,
                credential_current_sign_count=authenticator.counter,
                require_user_verification=True,
            )
        except (WebAuthnException, ValueError, KeyError, TypeError) as exc:
            logger.warning(
                "passkey_authentication_failed",
                authenticator_id=authenticator.id,
                error=str(exc),
            )
            raise PasskeyError(400, "Failed to verify authentication") from exc

        authenticator.counter = verification.new_sign_count
        authenticator.last_used_at = utcnow()
        await self._db.flush()
        return authenticator

    async def _claim_challenge(
        self, credential: Mapping[str, Any], user_id: int
    ) -> db_models.WebAuthnChallenge | None:
        """Consume the pending challenge echoed by the client, if it is still usable."""

        echoed = extract_client_challenge(credential)
        if echoed is None:
            return None
        stmt = select(db_models.WebAuthnChallenge).where(
            db_models.WebAuthnChallenge.challenge == echoed,
            db_models.WebAuthnChallenge.consumed_at.is_(None),
        )
        record = (await self._db.execute(stmt)).scalars().first()
        if record is None or as_utc(record.expires_at) <= utcnow():
            return None
        if record.user_id is not None and record.user_id != user_id:
            return None
        record.consumed_at = utcnow()
        await self._db.flush()
        return record

    async def remove_authenticator(self, user: db_models.User, authenticator_id: int) -> bool:
        stmt = select(db_models.Authenticator).where(
            db_models.Authenticator.id == authenticator_id,
            db_models.Authenticator.user_id == user.id,
        )
        record = (await self._db.execute(stmt)).scalars().first()
        if record is None:
            return False
        await self._db.delete(record)
        await self._db.flush()
        return True


__all__ = ["PasskeyError", "PasskeyService", "extract_client_challenge"]
