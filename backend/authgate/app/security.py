"""Password hashing, opaque token helpers and Google ID token validation."""
from __future__ import annotations

import hashlib
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Final, Sequence

import jwt
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError
from fastapi import HTTPException, status
from jwt import InvalidTokenError

from .jwks import JWKSClient, JWKSFetchError, JWKSKeyNotFoundError

_PASSWORD_HASHER: Final[PasswordHasher] = PasswordHasher()


def hash_password(password: str) -> str:
    """Hash a password using Argon2id."""

    return _PASSWORD_HASHER.hash(password)


def verify_password(stored_hash: str | None, candidate: str) -> bool:
    """Verify a plaintext password against the stored hash."""

    if not stored_hash:
        return False
    try:
        return _PASSWORD_HASHER.verify(stored_hash, candidate)
    except (VerificationError, InvalidHashError):
        return False


def generate_token(num_bytes: int = 32) -> str:
    return secrets.token_urlsafe(num_bytes)


def hash_token(token: str) -> str:
    """Hash opaque session, link and OTP values before persistence."""

    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _id_token_error(detail: str) -> HTTPException:
    return HTTPException(status.HTTP_401_UNAUTHORIZED, detail=detail)


@dataclass(frozen=True)
class IdTokenClaims:
    """Verified identity asserted by an OpenID Connect provider."""

    subject: str
    issuer: str
    email: str
    email_verified: bool
    name: str | None
    picture: str | None
    expires_at: datetime
    claims: dict[str, Any]


class IdTokenValidator:
    """Validate ID tokens signed with keys published at a JWKS endpoint."""

    def __init__(
        self,
        *,
        jwks_client: JWKSClient,
        audience: str,
        issuers: Sequence[str],
        algorithms: Sequence[str] = ("RS256",),
    ) -> None:
        self._jwks_client = jwks_client
        self._audience = audience
        self._issuers = tuple(issuers)
        self._algorithms = tuple(algorithm.upper() for algorithm in algorithms)

    def _extract_header_requirements(self, token: str) -> tuple[str, str]:
        try:
            header = jwt.get_unverified_header(token)
        except InvalidTokenError as exc:
            raise _id_token_error("Invalid token header") from exc

        kid = header.get("kid")
        if not isinstance(kid, str) or not kid:
            raise _id_token_error("Token missing key identifier")

        algorithm = header.get("alg")
        if not isinstance(algorithm, str):
            raise _id_token_error("Token missing signing algorithm")
        algorithm = algorithm.upper()
        if algorithm not in self._algorithms:
            raise _id_token_error("Unsupported signing algorithm")
        return kid, algorithm

    def _decode_with_jwk(self, token: str, jwk_entry: dict[str, Any], algorithm: str) -> dict[str, Any]:
        try:
            key = jwt.algorithms.get_default_algorithms()[algorithm].from_jwk(json.dumps(jwk_entry))
        except (KeyError, ValueError, InvalidTokenError) as exc:
            raise _id_token_error("Failed to construct verification key") from exc

        try:
            payload = jwt.decode(
                token,
                key,
                algorithms=[algorithm],
                audience=self._audience,
                options={"require": ["sub", "exp", "iss", "aud"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise _id_token_error("Token expired") from exc
        except jwt.InvalidAudienceError as exc:
            raise _id_token_error("Invalid audience") from exc
        except InvalidTokenError as exc:
            raise _id_token_error("Invalid token") from exc

        if payload.get("iss") not in self._issuers:
            raise _id_token_error("Invalid issuer")
        return payload

    @staticmethod
    def _normalise_payload(payload: dict[str, Any]) -> IdTokenClaims:
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject.strip():
            raise _id_token_error("Token subject is missing")

        email = payload.get("email")
        if not isinstance(email, str) or not email.strip():
            raise _id_token_error("Email claim missing from identity token")

        email_verified = payload.get("email_verified")
        if isinstance(email_verified, str):
            email_verified = email_verified.lower() == "true"

        name = payload.get("name")
        picture = payload.get("picture")
        return IdTokenClaims(
            subject=subject,
            issuer=str(payload.get("iss", "")),
            email=email.strip().lower(),
            email_verified=bool(email_verified),
            name=name if isinstance(name, str) and name.strip() else None,
            picture=picture if isinstance(picture, str) and picture.strip() else None,
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
            claims=dict(payload),
        )

    async def validate(self, token: str) -> IdTokenClaims:
        """Validate ``token`` and return the identity it asserts."""

        kid, algorithm = self._extract_header_requirements(token)
        try:
            jwk_entry = await self._jwks_client.get_signing_key(kid)
        except JWKSKeyNotFoundError as exc:
            raise _id_token_error("Unknown signing key") from exc
        except JWKSFetchError as exc:
            raise HTTPException(
                status.HTTP_502_BAD_GATEWAY,
                detail="Unable to fetch identity provider signing keys",
            ) from exc
        return self._normalise_payload(self._decode_with_jwk(token, jwk_entry, algorithm))


__all__ = [
    "IdTokenClaims",
    "IdTokenValidator",
    "generate_token",
    "hash_password",
    "hash_token",
    "verify_password",
]
