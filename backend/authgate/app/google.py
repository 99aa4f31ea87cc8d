"""Google OAuth 2.0 authorization code flow with PKCE and ID token checks."""
from __future__ import annotations

import base64
import hashlib
import json
import secrets
from dataclasses import dataclass
from urllib.parse import urlencode

import httpx
from fastapi import HTTPException, status

from .config import GoogleSettings
from .jwks import JWKSClient
from .logging import get_logger
from .security import IdTokenClaims, IdTokenValidator
from .storage import CacheBackend


logger = get_logger("authgate.google")

_STATE_NAMESPACE = "auth:oauth:google"


def generate_pkce_pair() -> tuple[str, str]:
    """Return a ``(code_verifier, code_challenge)`` pair using S256."""

    verifier = secrets.token_urlsafe(64)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return verifier, challenge


@dataclass(frozen=True)
class PendingAuthorization:
    """State remembered between the redirect to Google and the callback."""

    code_verifier: str
    redirect_uri: str
    callback_url: str


class GoogleOAuthClient:
    """Talk to Google's authorization, token and JWKS endpoints."""

    def __init__(
        self,
        config: GoogleSettings,
        *,
        cache: CacheBackend,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._cache = cache
        self._transport = transport
        self._validator: IdTokenValidator | None = None
        if config.client_id:
            self._validator = IdTokenValidator(
                jwks_client=JWKSClient(
                    config.jwks_url,
                    cache_ttl_seconds=config.jwks_cache_ttl_seconds,
                    request_timeout=config.request_timeout_seconds,
                    transport=transport,
                ),
                audience=config.client_id,
                issuers=config.issuers,
            )

    @property
    def configured(self) -> bool:
        return self._config.configured

    def _ensure_configured(self) -> None:
        if not self.configured:
            raise HTTPException(
                status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Google sign-in is not configured",
            )

    async def begin(self, *, redirect_uri: str, callback_url: str) -> str:
        """Remember a fresh state and return the Google authorization URL."""

        self._ensure_configured()
        state = secrets.token_urlsafe(32)
        verifier, challenge = generate_pkce_pair()
        pending = {
            "code_verifier": verifier,
            "redirect_uri": redirect_uri,
            "callback_url": callback_url,
        }
        await self._cache.set(
            f"{_STATE_NAMESPACE}:{state}",
            json.dumps(pending).encode("utf-8"),
            self._config.state_ttl_seconds,
        )
        query = urlencode(
            {
                "client_id": self._config.client_id,
                "redirect_uri": redirect_uri,
                "response_type": "code",
                "scope": " ".join(self._config.scopes),
                "state": state,
                "code_challenge": challenge,
                "code_challenge_method": "S256",
                "access_type": "online",
                "prompt": "select_account",
            }
        )
        return f"{self._config.authorization_url}?{query}"

    async def take_state(self, state: str) -> PendingAuthorization | None:
        """Return and forget the authorization started with ``state``."""

        raw = await self._cache.pop(f"{_STATE_NAMESPACE}:{state}")
        if raw is None:
            return None
        data = json.loads(raw.decode("utf-8"))
        return PendingAuthorization(
            code_verifier=data["code_verifier"],
            redirect_uri=data["redirect_uri"],
            callback_url=data["callback_url"],
        )

    async def exchange_code(self, *, code: str, pending: PendingAuthorization) -> str:
        """Exchange an authorization code and return the ID token."""

        self._ensure_configured()
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "code_verifier": pending.code_verifier,
            "redirect_uri": pending.redirect_uri,
            "client_id": self._config.client_id,
            "client_secret": self._config.client_secret,
        }
        try:
            async with httpx.AsyncClient(
                timeout=self._config.request_timeout_seconds, transport=self._transport
            ) as client:
                response = await client.post(
                    self._config.token_url,
                    data=form,
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as exc:
            logger.warning("google_token_exchange_failed", error=str(exc))
            raise HTTPException(
                status.HTTP_502_BAD_GATEWAY,
                detail="Unable to complete authorization code exchange",
            ) from exc

        if response.status_code >= 400:
            logger.warning(
                "google_token_exchange_rejected",
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise HTTPException(
                status.HTTP_502_BAD_GATEWAY,
                detail="Authorization code exchange was rejected",
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise HTTPException(
                status.HTTP_502_BAD_GATEWAY,
                detail="Identity provider returned an invalid response",
            ) from exc

        id_token = payload.get("id_token") if isinstance(payload, dict) else None
        if not isinstance(id_token, str) or not id_token.strip():
            logger.error("google_token_response_missing_id_token")
            raise HTTPException(
                status.HTTP_502_BAD_GATEWAY,
                detail="Identity provider response missing id_token",
            )
        return id_token

    async def verify_id_token(self, id_token: str) -> IdTokenClaims:
        self._ensure_configured()
        assert self._validator is not None
        return await self._validator.validate(id_token)


__all__ = ["GoogleOAuthClient", "PendingAuthorization", "generate_pkce_pair"]
