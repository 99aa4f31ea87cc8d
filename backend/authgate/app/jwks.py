"""Fetching and caching of JSON Web Key Sets (JWKS)."""
from __future__ import annotations

import asyncio
import time
from typing import Any

import httpx

__all__ = ["JWKSClient", "JWKSFetchError", "JWKSKeyNotFoundError"]


class JWKSFetchError(RuntimeError):
    """Raised when the JWKS endpoint cannot be reached or parsed."""


class JWKSKeyNotFoundError(RuntimeError):
    """Raised when a requested key identifier is not present in the JWKS payload."""


class JWKSClient:
    """Download signing keys from a JWKS endpoint and keep them for a while."""

    def __init__(
        self,
        jwks_url: str,
        *,
        cache_ttl_seconds: int = 3600,
        request_timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not jwks_url:
            raise ValueError("JWKS URL must be provided")
        self._jwks_url = jwks_url
        self._cache_ttl_seconds = max(cache_ttl_seconds, 1)
        self._request_timeout = max(request_timeout, 0.1)
        self._transport = transport
        self._lock = asyncio.Lock()
        self._cached_keys: dict[str, dict[str, Any]] | None = None
        self._cache_expiry: float = 0.0

    async def _fetch_keys(self) -> dict[str, dict[str, Any]]:
        try:
            async with httpx.AsyncClient(
                timeout=self._request_timeout, transport=self._transport
            ) as client:
                response = await client.get(self._jwks_url, headers={"Accept": "application/json"})
        except httpx.HTTPError as exc:
            raise JWKSFetchError("Unable to fetch JWKS payload") from exc

        if response.status_code != 200:
            raise JWKSFetchError(f"Unexpected JWKS status code: {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise JWKSFetchError("JWKS response is not valid JSON") from exc

        keys = data.get("keys") if isinstance(data, dict) else None
        if not isinstance(keys, list) or not keys:
            raise JWKSFetchError("JWKS payload does not contain signing keys")

        mapping: dict[str, dict[str, Any]] = {}
        for entry in keys:
            if not isinstance(entry, dict):
                continue
            kid = entry.get("kid")
            if isinstance(kid, str) and kid:
                mapping[kid] = entry

        if not mapping:
            raise JWKSFetchError("No usable signing keys were found in the JWKS payload")
        return mapping

    async def _get_keys(self, *, force_refresh: bool = False) -> dict[str, dict[str, Any]]:
        async with self._lock:
            now = time.monotonic()
            if force_refresh or self._cached_keys is None or now >= self._cache_expiry:
                self._cached_keys = await self._fetch_keys()
                self._cache_expiry = now + self._cache_ttl_seconds
            return self._cached_keys

    async def get_signing_key(self, kid: str) -> dict[str, Any]:
        """Return the JWK entry matching ``kid``.

        An unknown ``kid`` forces one refresh so rotated keys are picked up
        before the cache expires.
        """

        if not kid:
            raise JWKSKeyNotFoundError("Key identifier (kid) must be provided")

        key = (await self._get_keys()).get(kid)
        if key is not None:
            return key

        key = (await self._get_keys(force_refresh=True)).get(kid)
        if key is None:
            raise JWKSKeyNotFoundError(f"Signing key with kid '{kid}' was not found")
        return key
