"""Rate limiting helpers for authentication endpoints."""
from __future__ import annotations

from dataclasses import dataclass

from .storage import CacheBackend


def _normalise_ip(ip_address: str | None) -> str:
    if not ip_address:
        return "unknown"
    cleaned = ip_address.strip()
    return cleaned or "unknown"


@dataclass(frozen=True, slots=True)
class BruteForceStatus:
    """Failed credential attempts recorded for one email and client."""

    failures: int
    blocked: bool


class BruteForceProtector:
    """Track failed password and second factor attempts per email and IP."""

    def __init__(
        self,
        *,
        cache: CacheBackend,
        max_attempts: int,
        window_seconds: int,
        namespace: str = "auth:bf",
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if window_seconds < 1:
            raise ValueError("window_seconds must be at least 1")

        self._cache = cache
        self._max_attempts = max_attempts
        self._window_seconds = window_seconds
        self._namespace = namespace

    def _make_key(self, email: str, ip_address: str | None) -> str:
        return f"{self._namespace}:attempt:{email.strip().lower()}:{_normalise_ip(ip_address)}"

    async def evaluate(self, *, email: str, ip_address: str | None) -> BruteForceStatus:
        """Return the current status for ``email`` and ``ip_address``."""

        raw = await self._cache.get(self._make_key(email, ip_address))
        failures = int(raw.decode("utf-8")) if raw else 0
        return BruteForceStatus(failures=failures, blocked=failures >= self._max_attempts)

    async def register_failure(self, *, email: str, ip_address: str | None) -> BruteForceStatus:
        """Record a failed authentication attempt."""

        failures, _ = await self._cache.increment(
            self._make_key(email, ip_address), self._window_seconds
        )
        return BruteForceStatus(failures=failures, blocked=failures >= self._max_attempts)

    async def reset(self, *, email: str, ip_address: str | None) -> None:
        """Clear stored counters after a successful authentication."""

        await self._cache.delete(self._make_key(email, ip_address))


@dataclass(frozen=True, slots=True)
class RateLimitResult:
    """Outcome of counting one request against a fixed window."""

    allowed: bool
    count: int
    limit: int
    retry_after: int


class RateLimiter:
    """Fixed window request limiter keyed by an identifier and client IP."""

    def __init__(self, *, cache: CacheBackend, namespace: str = "auth:rl", enabled: bool = True) -> None:
        self._cache = cache
        self._namespace = namespace
        self.enabled = enabled

    async def hit(
        self,
        *,
        identifier: str,
        ip_address: str | None,
        limit: int,
        window_seconds: int,
    ) -> RateLimitResult:
        """Count a request and report whether it is within ``limit``."""

        if limit < 1 or window_seconds < 1:
            raise ValueError("limit and window_seconds must be at least 1")
        if not self.enabled:
            return RateLimitResult(allowed=True, count=0, limit=limit, retry_after=0)

        key = f"{self._namespace}:{identifier}:{_normalise_ip(ip_address)}"
        count, remaining = await self._cache.increment(key, window_seconds)
        return RateLimitResult(
            allowed=count <= limit,
            count=count,
            limit=limit,
            retry_after=remaining,
        )


__all__ = ["BruteForceProtector", "BruteForceStatus", "RateLimitResult", "RateLimiter"]
