"""Cache backends for rate limit counters and short-lived OAuth state."""
from __future__ import annotations

import asyncio
import heapq
import time
from typing import Optional

import redis.asyncio as redis

from .logging import get_logger


logger = get_logger("authgate.storage")


class CacheBackend:
    """Minimal async key/value interface with expiry."""

    async def get(self, key: str) -> Optional[bytes]:  # pragma: no cover - interface
        raise NotImplementedError

    async def set(self, key: str, value: bytes, ttl: Optional[int] = None) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def delete(self, key: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def pop(self, key: str) -> Optional[bytes]:  # pragma: no cover - interface
        """Return and remove ``key`` in one step."""

        raise NotImplementedError

    async def increment(self, key: str, ttl: int) -> tuple[int, int]:  # pragma: no cover - interface
        """Increment a counter, starting its ``ttl`` window on first use.

        Returns the new count and the seconds left in the window.
        """

        raise NotImplementedError

    async def close(self) -> None:
        return None


class MemoryCache(CacheBackend):
    """Process local cache used when Redis isn't configured.

    Every write also evicts the entries whose expiry has passed, using a heap
    ordered by expiry time.
    """

    def __init__(self) -> None:
        self._store: dict[str, tuple[bytes, Optional[float]]] = {}
        self._expiries: list[tuple[float, str]] = []
        self._lock = asyncio.Lock()

    def _evict_expired(self, now: float) -> None:
        while self._expiries and self._expiries[0][0] <= now:
            expires_at, key = heapq.heappop(self._expiries)
            entry = self._store.get(key)
            # The key may have been rewritten with a later expiry since.
            if entry is not None and entry[1] == expires_at:
                del self._store[key]

    def _put(self, key: str, value: bytes, expires_at: Optional[float]) -> None:
        previous = self._store.get(key)
        self._store[key] = (value, expires_at)
        if expires_at is not None and (previous is None or previous[1] != expires_at):
            heapq.heappush(self._expiries, (expires_at, key))

    def _live_entry(self, key: str) -> tuple[bytes, Optional[float]] | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            self._store.pop(key, None)
            return None
        return entry

    async def get(self, key: str) -> Optional[bytes]:
        async with self._lock:
            entry = self._live_entry(key)
            return entry[0] if entry else None

    async def set(self, key: str, value: bytes, ttl: Optional[int] = None) -> None:
        async with self._lock:
            now = time.monotonic()
            self._evict_expired(now)
            self._put(key, value, now + ttl if ttl else None)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._store.pop(key, None)

    async def pop(self, key: str) -> Optional[bytes]:
        async with self._lock:
            entry = self._live_entry(key)
            self._store.pop(key, None)
            return entry[0] if entry else None

    async def increment(self, key: str, ttl: int) -> tuple[int, int]:
        async with self._lock:
            now = time.monotonic()
            self._evict_expired(now)
            entry = self._live_entry(key)
            if entry is None:
                count, expires_at = 1, now + ttl
            else:
                count = int(entry[0].decode("utf-8")) + 1
                expires_at = entry[1] if entry[1] is not None else now + ttl
            self._put(key, str(count).encode("utf-8"), expires_at)
            return count, max(int(expires_at - now + 0.999), 1)


class RedisCache(CacheBackend):
    """Redis backed cache using ``redis.asyncio``."""

    def __init__(self, url: str) -> None:
        self._client = redis.from_url(url)

    async def get(self, key: str) -> Optional[bytes]:
        return await self._client.get(key)

    async def set(self, key: str, value: bytes, ttl: Optional[int] = None) -> None:
        await self._client.set(name=key, value=value, ex=ttl)

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def pop(self, key: str) -> Optional[bytes]:
        return await self._client.getdel(key)

    async def increment(self, key: str, ttl: int) -> tuple[int, int]:
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, ttl, nx=True)
            pipe.ttl(key)
            count, _, remaining = await pipe.execute()
        return int(count), max(int(remaining), 1)

    async def close(self) -> None:
        await self._client.aclose()


def build_cache(redis_url: str | None) -> CacheBackend:
    if redis_url:
        logger.info("cache_backend_selected", backend="redis")
        return RedisCache(redis_url)
    return MemoryCache()


__all__ = ["CacheBackend", "MemoryCache", "RedisCache", "build_cache"]
