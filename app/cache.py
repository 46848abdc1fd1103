"""Key/value cache with per-entry TTL and interchangeable backends."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Iterable, Protocol

import redis.asyncio as redis

if TYPE_CHECKING:
    from .config import Settings

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass(slots=True)
class CacheEntry:
    value: Any
    expires_at: float


class CacheBackend(Protocol):
    name: str

    async def get(self, key: str) -> Any: ...

    async def set(self, key: str, value: Any, ttl_ms: int) -> None: ...

    async def delete(self, key: str) -> bool: ...

    async def clear(self) -> int: ...

    async def size(self) -> int: ...


class MemoryCacheBackend:
    """Process-local map; expired entries are evicted when next read."""

    name = "memory"

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._store: dict[str, CacheEntry] = {}
        self._clock = clock

    async def get(self, key: str) -> Any:
        entry = self._store.get(key)
        if entry is None:
            return _MISSING
        if self._clock() >= entry.expires_at:
            self._store.pop(key, None)
            return _MISSING
        return entry.value

    async def set(self, key: str, value: Any, ttl_ms: int) -> None:
        self._store[key] = CacheEntry(value, self._clock() + ttl_ms / 1000)

    async def delete(self, key: str) -> bool:
        return self._store.pop(key, None) is not None

    async def clear(self) -> int:
        count = len(self._store)
        self._store.clear()
        return count

    async def size(self) -> int:
        return len(self._store)

    def counts(self) -> tuple[int, int]:
        """Return ``(valid, expired)`` entry counts without evicting."""

        now = self._clock()
        valid = sum(1 for entry in self._store.values() if now < entry.expires_at)
        return valid, len(self._store) - valid


class RedisCacheBackend:
    """Redis-backed store holding JSON-encoded values under a key prefix."""

    name = "redis"

    def __init__(self, client: redis.Redis, *, prefix: str = "catalog:") -> None:
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, *, prefix: str = "catalog:") -> "RedisCacheBackend":
        client = redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=5,
        )
        return cls(client, prefix=prefix)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str) -> Any:
        raw = await self._client.get(self._key(key))
        if raw is None:
            return _MISSING
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl_ms: int) -> None:
        await self._client.set(self._key(key), json.dumps(value), px=max(ttl_ms, 1))

    async def delete(self, key: str) -> bool:
        return bool(await self._client.delete(self._key(key)))

    async def clear(self) -> int:
        removed = 0
        async for key in self._client.scan_iter(match=f"{self._prefix}*"):
            removed += await self._client.delete(key)
        return removed

    async def size(self) -> int:
        count = 0
        async for _ in self._client.scan_iter(match=f"{self._prefix}*"):
            count += 1
        return count

    async def close(self) -> None:
        await self._client.aclose()


class CacheService:
    """Cache facade used by every provider.

    Reads and writes go to the configured backend. When that backend is a
    network store and it fails, writes land in a local map instead and
    reads consult the same map, so callers never see a cache error.
    """

    def __init__(
        self,
        backend: CacheBackend | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._local = MemoryCacheBackend(clock=clock)
        self._backend: CacheBackend = backend or self._local

    @property
    def backend_name(self) -> str:
        return self._backend.name

    @property
    def _has_remote(self) -> bool:
        return self._backend is not self._local

    async def get(self, key: str) -> Any | None:
        """Return the cached value, or ``None`` when absent or expired."""

        if self._has_remote:
            try:
                value = await self._backend.get(key)
            except (redis.RedisError, OSError, ValueError) as exc:
                logger.warning("Cache backend read failed for %s: %s", key, exc)
            else:
                if value is not _MISSING:
                    logger.debug("Cache HIT: %s", key)
                    return value
        value = await self._local.get(key)
        if value is _MISSING:
            logger.debug("Cache MISS: %s", key)
            return None
        logger.debug("Cache HIT (local): %s", key)
        return value

    async def set(self, key: str, value: Any, ttl_ms: int) -> None:
        if self._has_remote:
            try:
                await self._backend.set(key, value, ttl_ms)
                logger.debug("Cache SET: %s (TTL: %ss)", key, ttl_ms / 1000)
                return
            except (redis.RedisError, OSError, TypeError, ValueError) as exc:
                logger.warning(
                    "Cache backend write failed for %s, keeping it in memory: %s",
                    key,
                    exc,
                )
        await self._local.set(key, value, ttl_ms)
        logger.debug("Cache SET (local): %s (TTL: %ss)", key, ttl_ms / 1000)

    async def delete(self, key: str) -> bool:
        removed = await self._local.delete(key)
        if self._has_remote:
            try:
                removed = await self._backend.delete(key) or removed
            except (redis.RedisError, OSError) as exc:
                logger.warning("Cache backend delete failed for %s: %s", key, exc)
        return removed

    async def clear(self, key: str | None = None) -> int:
        """Clear one key, or every entry when ``key`` is omitted."""

        if key is not None:
            return int(await self.delete(key))
        removed = await self._local.clear()
        if self._has_remote:
            try:
                removed += await self._backend.clear()
            except (redis.RedisError, OSError) as exc:
                logger.warning("Cache backend clear failed: %s", exc)
        logger.info("Cache cleared (%s entries)", removed)
        return removed

    async def clear_many(self, keys: Iterable[str]) -> dict[str, bool]:
        return {key: await self.delete(key) for key in keys}

    async def stats(self) -> dict[str, Any]:
        valid, expired = self._local.counts()
        payload: dict[str, Any] = {
            "backend": self.backend_name,
            "local": {"total": valid + expired, "valid": valid, "expired": expired},
        }
        if self._has_remote:
            try:
                payload["remote"] = {"total": await self._backend.size()}
            except (redis.RedisError, OSError) as exc:
                payload["remote"] = {"error": str(exc)}
        return payload

    async def close(self) -> None:
        close = getattr(self._backend, "close", None)
        if close is not None:
            await close()


def build_cache(settings: "Settings") -> CacheService:
    """Select the Redis backend when a connection string is configured."""

    if settings.redis_url:
        logger.info("Using Redis cache backend")
        return CacheService(RedisCacheBackend.from_url(settings.redis_url))
    logger.info("Redis URL not configured, using in-memory cache")
    return CacheService()
