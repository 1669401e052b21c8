"""TTL cache of query responses with Redis backing and an in-process fallback."""

from __future__ import annotations

import hashlib
import json
import time
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable

import redis.asyncio as redis
import structlog
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..config import CacheSettings
from ..logging_conf import component_logger

NEWS_PREFIX = "news:"
STATS_PREFIX = "stats:"
UNAVAILABLE = (RedisConnectionError, RedisTimeoutError, ConnectionError, OSError)


def _encode(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serialisable")


def dumps(value: Any) -> str:
    return json.dumps(value, default=_encode, separators=(",", ":"))


def to_jsonable(value: Any) -> Any:
    """Return ``value`` exactly as a cache hit would: JSON types only."""

    return json.loads(dumps(value))


class CacheKeys:
    """Deterministic fingerprints of query parameters per response category."""

    LIST = "news:list"
    SEARCH = "news:search"
    RECENT = "news:recent"
    TRENDING = "news:trending"
    STATISTICS = "stats:articles"

    @staticmethod
    def fingerprint(category: str, params: dict[str, Any] | None = None) -> str:
        canonical = json.dumps(
            {k: v for k, v in (params or {}).items() if v is not None},
            sort_keys=True,
            default=_encode,
            separators=(",", ":"),
        )
        digest = hashlib.sha1(canonical.encode("utf-8")).hexdigest()[:16]
        return f"{category}:{digest}"


class MemoryBackend:
    """Process-local TTL map; expired entries are dropped on read, write and size."""

    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self.clock = clock
        self._entries: dict[str, tuple[float, str]] = {}

    async def get(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, payload = entry
        if self.clock() >= expires_at:
            del self._entries[key]
            return None
        return payload

    def _sweep(self, now: float) -> None:
        expired = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]

    async def set(self, key: str, payload: str, ttl: int) -> None:
        now = self.clock()
        self._sweep(now)
        self._entries[key] = (now + ttl, payload)

    async def delete_prefix(self, prefix: str) -> int:
        doomed = [key for key in self._entries if key.startswith(prefix)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    async def clear(self) -> int:
        removed = len(self._entries)
        self._entries.clear()
        return removed

    async def size(self) -> int:
        self._sweep(self.clock())
        return len(self._entries)


class RedisBackend:
    """Redis keyspace under ``namespace``; TTL enforced by Redis itself."""

    name = "redis"

    def __init__(self, client: redis.Redis, namespace: str = "celebwire:") -> None:
        self.client = client
        self.namespace = namespace

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def get(self, key: str) -> str | None:
        return await self.client.get(self.namespace + key)

    async def set(self, key: str, payload: str, ttl: int) -> None:
        await self.client.set(self.namespace + key, payload, ex=ttl)

    async def delete_prefix(self, prefix: str) -> int:
        removed = 0
        async for key in self.client.scan_iter(match=f"{self.namespace}{prefix}*", count=500):
            removed += await self.client.delete(key)
        return removed

    async def clear(self) -> int:
        return await self.delete_prefix("")

    async def size(self) -> int:
        count = 0
        async for _ in self.client.scan_iter(match=f"{self.namespace}*", count=500):
            count += 1
        return count

    async def close(self) -> None:
        await self.client.aclose()


@dataclass(slots=True)
class CacheCounters:
    hits: int = 0
    misses: int = 0
    sets: int = 0
    invalidations: int = 0


class CacheLayer:
    """Cache-aside store for query responses.

    Redis is used while reachable. A connection failure flips the layer into
    degraded mode, where the in-process backend answers with the same TTL
    semantics; prefixes invalidated meanwhile are replayed on Redis once a
    reconnect attempt (at most every ``reconnect_interval`` seconds) succeeds.
    """

    def __init__(
        self,
        settings: CacheSettings | None = None,
        *,
        remote: RedisBackend | None = None,
        clock: Callable[[], float] = time.monotonic,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.settings = settings or CacheSettings()
        self.clock = clock
        self.logger = logger or component_logger("cache")
        self.local = MemoryBackend(clock)
        self.remote = remote
        self.counters = CacheCounters()
        self.degraded = False
        self._degraded_at = 0.0
        self._pending: set[str] = set()

    @classmethod
    def from_settings(
        cls,
        settings: CacheSettings,
        *,
        clock: Callable[[], float] = time.monotonic,
        logger: structlog.BoundLogger | None = None,
    ) -> "CacheLayer":
        remote = None
        if settings.redis_url:
            client = redis.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_timeout=settings.socket_timeout,
                socket_connect_timeout=settings.socket_timeout,
            )
            remote = RedisBackend(client)
        return cls(settings, remote=remote, clock=clock, logger=logger)

    @property
    def backend_name(self) -> str:
        if self.remote is None or self.degraded:
            return MemoryBackend.name
        return RedisBackend.name

    def ttl_for(self, category: str) -> int:
        ttl = self.settings.ttl
        return {
            CacheKeys.LIST: ttl.list,
            CacheKeys.SEARCH: ttl.search,
            CacheKeys.RECENT: ttl.recent,
            CacheKeys.TRENDING: ttl.trending,
            CacheKeys.STATISTICS: ttl.statistics,
        }.get(category, self.settings.default_ttl)

    def _degrade(self, operation: str, exc: BaseException) -> None:
        if not self.degraded:
            self.logger.warning("cache_degraded", operation=operation, error=str(exc))
        self.degraded = True
        self._degraded_at = self.clock()

    async def _active_remote(self) -> RedisBackend | None:
        if self.remote is None:
            return None
        if not self.degraded:
            return self.remote
        if self.clock() - self._degraded_at < self.settings.reconnect_interval:
            return None
        try:
            await self.remote.ping()
            for prefix in sorted(self._pending):
                await self.remote.delete_prefix(prefix)
        except UNAVAILABLE as exc:
            self._degraded_at = self.clock()
            self.logger.debug("cache_reconnect_failed", error=str(exc))
            return None
        self.logger.info("cache_recovered", replayed=sorted(self._pending))
        self._pending.clear()
        await self.local.clear()
        self.degraded = False
        return self.remote

    async def get(self, key: str) -> Any | None:
        """Return the cached value or ``None`` on a miss."""

        payload: str | None = None
        remote = await self._active_remote()
        if remote is not None:
            try:
                payload = await remote.get(key)
            except UNAVAILABLE as exc:
                self._degrade("get", exc)
                payload = await self.local.get(key)
        else:
            payload = await self.local.get(key)

        if payload is None:
            self.counters.misses += 1
            return None
        self.counters.hits += 1
        return json.loads(payload)

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        if ttl is None:
            ttl = self.settings.default_ttl
        if ttl <= 0:
            # non-positive TTL: not cached anywhere
            return
        payload = dumps(value)
        self.counters.sets += 1
        remote = await self._active_remote()
        if remote is not None:
            try:
                await remote.set(key, payload, ttl)
                return
            except UNAVAILABLE as exc:
                self._degrade("set", exc)
        await self.local.set(key, payload, ttl)

    async def invalidate(self, prefix_or_key: str) -> int:
        """Drop every entry whose key starts with ``prefix_or_key``."""

        self.counters.invalidations += 1
        removed = await self.local.delete_prefix(prefix_or_key)
        remote = await self._active_remote()
        if remote is not None:
            try:
                removed += await remote.delete_prefix(prefix_or_key)
            except UNAVAILABLE as exc:
                self._degrade("invalidate", exc)
                self._pending.add(prefix_or_key)
        elif self.remote is not None:
            self._pending.add(prefix_or_key)
        self.logger.info("cache_invalidated", prefix=prefix_or_key, removed=removed, backend=self.backend_name)
        return removed

    async def invalidate_news(self) -> int:
        return await self.invalidate(NEWS_PREFIX) + await self.invalidate(STATS_PREFIX)

    async def clear(self) -> int:
        removed = await self.local.clear()
        remote = await self._active_remote()
        if remote is not None:
            try:
                removed += await remote.clear()
            except UNAVAILABLE as exc:
                self._degrade("clear", exc)
                self._pending.add("")
        elif self.remote is not None:
            self._pending.add("")
        self.logger.info("cache_cleared", removed=removed)
        return removed

    async def stats(self) -> dict[str, Any]:
        remote = await self._active_remote()
        size: int
        if remote is not None:
            try:
                size = await remote.size()
            except UNAVAILABLE as exc:
                self._degrade("stats", exc)
                size = await self.local.size()
        else:
            size = await self.local.size()
        lookups = self.counters.hits + self.counters.misses
        return {
            "backend": self.backend_name,
            "degraded": self.degraded,
            "hits": self.counters.hits,
            "misses": self.counters.misses,
            "hit_rate": round(self.counters.hits / lookups, 4) if lookups else 0.0,
            "sets": self.counters.sets,
            "invalidations": self.counters.invalidations,
            "pending_invalidations": sorted(self._pending),
            "size": size,
        }

    async def close(self) -> None:
        if self.remote is not None:
            try:
                await self.remote.close()
            except UNAVAILABLE as exc:
                self.logger.debug("cache_close_failed", error=str(exc))


__all__ = [
    "CacheKeys",
    "CacheLayer",
    "MemoryBackend",
    "NEWS_PREFIX",
    "RedisBackend",
    "STATS_PREFIX",
    "to_jsonable",
]
