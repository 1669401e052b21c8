from __future__ import annotations

from typing import Any

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from celebwire.config import CacheSettings
from celebwire.engine.cache import CacheKeys, CacheLayer, MemoryBackend


class FakeRedis:
    """Duck-typed remote backend that can be switched off."""

    name = "redis"

    def __init__(self) -> None:
        self.up = True
        self.data: dict[str, str] = {}
        self.deleted_prefixes: list[str] = []

    def _check(self) -> None:
        if not self.up:
            raise RedisConnectionError("Connection refused")

    async def ping(self) -> bool:
        self._check()
        return True

    async def get(self, key: str) -> str | None:
        self._check()
        return self.data.get(key)

    async def set(self, key: str, payload: str, ttl: int) -> None:
        self._check()
        self.data[key] = payload

    async def delete_prefix(self, prefix: str) -> int:
        self._check()
        self.deleted_prefixes.append(prefix)
        doomed = [key for key in self.data if key.startswith(prefix)]
        for key in doomed:
            del self.data[key]
        return len(doomed)

    async def clear(self) -> int:
        return await self.delete_prefix("")

    async def size(self) -> int:
        self._check()
        return len(self.data)

    async def close(self) -> None:
        pass


@pytest.fixture
def layer(cache_clock) -> CacheLayer:
    return CacheLayer(CacheSettings(redis_url=None), clock=cache_clock)


def test_fingerprint_ignores_order_and_empty_params() -> None:
    first = CacheKeys.fingerprint(CacheKeys.LIST, {"page": 1, "limit": 20, "entity": None})
    second = CacheKeys.fingerprint(CacheKeys.LIST, {"limit": 20, "page": 1})
    other = CacheKeys.fingerprint(CacheKeys.LIST, {"limit": 20, "page": 2})
    assert first == second
    assert first != other
    assert first.startswith("news:list:")


async def test_entry_expires_after_ttl(layer: CacheLayer, cache_clock) -> None:
    await layer.set("news:list:abc", {"articles": []}, ttl=60)
    cache_clock.advance(59)
    assert await layer.get("news:list:abc") == {"articles": []}
    cache_clock.advance(2)
    assert await layer.get("news:list:abc") is None


async def test_memory_backend_drops_entry_exactly_at_expiry(cache_clock) -> None:
    backend = MemoryBackend(cache_clock)
    await backend.set("k", "v", 10)
    cache_clock.advance(10)
    assert await backend.get("k") is None


async def test_memory_backend_sweeps_unread_expired_entries(cache_clock) -> None:
    backend = MemoryBackend(cache_clock)
    await backend.set("old", "v", 10)
    cache_clock.advance(11)
    assert await backend.size() == 0
    await backend.set("older", "v", 5)
    cache_clock.advance(6)
    await backend.set("fresh", "v", 60)
    assert list(backend._entries) == ["fresh"]


async def test_zero_ttl_is_not_replaced_by_default(cache_clock) -> None:
    remote = FakeRedis()
    layer = CacheLayer(CacheSettings(redis_url=None), remote=remote, clock=cache_clock)
    await layer.set("news:list:zero", ["a"], ttl=0)
    assert remote.data == {}
    assert await layer.get("news:list:zero") is None
    assert (await layer.stats())["sets"] == 0


async def test_ttl_per_category(layer: CacheLayer) -> None:
    assert layer.ttl_for(CacheKeys.LIST) == 3600
    assert layer.ttl_for(CacheKeys.SEARCH) == 1800
    assert layer.ttl_for("misc") == layer.settings.default_ttl


async def test_invalidate_news_keeps_other_prefixes(layer: CacheLayer) -> None:
    await layer.set("news:list:1", [1])
    await layer.set("news:search:2", [2])
    await layer.set("stats:articles:3", {"total": 3})
    await layer.set("profile:4", {"id": 4})

    removed = await layer.invalidate_news()

    assert removed == 3
    assert await layer.get("news:list:1") is None
    assert await layer.get("stats:articles:3") is None
    assert await layer.get("profile:4") == {"id": 4}


async def test_stats_report_hit_rate(layer: CacheLayer) -> None:
    await layer.set("news:recent:1", ["a"])
    await layer.get("news:recent:1")
    await layer.get("news:recent:missing")
    stats = await layer.stats()
    assert stats["backend"] == "memory"
    assert (stats["hits"], stats["misses"], stats["sets"]) == (1, 1, 1)
    assert stats["hit_rate"] == 0.5
    assert stats["size"] == 1


async def test_remote_failure_degrades_to_memory(cache_clock) -> None:
    remote = FakeRedis()
    layer = CacheLayer(CacheSettings(reconnect_interval=30), remote=remote, clock=cache_clock)
    await layer.set("news:list:1", [1])
    assert remote.data == {"news:list:1": "[1]"}
    assert layer.backend_name == "redis"

    remote.up = False
    assert await layer.get("news:list:1") is None
    assert layer.degraded
    assert layer.backend_name == "memory"

    await layer.set("news:list:1", [2])
    assert await layer.get("news:list:1") == [2]


async def test_invalidations_while_degraded_are_replayed(cache_clock) -> None:
    remote = FakeRedis()
    layer = CacheLayer(CacheSettings(reconnect_interval=30), remote=remote, clock=cache_clock)
    await layer.set("news:list:1", [1])
    await layer.set("profile:9", {"id": 9})

    remote.up = False
    await layer.get("news:list:1")
    await layer.invalidate_news()
    assert (await layer.stats())["pending_invalidations"] == ["news:", "stats:"]

    remote.up = True
    cache_clock.advance(10)
    assert await layer.get("profile:9") is None  # still inside the reconnect interval
    cache_clock.advance(25)
    assert await layer.get("profile:9") == {"id": 9}
    assert not layer.degraded
    assert "news:list:1" not in remote.data
    assert remote.deleted_prefixes == ["news:", "stats:"]
    assert (await layer.stats())["pending_invalidations"] == []


async def test_failed_reconnect_stays_degraded(cache_clock) -> None:
    remote = FakeRedis()
    layer = CacheLayer(CacheSettings(reconnect_interval=30), remote=remote, clock=cache_clock)
    remote.up = False
    await layer.set("news:list:1", [1])
    cache_clock.advance(31)
    assert await layer.get("news:list:1") == [1]
    assert layer.degraded


async def test_clear_removes_everything(layer: CacheLayer) -> None:
    values: dict[str, Any] = {"news:list:1": 1, "profile:2": 2}
    for key, value in values.items():
        await layer.set(key, value)
    assert await layer.clear() == 2
    assert (await layer.stats())["size"] == 0
