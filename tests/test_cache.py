"""
Tests for the namespaced cache service.
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import asyncio

from fakes import FakeClock, FakeRedis


def _cache(**kwargs):
    from services.cache import CacheService

    clock = FakeClock()
    redis = FakeRedis(clock)
    return CacheService(client=redis, enabled=True, clock=clock, **kwargs), redis, clock


def test_get_or_set_computes_once_within_ttl():
    cache, _, clock = _cache()
    calls = []

    async def factory():
        calls.append(1)
        return {"value": len(calls)}

    async def scenario():
        first = await cache.get_or_set("profiles", "U1", factory, ttl=60)
        clock.advance(30)
        second = await cache.get_or_set("profiles", "U1", factory, ttl=60)
        clock.advance(31)
        third = await cache.get_or_set("profiles", "U1", factory, ttl=60)
        return first, second, third

    first, second, third = asyncio.run(scenario())
    assert first == second == {"value": 1}
    assert third == {"value": 2}
    assert len(calls) == 2


def test_get_or_set_accepts_sync_factory_and_skips_none():
    cache, redis, _ = _cache()

    async def scenario():
        assert await cache.get_or_set("ns", "a", lambda: [1, 2, 3]) == [1, 2, 3]
        assert await cache.get_or_set("ns", "b", lambda: None) is None
        return await cache.get("ns", "b")

    assert asyncio.run(scenario()) is None
    assert len(redis.data) == 1


def test_backend_failure_behaves_like_a_miss():
    cache, redis, _ = _cache()
    redis.fail = True
    calls = []

    def factory():
        calls.append(1)
        return "fresh"

    async def scenario():
        assert await cache.get("ns", "k") is None
        assert await cache.set("ns", "k", "v") is False
        assert await cache.get_or_set("ns", "k", factory) == "fresh"
        assert await cache.get_or_set("ns", "k", factory) == "fresh"
        assert await cache.mget("ns", ["k"]) == {}
        assert await cache.clear_namespace("ns") == 0
        assert await cache.ping() is False

    asyncio.run(scenario())
    assert len(calls) == 2
    stats = cache.get_stats("ns")
    assert stats["errors"] >= 5
    assert stats["hits"] == 0


def test_hot_tier_is_served_locally():
    from services.cache import CacheTier

    cache, redis, _ = _cache()

    async def scenario():
        await cache.set("context:C1", "q", {"n": 1}, tier=CacheTier.HOT)
        redis.fail = True
        return await cache.get("context:C1", "q")

    assert asyncio.run(scenario()) == {"n": 1}
    assert cache.get_stats("context:C1")["hits"] == 1


def test_local_tier_evicts_least_recent():
    from services.cache import CacheTier

    cache, _, _ = _cache(local_max_entries=2)

    async def scenario():
        for name in ("a", "b", "c"):
            await cache.set("ns:sub", name, name, tier=CacheTier.HOT)

    asyncio.run(scenario())
    assert cache.get_stats()["local_size"] == 2
    assert cache.get_stats("ns:sub")["evictions"] == 1


def test_mget_and_mset_round_trip_once():
    cache, redis, _ = _cache()

    async def scenario():
        await cache.mset("embeddings", {"h1": [0.1, 0.2], "h2": [0.3, 0.4]}, ttl=100)
        return await cache.mget("embeddings", ["h1", "h2", "h3", "h1"])

    found = asyncio.run(scenario())
    assert found == {"h1": [0.1, 0.2], "h2": [0.3, 0.4]}
    assert redis.calls["mget"] == 1
    assert redis.calls["set"] == 0
    stats = cache.get_stats("embeddings")
    assert stats["hits"] == 2
    assert stats["misses"] == 1
    assert stats["sets"] == 2


def test_clear_namespace_leaves_other_namespaces():
    cache, _, _ = _cache()

    async def scenario():
        await cache.set("messages:C1", "recent:24:20", [1])
        await cache.set("messages:C1", "recent:48:10", [2])
        await cache.set("messages:C2", "recent:24:20", [3])
        removed = await cache.clear_namespace("messages:C1")
        return (
            removed,
            await cache.get("messages:C1", "recent:24:20"),
            await cache.get("messages:C2", "recent:24:20"),
        )

    removed, cleared, kept = asyncio.run(scenario())
    assert removed == 2
    assert cleared is None
    assert kept == [3]


def test_keys_are_prefixed_and_namespaced():
    cache, _, _ = _cache()
    key = cache.make_key("embeddings", "some text")
    assert key.startswith("cache:data:embeddings:")
    assert cache.make_key("embeddings", "some text") == key
    assert cache.make_key("context", "some text") != key


def test_disabled_cache_never_stores():
    from services.cache import CacheService

    cache = CacheService(enabled=False)
    calls = []

    async def scenario():
        await cache.get_or_set("ns", "k", lambda: calls.append(1) or "v")
        await cache.get_or_set("ns", "k", lambda: calls.append(1) or "v")

    asyncio.run(scenario())
    assert len(calls) == 2


def test_disabled_cache_skips_hot_tier():
    from services.cache import CacheService, CacheTier

    cache = CacheService(enabled=False)
    calls = []

    async def scenario():
        stored = await cache.set("ns", "k", {"v": 1}, tier=CacheTier.HOT)
        stored_many = await cache.mset("ns", {"a": 1, "b": 2}, tier=CacheTier.HOT)
        single = await cache.get("ns", "k")
        many = await cache.mget("ns", ["a", "b"])
        for _ in range(2):
            await cache.get_or_set("ns", "h", lambda: calls.append(1) or "v", tier=CacheTier.HOT)
        return stored, stored_many, single, many

    stored, stored_many, single, many = asyncio.run(scenario())
    assert stored is False and stored_many is False
    assert single is None
    assert many == {}
    assert len(calls) == 2
