"""
CacheService - namespaced, TTL-based cache over Redis.

Keys look like `cache:data:{namespace}:{sha256(identifier)[:16]}`, so every
namespace can be cleared on its own without touching the others.

Values are JSON. Three tiers pick the default TTL:
- HOT  (5 min)  also kept in a small in-process LRU for fast repeat reads
- WARM (1 hour)
- COLD (1 day)

The cache is an optimisation, never a dependency: every Redis failure or
timeout is logged, counted and treated as a miss (reads) or a no-op (writes).
There is no single-flight; concurrent misses on the same key may each call
the factory.
"""
from collections import OrderedDict
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple
import asyncio
import hashlib
import inspect
import json
import logging
import time

import redis.asyncio as redis
from redis.exceptions import RedisError

import config


logger = logging.getLogger(__name__)


class CacheTier(str, Enum):
    HOT = "hot"
    WARM = "warm"
    COLD = "cold"


class _NamespaceStats:
    __slots__ = ("hits", "misses", "sets", "errors", "evictions")

    def __init__(self):
        self.hits = 0
        self.misses = 0
        self.sets = 0
        self.errors = 0
        self.evictions = 0

    def as_dict(self) -> Dict[str, Any]:
        total = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "errors": self.errors,
            "evictions": self.evictions,
            "hit_rate": (self.hits / total) if total else 0.0,
        }


class CacheService:
    """Namespaced cache with a Redis backend and an in-process hot tier."""

    def __init__(
        self,
        client: Optional[Any] = None,
        redis_url: str = None,
        enabled: bool = None,
        op_timeout: float = None,
        local_max_entries: int = None,
        local_ttl: int = None,
        clock: Callable[[], float] = time.time
    ):
        self.enabled = getattr(config, 'CACHE_ENABLED', True) if enabled is None else enabled
        self.op_timeout = op_timeout or getattr(config, 'CACHE_OP_TIMEOUT', 0.5)
        self.local_max_entries = local_max_entries or getattr(config, 'CACHE_LOCAL_MAX_ENTRIES', 1000)
        self.local_ttl = local_ttl or getattr(config, 'CACHE_LOCAL_TTL', 60)
        self.prefix = getattr(config, 'CACHE_KEY_PREFIX', 'cache:data')
        self.tier_ttls = dict(getattr(config, 'CACHE_TIER_TTLS', {"hot": 300, "warm": 3600, "cold": 86400}))
        self._clock = clock

        if client is not None:
            self.client = client
        elif self.enabled:
            url = redis_url or config.REDIS_URL
            self.client = redis.Redis.from_url(url, decode_responses=True)
        else:
            self.client = None

        # full key -> (expires_at, value, namespace)
        self._local: "OrderedDict[str, Tuple[float, Any, str]]" = OrderedDict()
        self._stats: Dict[str, _NamespaceStats] = {}

    # ------------------------------------------------------------------
    # Keys and bookkeeping
    # ------------------------------------------------------------------

    def make_key(self, namespace: str, identifier: str) -> str:
        digest = hashlib.sha256(identifier.encode("utf-8")).hexdigest()[:16]
        return f"{self.prefix}:{namespace}:{digest}"

    def _ns_stats(self, namespace: str) -> _NamespaceStats:
        stats = self._stats.get(namespace)
        if stats is None:
            stats = self._stats[namespace] = _NamespaceStats()
        return stats

    def _ttl_for(self, ttl: Optional[int], tier: CacheTier) -> int:
        if ttl is not None:
            return int(ttl)
        return int(self.tier_ttls[CacheTier(tier).value])

    async def _call(self, namespace: str, op: str, coro: Awaitable) -> Tuple[bool, Any]:
        """Run one backend call under the op timeout. Returns (ok, result)."""
        try:
            return True, await asyncio.wait_for(coro, timeout=self.op_timeout)
        except (asyncio.TimeoutError, RedisError, OSError) as e:
            self._ns_stats(namespace).errors += 1
            logger.warning("[Cache] %s failed for namespace '%s': %r", op, namespace, e)
            return False, None

    # ------------------------------------------------------------------
    # Local hot tier
    # ------------------------------------------------------------------

    def _local_get(self, key: str) -> Optional[Any]:
        entry = self._local.get(key)
        if entry is None:
            return None
        expires_at, value, _ = entry
        if expires_at <= self._clock():
            del self._local[key]
            return None
        self._local.move_to_end(key)
        return value

    def _local_put(self, namespace: str, key: str, value: Any, ttl: int):
        self._local[key] = (self._clock() + min(ttl, self.local_ttl), value, namespace)
        self._local.move_to_end(key)
        while len(self._local) > self.local_max_entries:
            _, (_, _, evicted_ns) = self._local.popitem(last=False)
            self._ns_stats(evicted_ns).evictions += 1

    def _local_drop(self, key: str):
        self._local.pop(key, None)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get(self, namespace: str, identifier: str) -> Optional[Any]:
        """Return the cached value, or None on miss, expiry or backend failure."""
        stats = self._ns_stats(namespace)
        key = self.make_key(namespace, identifier)

        value = self._local_get(key)
        if value is not None:
            stats.hits += 1
            return value

        if not self.enabled or self.client is None:
            stats.misses += 1
            return None

        ok, raw = await self._call(namespace, "get", self.client.get(key))
        if not ok or raw is None:
            stats.misses += 1
            return None

        try:
            value = json.loads(raw)
        except (TypeError, ValueError):
            stats.misses += 1
            logger.warning("[Cache] Dropping undecodable entry in namespace '%s'", namespace)
            return None

        stats.hits += 1
        return value

    async def set(
        self,
        namespace: str,
        identifier: str,
        value: Any,
        ttl: Optional[int] = None,
        tier: CacheTier = CacheTier.WARM
    ) -> bool:
        """Store a JSON-serialisable value. Returns False when the write was skipped."""
        stats = self._ns_stats(namespace)
        key = self.make_key(namespace, identifier)
        ttl_seconds = self._ttl_for(ttl, tier)

        if not self.enabled:
            return False

        if CacheTier(tier) == CacheTier.HOT:
            self._local_put(namespace, key, value, ttl_seconds)

        if self.client is None:
            return False

        payload = json.dumps(value, default=str)
        ok, _ = await self._call(namespace, "set", self.client.set(key, payload, ex=ttl_seconds))
        if ok:
            stats.sets += 1
        return ok

    async def get_or_set(
        self,
        namespace: str,
        identifier: str,
        factory: Callable[[], Any],
        ttl: Optional[int] = None,
        tier: CacheTier = CacheTier.WARM
    ) -> Any:
        """
        Return the cached value or compute, store and return it.

        Args:
            factory: sync or async callable producing the value
            ttl: seconds; defaults to the tier TTL

        None results are returned but not cached.
        """
        cached = await self.get(namespace, identifier)
        if cached is not None:
            return cached

        value = factory()
        if inspect.isawaitable(value):
            value = await value

        if value is not None:
            await self.set(namespace, identifier, value, ttl=ttl, tier=tier)
        return value

    async def mget(self, namespace: str, identifiers: Iterable[str]) -> Dict[str, Any]:
        """Return {identifier: value} for every identifier that hit."""
        stats = self._ns_stats(namespace)
        unique = list(dict.fromkeys(identifiers))
        found: Dict[str, Any] = {}
        pending: List[Tuple[str, str]] = []

        for identifier in unique:
            key = self.make_key(namespace, identifier)
            value = self._local_get(key)
            if value is not None:
                found[identifier] = value
            else:
                pending.append((identifier, key))

        if pending and self.enabled and self.client is not None:
            ok, raws = await self._call(namespace, "mget", self.client.mget([k for _, k in pending]))
            if ok:
                for (identifier, _), raw in zip(pending, raws):
                    if raw is None:
                        continue
                    try:
                        found[identifier] = json.loads(raw)
                    except (TypeError, ValueError):
                        continue

        stats.hits += len(found)
        stats.misses += len(unique) - len(found)
        return found

    async def mset(
        self,
        namespace: str,
        values: Dict[str, Any],
        ttl: Optional[int] = None,
        tier: CacheTier = CacheTier.WARM
    ) -> bool:
        """Store many values with one round trip."""
        if not values:
            return True
        if not self.enabled:
            return False

        ttl_seconds = self._ttl_for(ttl, tier)
        if CacheTier(tier) == CacheTier.HOT:
            for identifier, value in values.items():
                self._local_put(namespace, self.make_key(namespace, identifier), value, ttl_seconds)

        if self.client is None:
            return False

        async def _write():
            async with self.client.pipeline(transaction=False) as pipe:
                for identifier, value in values.items():
                    pipe.set(self.make_key(namespace, identifier), json.dumps(value, default=str), ex=ttl_seconds)
                return await pipe.execute()

        ok, _ = await self._call(namespace, "mset", _write())
        if ok:
            self._ns_stats(namespace).sets += len(values)
        return ok

    async def delete(self, namespace: str, identifier: str) -> bool:
        key = self.make_key(namespace, identifier)
        self._local_drop(key)
        if not self.enabled or self.client is None:
            return False
        ok, _ = await self._call(namespace, "delete", self.client.delete(key))
        return ok

    async def clear_namespace(self, namespace: str) -> int:
        """Delete every key of one namespace. Returns the number of Redis keys removed."""
        prefix = f"{self.prefix}:{namespace}:"
        for key in [k for k in self._local if k.startswith(prefix)]:
            self._local_drop(key)

        if not self.enabled or self.client is None:
            return 0

        async def _clear() -> int:
            removed = 0
            batch: List[str] = []
            async for key in self.client.scan_iter(match=f"{prefix}*", count=500):
                batch.append(key)
                if len(batch) >= 500:
                    removed += await self.client.delete(*batch)
                    batch = []
            if batch:
                removed += await self.client.delete(*batch)
            return removed

        # Namespace sweeps may touch many keys; give them a wider deadline.
        try:
            return await asyncio.wait_for(_clear(), timeout=self.op_timeout * 20)
        except (asyncio.TimeoutError, RedisError, OSError) as e:
            self._ns_stats(namespace).errors += 1
            logger.warning("[Cache] clear_namespace failed for '%s': %r", namespace, e)
            return 0

    def get_stats(self, namespace: Optional[str] = None) -> Dict[str, Any]:
        if namespace is not None:
            return {**self._ns_stats(namespace).as_dict(), "namespace": namespace}

        totals = _NamespaceStats()
        for stats in self._stats.values():
            totals.hits += stats.hits
            totals.misses += stats.misses
            totals.sets += stats.sets
            totals.errors += stats.errors
            totals.evictions += stats.evictions
        return {
            **totals.as_dict(),
            "local_size": len(self._local),
            "namespaces": {ns: s.as_dict() for ns, s in self._stats.items()},
        }

    async def ping(self) -> bool:
        if not self.enabled or self.client is None:
            return False
        ok, result = await self._call("_health", "ping", self.client.ping())
        return bool(ok and result)

    async def close(self):
        self._local.clear()
        if self.client is not None:
            close = getattr(self.client, "aclose", None) or getattr(self.client, "close", None)
            if close is not None:
                result = close()
                if inspect.isawaitable(result):
                    await result
