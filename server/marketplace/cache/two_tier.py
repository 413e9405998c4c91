"""Two-tier cache: a bounded in-memory tier in front of a persistent tier."""

import asyncio
import functools
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from ..core.observability import MetricsCollector
from .store import CacheStore, glob_to_regex

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass
class _MemoryEntry:
    payload: str
    expires_at: float


class TwoTierCache:
    """
    Cache with TTL expiry and pattern invalidation over two tiers.

    Writes go to both tiers. Reads try memory first, then the persistent
    tier; a live persistent hit is promoted into memory with its remaining
    lifetime. The memory tier holds at most ``max_memory_entries`` entries
    and evicts the oldest inserted entry first (FIFO); re-setting a key
    moves it to the newest position.

    Values are stored as JSON, so callers always receive a fresh copy.

    Removals bump a generation counter before and after they reach the
    persistent tier. A read that awaited the persistent tier across a bump
    returns what it read but does not promote it, so an invalidated value
    never comes back into memory.
    """

    def __init__(
        self,
        store: Optional[CacheStore] = None,
        max_memory_entries: int = 100,
        default_ttl: int = 300,
        clock: Callable[[], float] = time.time,
    ):
        if max_memory_entries < 1:
            raise ValueError("max_memory_entries must be at least 1")
        if default_ttl <= 0:
            raise ValueError("default_ttl must be positive")

        self.store = store
        self.max_memory_entries = max_memory_entries
        self.default_ttl = default_ttl
        self.clock = clock
        self._memory: OrderedDict[str, _MemoryEntry] = OrderedDict()
        self._key_locks: dict[str, asyncio.Lock] = {}
        self._key_users: dict[str, int] = {}
        self._write_lock = asyncio.Lock()
        self._generation = 0
        self._counters = {
            "memory_hits": 0,
            "memory_misses": 0,
            "persistent_hits": 0,
            "persistent_misses": 0,
            "evictions": 0,
        }

    def _remember(self, key: str, payload: str, expires_at: float) -> None:
        self._memory.pop(key, None)
        while len(self._memory) >= self.max_memory_entries:
            evicted, _ = self._memory.popitem(last=False)
            self._counters["evictions"] += 1
            logger.debug("Evicted cache entry from memory tier", extra={"key": evicted})
        self._memory[key] = _MemoryEntry(payload, expires_at)
        MetricsCollector.set_cache_memory_entries(len(self._memory))

    def _forget(self, key: str) -> bool:
        removed = self._memory.pop(key, None) is not None
        MetricsCollector.set_cache_memory_entries(len(self._memory))
        return removed

    async def get(self, key: str, default: Any = None) -> Any:
        """Return the live value for ``key`` or ``default``."""
        now = self.clock()

        entry = self._memory.get(key)
        if entry is not None:
            if entry.expires_at > now:
                self._counters["memory_hits"] += 1
                MetricsCollector.record_cache_lookup("memory", "hit")
                return json.loads(entry.payload)
            self._forget(key)

        self._counters["memory_misses"] += 1
        MetricsCollector.record_cache_lookup("memory", "miss")

        if self.store is None:
            return default

        generation = self._generation
        row = await self.store.get(key, now)
        if row is None:
            self._counters["persistent_misses"] += 1
            MetricsCollector.record_cache_lookup("persistent", "miss")
            return default

        payload, expires_at = row
        self._counters["persistent_hits"] += 1
        MetricsCollector.record_cache_lookup("persistent", "hit")

        # Not promoted when a set() landed or a removal ran during the read
        if key not in self._memory and generation == self._generation:
            self._remember(key, payload, expires_at)
        return json.loads(payload)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Store ``value`` under ``key`` for ``ttl`` seconds (default TTL if omitted)."""
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError("ttl must be positive")

        payload = json.dumps(value, sort_keys=True)
        expires_at = self.clock() + ttl

        self._remember(key, payload, expires_at)
        if self.store is not None:
            await self.store.set(key, payload, expires_at)

    async def delete(self, key: str) -> bool:
        """Remove ``key`` from both tiers. Returns True if anything was removed."""
        async with self._write_lock:
            self._generation += 1
            removed = self._forget(key)
            if self.store is not None:
                removed = await self.store.delete(key) or removed
            self._generation += 1
        return removed

    async def invalidate(self, pattern: str) -> int:
        """Remove every key matching the glob ``pattern`` and return how many."""
        matcher = glob_to_regex(pattern)
        async with self._write_lock:
            self._generation += 1
            removed = {key for key in self._memory if matcher.match(key)}
            for key in removed:
                self._memory.pop(key, None)
            MetricsCollector.set_cache_memory_entries(len(self._memory))

            if self.store is not None:
                removed.update(await self.store.delete_matching(pattern))
            self._generation += 1

        if removed:
            logger.info("Invalidated cache entries", extra={"pattern": pattern, "removed": len(removed)})
        return len(removed)

    async def clear(self) -> None:
        async with self._write_lock:
            self._generation += 1
            self._memory.clear()
            MetricsCollector.set_cache_memory_entries(0)
            if self.store is not None:
                await self.store.clear()
            self._generation += 1

    async def get_or_set(
        self,
        key: str,
        factory: Callable[[], Awaitable[Any]],
        ttl: Optional[int] = None,
    ) -> Any:
        """
        Return the cached value or compute, store and return it.

        Concurrent callers for the same key wait for a single computation.
        """
        value = await self.get(key, _MISSING)
        if value is not _MISSING:
            return value

        lock = self._key_locks.setdefault(key, asyncio.Lock())
        self._key_users[key] = self._key_users.get(key, 0) + 1
        try:
            async with lock:
                value = await self.get(key, _MISSING)
                if value is _MISSING:
                    value = await factory()
                    await self.set(key, value, ttl)
                return value
        finally:
            # Dropped only once no caller holds or waits on the lock
            self._key_users[key] -= 1
            if not self._key_users[key]:
                del self._key_users[key]
                del self._key_locks[key]

    async def purge_expired(self) -> int:
        """Drop expired entries from both tiers."""
        now = self.clock()
        expired = [key for key, entry in self._memory.items() if entry.expires_at <= now]
        for key in expired:
            self._memory.pop(key, None)
        MetricsCollector.set_cache_memory_entries(len(self._memory))

        purged = len(expired)
        if self.store is not None:
            purged = max(purged, await self.store.purge_expired(now))
        return purged

    def stats(self) -> dict[str, Any]:
        return {
            "memory_entries": len(self._memory),
            "max_memory_entries": self.max_memory_entries,
            **self._counters,
        }

    def memory_keys(self) -> list[str]:
        """Memory tier keys, oldest first."""
        return list(self._memory)


def cached(
    key_builder: Callable[..., str],
    ttl: Optional[int] = None,
    cache_attr: str = "cache",
):
    """
    Cache the result of an async method in ``self.<cache_attr>``.

    ``key_builder`` receives the method's arguments (without ``self``) and
    returns the cache key. When the instance has no cache the method runs
    uncached.

    Example:
        @cached(lambda provider_id: f"inventory:{provider_id}:items", ttl=120)
        async def list_items(self, provider_id): ...
    """
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(self, *args, **kwargs):
            cache: Optional[TwoTierCache] = getattr(self, cache_attr, None)
            if cache is None:
                return await func(self, *args, **kwargs)

            key = key_builder(*args, **kwargs)
            return await cache.get_or_set(key, lambda: func(self, *args, **kwargs), ttl)

        return wrapper

    return decorator
