"""Read-through cache of entities keyed by ``(entity type, id)``.

Repositories cache single entities under their id and full listings under
``ALL_KEY``. Every write invalidates both before returning. Each key has a
generation counter that invalidation bumps; a loader that started before an
invalidation has its result discarded, so a reader never puts back a value
older than the last write it could have observed.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Protocol, TypeVar, runtime_checkable

logger = logging.getLogger(__name__)

T = TypeVar("T")

ALL_KEY = "all"

CacheKey = tuple[str, str]


@runtime_checkable
class CacheBackend(Protocol):
    """What repositories need from a cache."""

    def get(self, namespace: str, key: str | int, default: Any = None) -> Any: ...

    def set(
        self, namespace: str, key: str | int, value: Any, ttl: float | None = None
    ) -> None: ...

    def get_or_load(
        self,
        namespace: str,
        key: str | int,
        loader: Callable[[], T | None],
        ttl: float | None = None,
    ) -> T | None: ...

    def invalidate(self, namespace: str, key: str | int) -> bool: ...

    def flush(self) -> int: ...


@dataclass(slots=True)
class CacheEntry:
    value: Any
    expires_at: float | None

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class EntityCache:
    """LRU cache with per-entry TTL and invalidation-safe loading.

    Example:
        cache = EntityCache(max_size=1000, default_ttl=300)
        agent = cache.get_or_load("agent", 3, lambda: load_agent(3))
        cache.invalidate("agent", 3)
    """

    def __init__(
        self,
        max_size: int = 10000,
        default_ttl: float | None = 300.0,
        sweep_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Set up an empty cache.

        Args:
            max_size: Entries kept before the least recently used is dropped
            default_ttl: Seconds an entry lives; None or 0 keeps it until evicted
            sweep_interval: Minimum seconds between full expiry sweeps
            clock: Time source
        """
        self.max_size = max_size
        self.default_ttl = default_ttl
        self.sweep_interval = sweep_interval
        self._clock = clock

        self._entries: OrderedDict[CacheKey, CacheEntry] = OrderedDict()
        self._generations: dict[CacheKey, int] = {}
        self._flushes = 0
        self._lock = threading.RLock()
        self._next_sweep = clock() + sweep_interval
        self._hits = 0
        self._misses = 0

    @staticmethod
    def _key(namespace: str, key: str | int) -> CacheKey:
        return (namespace, str(key))

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _fresh_entry(self, cache_key: CacheKey) -> CacheEntry | None:
        entry = self._entries.get(cache_key)
        if entry is None:
            return None
        if entry.expired(self._clock()):
            self._entries.pop(cache_key)
            return None
        self._entries.move_to_end(cache_key)
        return entry

    def get(self, namespace: str, key: str | int, default: Any = None) -> Any:
        with self._lock:
            entry = self._fresh_entry(self._key(namespace, key))
            if entry is None:
                self._misses += 1
                return default
            self._hits += 1
            return entry.value

    def exists(self, namespace: str, key: str | int) -> bool:
        with self._lock:
            return self._fresh_entry(self._key(namespace, key)) is not None

    def get_or_load(
        self,
        namespace: str,
        key: str | int,
        loader: Callable[[], T | None],
        ttl: float | None = None,
    ) -> T | None:
        """Cached value, or the loader's result.

        The loader runs without the lock held. ``None`` is returned as is
        and never cached.
        """
        cache_key = self._key(namespace, key)
        with self._lock:
            entry = self._fresh_entry(cache_key)
            if entry is not None:
                self._hits += 1
                return entry.value
            self._misses += 1
            seen = (self._generations.get(cache_key, 0), self._flushes)

        value = loader()
        if value is None:
            return None

        with self._lock:
            if (self._generations.get(cache_key, 0), self._flushes) == seen:
                self._put(cache_key, value, ttl)
            else:
                logger.debug(f"Dropped load of {namespace}#{key}: written meanwhile")
        return value

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def set(
        self, namespace: str, key: str | int, value: Any, ttl: float | None = None
    ) -> None:
        with self._lock:
            self._put(self._key(namespace, key), value, ttl)

    def _put(self, cache_key: CacheKey, value: Any, ttl: float | None) -> None:
        now = self._clock()
        lifetime = self.default_ttl if ttl is None else ttl
        self._entries[cache_key] = CacheEntry(value, now + lifetime if lifetime else None)
        self._entries.move_to_end(cache_key)

        while len(self._entries) > self.max_size:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Evicted {evicted[0]}#{evicted[1]}")

        if now >= self._next_sweep:
            self._sweep(now)

    def _sweep(self, now: float) -> None:
        stale = [k for k, entry in self._entries.items() if entry.expired(now)]
        for cache_key in stale:
            del self._entries[cache_key]
        self._next_sweep = now + self.sweep_interval
        if stale:
            logger.debug(f"Swept {len(stale)} expired cache entries")

    def invalidate(self, namespace: str, key: str | int) -> bool:
        """Drop one key. True if a value was cached under it."""
        cache_key = self._key(namespace, key)
        with self._lock:
            self._generations[cache_key] = self._generations.get(cache_key, 0) + 1
            return self._entries.pop(cache_key, None) is not None

    def clear_namespace(self, namespace: str) -> int:
        """Invalidate every key of one entity type; returns how many were cached."""
        with self._lock:
            doomed = [k for k in self._entries if k[0] == namespace]
            for cache_key in doomed:
                del self._entries[cache_key]
                self._generations[cache_key] = self._generations.get(cache_key, 0) + 1
        return len(doomed)

    def flush(self) -> int:
        """Empty the cache; loads in flight are discarded too."""
        with self._lock:
            dropped = len(self._entries)
            self._entries.clear()
            self._generations.clear()
            self._flushes += 1
        logger.debug(f"Flushed {dropped} cache entries")
        return dropped

    @property
    def size(self) -> int:
        return len(self._entries)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "size": len(self._entries),
                "max_size": self.max_size,
                "ttl_seconds": self.default_ttl,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round(self._hits / lookups, 4) if lookups else 0.0,
            }


__all__ = ["ALL_KEY", "CacheBackend", "CacheEntry", "EntityCache"]
