"""In-process read-through cache for conversations, analyses and statistics.

The cache is an optimization only. Every write path invalidates the
affected entries before it returns, and every read-through load records
the invalidation generation it started from so a load that raced with a
write never stores what it read.
"""

import copy
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass
from typing import Any, Callable, Optional, Protocol, TypeVar
from uuid import UUID

from convotag.config import Settings
from convotag.config import settings as default_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


def conversation_key(conversation_id: UUID) -> str:
    return f"conversation:{conversation_id}"


def analysis_key(conversation_id: UUID) -> str:
    return f"analysis:{conversation_id}"


def stats_key(owner_id: str, time_range: str) -> str:
    return f"stats:{owner_id}:{time_range}"


def _scope_of(key: str) -> str:
    """Invalidation scope a key belongs to."""
    kind, _, rest = key.partition(":")
    if kind in ("conversation", "analysis"):
        return f"conversation:{rest}"
    if kind == "stats":
        owner, _, _ = rest.rpartition(":")
        return f"stats:{owner}"
    return key


@dataclass
class CacheStats:
    """Counters describing cache effectiveness."""

    hits: int = 0
    misses: int = 0
    sets: int = 0
    stale_loads: int = 0
    evictions: int = 0
    invalidations: int = 0
    size: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["hit_rate"] = round(self.hit_rate, 3)
        return data


class ConversationCache(Protocol):
    """Cache used by the services; implementations must be thread-safe."""

    def get_or_load(self, key: str, loader: Callable[[], T]) -> T:
        """Return the cached value for ``key`` or load, store and return it."""
        ...

    def invalidate_conversation(self, conversation_id: UUID) -> None:
        """Drop conversation and analysis entries for one conversation."""
        ...

    def invalidate_owner(self, owner_id: str) -> None:
        """Drop every aggregate statistics entry of one owner."""
        ...

    def clear(self) -> None:
        ...

    def get_stats(self) -> CacheStats:
        ...


class InMemoryCache:
    """Thread-safe LRU cache with optional TTL.

    TTL only bounds memory; freshness comes from explicit invalidation.
    Values are deep-copied on the way in and out so callers can never
    mutate a cached object. Invalidation generations are kept only for
    scopes with a load in flight, so their number is bounded by the
    number of concurrent loads.
    """

    def __init__(self, ttl_seconds: float = 0, max_entries: int = 10_000):
        """Initialize the cache.

        Args:
            ttl_seconds: Entry lifetime in seconds (0 disables expiry)
            max_entries: Maximum number of entries before LRU eviction
        """
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, tuple[Any, Optional[float]]]" = OrderedDict()
        self._generations: dict[str, int] = {}
        self._loading: dict[str, int] = {}
        self._lock = threading.Lock()
        self._stats = CacheStats()

    def get(self, key: str) -> Optional[Any]:
        """Get a copy of a cached value, or None on miss or expiry."""
        with self._lock:
            return self._get_locked(key)

    def get_or_load(self, key: str, loader: Callable[[], T]) -> T:
        scope = _scope_of(key)
        with self._lock:
            cached = self._get_locked(key)
            if cached is not None:
                return cached
            generation = self._generations.get(scope, 0)
            self._loading[scope] = self._loading.get(scope, 0) + 1

        try:
            value = loader()
            with self._lock:
                if self._generations.get(scope, 0) != generation:
                    # Invalidated while loading; the value may predate the write
                    self._stats.stale_loads += 1
                    logger.debug(f"Discarded stale load for {key}")
                else:
                    self._set_locked(key, value)
        finally:
            with self._lock:
                self._finish_load(scope)
        return copy.deepcopy(value)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._set_locked(key, value)

    def invalidate_conversation(self, conversation_id: UUID) -> None:
        with self._lock:
            self._bump(f"conversation:{conversation_id}")
            self._entries.pop(conversation_key(conversation_id), None)
            self._entries.pop(analysis_key(conversation_id), None)

    def invalidate_owner(self, owner_id: str) -> None:
        prefix = f"stats:{owner_id}:"
        with self._lock:
            self._bump(f"stats:{owner_id}")
            for key in [k for k in self._entries if k.startswith(prefix)]:
                del self._entries[key]

    def clear(self) -> None:
        with self._lock:
            for scope in list(self._loading):
                self._bump(scope)
            self._entries.clear()

    def get_stats(self) -> CacheStats:
        with self._lock:
            stats = copy.copy(self._stats)
            stats.size = len(self._entries)
            return stats

    def _get_locked(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            self._stats.misses += 1
            return None

        value, expires_at = entry
        if expires_at is not None and time.monotonic() >= expires_at:
            del self._entries[key]
            self._stats.misses += 1
            return None

        self._entries.move_to_end(key)
        self._stats.hits += 1
        return copy.deepcopy(value)

    def _set_locked(self, key: str, value: Any) -> None:
        expires_at = time.monotonic() + self.ttl_seconds if self.ttl_seconds > 0 else None
        self._entries[key] = (copy.deepcopy(value), expires_at)
        self._entries.move_to_end(key)
        self._stats.sets += 1
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
            self._stats.evictions += 1

    def _bump(self, scope: str) -> None:
        # Only in-flight loads compare generations
        if scope in self._loading:
            self._generations[scope] = self._generations.get(scope, 0) + 1
        self._stats.invalidations += 1

    def _finish_load(self, scope: str) -> None:
        remaining = self._loading[scope] - 1
        if remaining:
            self._loading[scope] = remaining
        else:
            del self._loading[scope]
            self._generations.pop(scope, None)


class NullCache:
    """Cache that stores nothing; every read goes to the database."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._misses = 0

    def get_or_load(self, key: str, loader: Callable[[], T]) -> T:
        with self._lock:
            self._misses += 1
        return loader()

    def invalidate_conversation(self, conversation_id: UUID) -> None:
        pass

    def invalidate_owner(self, owner_id: str) -> None:
        pass

    def clear(self) -> None:
        pass

    def get_stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(misses=self._misses)


def create_cache(config: Optional[Settings] = None) -> ConversationCache:
    """Build the cache selected by ``cache_enabled``."""
    config = config or default_settings
    if not config.cache_enabled:
        return NullCache()
    return InMemoryCache(
        ttl_seconds=config.cache_ttl_seconds,
        max_entries=config.cache_max_entries,
    )
