"""
Result caching keyed by query fingerprint.

A fingerprint is a stable hash of the literal query text plus a canonical
serialization of its bound parameters, so two calls with different
parameter values never share a slot.

Expiry is passive: every read checks the entry's age and treats an expired
entry as a miss. There is no background sweep; an expired entry is simply
overwritten by the next successful execution.

Storage is pluggable through the async ``CacheStore`` protocol so that a
remote store can replace the bundled in-memory LRU. Store failures surface
as CacheError, which the governor absorbs.

Example:
    cache = ResultCache(InMemoryCacheStore(max_entries=1000), default_ttl=300)

    key = fingerprint("SELECT * FROM t WHERE id = $1", [1])
    value = await cache.get(key)
    if value is MISS:
        value = await run_query()
        await cache.set(key, value)
"""

from __future__ import annotations

import copy
import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, Sequence

from querygovernor.exceptions import CacheError

logger = logging.getLogger(__name__)


class _Miss:
    """Sentinel type for cache misses (None is a legitimate cached value)."""

    _instance: "_Miss | None" = None

    def __new__(cls) -> "_Miss":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False


MISS = _Miss()


def _tagged(value: Any) -> dict[str, str]:
    # Non-JSON values keep their type: b"x" must not render like the string "b'x'"
    kind = type(value)
    return {"__type__": f"{kind.__module__}.{kind.__qualname__}", "value": str(value)}


def canonical_params(params: Sequence[Any]) -> str:
    """Deterministic JSON rendering of bound parameters."""
    return json.dumps(list(params), sort_keys=True, separators=(",", ":"), default=_tagged)


def fingerprint(query: str, params: Sequence[Any] = ()) -> str:
    """Stable cache key for a (query, params) pair."""
    payload = f"{query}:{canonical_params(params)}"
    return hashlib.sha256(payload.encode()).hexdigest()


@dataclass
class CacheEntry:
    """Cached query result."""

    fingerprint: str
    value: Any
    ttl: float
    created_at: float = field(default_factory=time.monotonic)

    def is_expired(self, now: float | None = None) -> bool:
        """Check if cache entry has expired."""
        current = time.monotonic() if now is None else now
        return (current - self.created_at) >= self.ttl


class CacheStore(Protocol):
    """
    Protocol for cache backends.

    Implementations may raise any exception on failure; ResultCache wraps
    it in CacheError.
    """

    async def get(self, key: str) -> CacheEntry | None:
        ...

    async def set(self, key: str, entry: CacheEntry) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...

    async def clear(self) -> None:
        ...

    async def ping(self) -> bool:
        ...


class InMemoryCacheStore:
    """
    Simple in-memory LRU store.

    Values are deep-copied on the way in and out so callers can never
    mutate a cached result. Writes are serialized with a lock so that the
    store is safe to share with worker threads.
    """

    def __init__(self, max_entries: int = 1000) -> None:
        self.max_entries = max_entries
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()

    async def get(self, key: str) -> CacheEntry | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            self._entries.move_to_end(key)
            return CacheEntry(
                fingerprint=entry.fingerprint,
                value=copy.deepcopy(entry.value),
                ttl=entry.ttl,
                created_at=entry.created_at,
            )

    async def set(self, key: str, entry: CacheEntry) -> None:
        stored = CacheEntry(
            fingerprint=entry.fingerprint,
            value=copy.deepcopy(entry.value),
            ttl=entry.ttl,
            created_at=entry.created_at,
        )
        with self._lock:
            self._entries[key] = stored
            self._entries.move_to_end(key)
            # Evict oldest if over capacity
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    async def ping(self) -> bool:
        return True

    @property
    def size(self) -> int:
        return len(self._entries)


class ResultCache:
    """
    TTL cache of query results on top of a CacheStore.

    ``get`` returns the cached value or ``MISS``; expired entries count as
    misses. Hit/miss counters here describe store lookups only; the
    governor keeps the caller-facing counters.
    """

    def __init__(
        self,
        store: CacheStore | None = None,
        default_ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store: CacheStore = store if store is not None else InMemoryCacheStore()
        self.default_ttl = default_ttl
        self._clock = clock
        self._hits = 0
        self._misses = 0
        self._expired = 0

    async def get(self, key: str) -> Any:
        """
        Get a cached value if present and not expired.

        Raises:
            CacheError: The store failed.
        """
        try:
            entry = await self.store.get(key)
        except Exception as e:
            raise CacheError(f"Cache read failed: {e}", operation="get") from e

        if entry is None:
            self._misses += 1
            return MISS

        if entry.is_expired(self._clock()):
            self._expired += 1
            self._misses += 1
            return MISS

        self._hits += 1
        return entry.value

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """
        Store a value, superseding any previous entry for the key.

        Raises:
            CacheError: The store failed.
        """
        entry = CacheEntry(
            fingerprint=key,
            value=value,
            ttl=self.default_ttl if ttl is None else ttl,
            created_at=self._clock(),
        )
        try:
            await self.store.set(key, entry)
        except Exception as e:
            raise CacheError(f"Cache write failed: {e}", operation="set") from e

    async def invalidate(self, key: str) -> None:
        try:
            await self.store.delete(key)
        except Exception as e:
            raise CacheError(f"Cache delete failed: {e}", operation="delete") from e

    async def clear(self) -> None:
        try:
            await self.store.clear()
        except Exception as e:
            raise CacheError(f"Cache clear failed: {e}", operation="clear") from e
        self._hits = 0
        self._misses = 0
        self._expired = 0

    async def ping(self) -> bool:
        """Whether the backing store answers; never raises."""
        try:
            return bool(await self.store.ping())
        except Exception as e:
            logger.warning("Cache store ping failed: %s", e)
            return False

    @property
    def hit_rate(self) -> float:
        """Cache hit rate (0.0 to 1.0)."""
        total = self._hits + self._misses
        return self._hits / total if total > 0 else 0.0

    def stats(self) -> dict[str, Any]:
        """Get cache statistics for observability."""
        return {
            "hits": self._hits,
            "misses": self._misses,
            "expired": self._expired,
            "hit_rate": self.hit_rate,
            "default_ttl": self.default_ttl,
        }
