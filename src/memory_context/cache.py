"""
Bounded TTL caches for embeddings and query results.

Both caches share the same mechanics (:class:`TTLCache`):

  - Entries expire strictly by absolute age.  A hit does not refresh the
    timestamp.
  - Expired entries are dropped lazily on access and periodically by
    :class:`CacheSweeper`.  Both paths hold the cache's lock and compare
    against the same TTL.
  - When full, the earliest-inserted entry is evicted (FIFO, not LRU).
    Overwriting an existing key keeps its original position.
  - Nothing here raises.  Malformed input is logged and treated as a miss.

The caches hold no authoritative data and are never persisted.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import struct
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Generic, Hashable, Iterable, Sequence, TypeVar

from .models import ScoredMemory

logger = logging.getLogger(__name__)

V = TypeVar("V")

Clock = Callable[[], float]


@dataclass(frozen=True)
class CacheStats:
    """Point-in-time view of a cache for health endpoints."""

    name: str
    entries: int
    max_entries: int
    ttl: float
    oldest_age: float | None


class TTLCache(Generic[V]):
    """
    Thread-safe mapping with a per-cache TTL and a FIFO capacity bound.

    Parameters
    ----------
    ttl:
        Maximum entry age in seconds.
    max_entries:
        Capacity.  Inserting a new key into a full cache evicts the
        earliest-inserted key first; inserts are never rejected.
    clock:
        Returns the current time in seconds.  Defaults to
        :func:`time.monotonic`; tests pass a fake.
    """

    def __init__(
        self,
        ttl: float,
        max_entries: int,
        clock: Clock = time.monotonic,
        name: str = "cache",
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1.")
        self.ttl = ttl
        self.max_entries = max_entries
        self.name = name
        self._clock = clock
        self._entries: OrderedDict[Hashable, tuple[V, float]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> V | None:
        """Return the live value for *key*, or ``None``."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, created = entry
            if self._clock() - created > self.ttl:
                del self._entries[key]
                return None
            return value

    def put(self, key: Hashable, value: V) -> None:
        """Store *value* under *key* with a fresh timestamp."""
        with self._lock:
            if key not in self._entries:
                while len(self._entries) >= self.max_entries:
                    evicted, _ = self._entries.popitem(last=False)
                    logger.debug("%s full, evicted %r", self.name, evicted)
            self._entries[key] = (value, self._clock())

    def purge_expired(self) -> int:
        """Remove every expired entry.  Returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, (_, created) in self._entries.items() if now - created > self.ttl]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> CacheStats:
        with self._lock:
            oldest_age = None
            if self._entries:
                # Timestamps are non-decreasing in insertion order except for
                # overwrites, so scan rather than peek at the first entry.
                oldest = min(created for _, created in self._entries.values())
                oldest_age = self._clock() - oldest
            return CacheStats(
                name=self.name,
                entries=len(self._entries),
                max_entries=self.max_entries,
                ttl=self.ttl,
                oldest_age=oldest_age,
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def normalize_text(text: str) -> str:
    """Cache-key normalisation: strip surrounding whitespace and case-fold."""
    return text.strip().lower()


class EmbeddingCache:
    """Maps normalised text to its embedding vector (24 h TTL by default)."""

    def __init__(
        self,
        ttl: float = 24 * 60 * 60,
        max_entries: int = 1000,
        clock: Clock = time.monotonic,
    ) -> None:
        self._cache: TTLCache[tuple[float, ...]] = TTLCache(
            ttl, max_entries, clock, name="embedding_cache"
        )

    @property
    def ttl(self) -> float:
        return self._cache.ttl

    def get(self, text: str) -> list[float] | None:
        if not isinstance(text, str) or not text.strip():
            logger.warning("EmbeddingCache.get: invalid text %r", text)
            return None
        cached = self._cache.get(normalize_text(text))
        return list(cached) if cached is not None else None

    def put(self, text: str, embedding: Sequence[float]) -> None:
        if not isinstance(text, str) or not text.strip():
            logger.warning("EmbeddingCache.put: invalid text %r", text)
            return
        # Stored as a tuple so callers cannot mutate a cached vector.
        self._cache.put(normalize_text(text), tuple(embedding))

    def purge_expired(self) -> int:
        return self._cache.purge_expired()

    def clear(self) -> None:
        self._cache.clear()

    def stats(self) -> CacheStats:
        return self._cache.stats()

    def __len__(self) -> int:
        return len(self._cache)


class QueryResultCache:
    """Maps ``(user_id, query_key)`` to a ranked result list (5 min TTL by default)."""

    def __init__(
        self,
        ttl: float = 5 * 60,
        max_entries: int = 1000,
        clock: Clock = time.monotonic,
    ) -> None:
        self._cache: TTLCache[tuple[ScoredMemory, ...]] = TTLCache(
            ttl, max_entries, clock, name="query_cache"
        )

    @property
    def ttl(self) -> float:
        return self._cache.ttl

    def get(self, user_id: str, query_key: str) -> list[ScoredMemory] | None:
        if not _valid_key_part(user_id) or not _valid_key_part(query_key):
            logger.warning("QueryResultCache.get: invalid key (%r, %r)", user_id, query_key)
            return None
        cached = self._cache.get((user_id, query_key))
        return list(cached) if cached is not None else None

    def put(self, user_id: str, query_key: str, results: Iterable[ScoredMemory]) -> None:
        if not _valid_key_part(user_id) or not _valid_key_part(query_key):
            logger.warning("QueryResultCache.put: invalid key (%r, %r)", user_id, query_key)
            return
        self._cache.put((user_id, query_key), tuple(results))

    def purge_expired(self) -> int:
        return self._cache.purge_expired()

    def clear(self) -> None:
        self._cache.clear()

    def stats(self) -> CacheStats:
        return self._cache.stats()

    def __len__(self) -> int:
        return len(self._cache)


def _valid_key_part(value: object) -> bool:
    return isinstance(value, str) and bool(value)


def query_cache_key(embedding: Sequence[float], dims: int = 0) -> str:
    """
    Build the query-cache fingerprint for *embedding*.

    With ``dims > 0`` the key is the first *dims* components joined by
    commas.  Different queries can share a prefix and collide, so this is
    only for compatibility with existing caches.  With ``dims == 0`` (the
    default) the key is a SHA-1 digest of the packed full vector.
    """
    if dims > 0:
        return ",".join(repr(float(x)) for x in embedding[:dims])
    packed = struct.pack(f"<{len(embedding)}d", *embedding)
    return hashlib.sha1(packed).hexdigest()


class CacheSweeper:
    """
    Periodically purges expired entries from a set of caches.

    Call :meth:`start` from a running event loop and :meth:`stop` on
    shutdown.  :meth:`sweep` performs a single pass and can be called
    directly.
    """

    def __init__(
        self,
        caches: Iterable[EmbeddingCache | QueryResultCache | TTLCache],
        interval: float = 60.0,
    ) -> None:
        self.caches = list(caches)
        self.interval = interval
        self._task: asyncio.Task | None = None

    def sweep(self) -> int:
        removed = sum(cache.purge_expired() for cache in self.caches)
        if removed:
            logger.debug("Cache sweep removed %d expired entries", removed)
        return removed

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.sweep()
