"""
Search result cache.

A bounded ``cachetools.TLRUCache``: every entry expires after its own TTL and,
at capacity, expired entries go first and then the least recently used.
All operations hold one lock, so a single instance can be shared by
concurrent requests and threads.

Every scope carries a generation that ``invalidate_scope`` bumps. A search
reads it before running and hands it back to ``put``; results computed
against an older generation are discarded, so a write that lands while a
search is in flight cannot leave pre-write results behind.

The cache is best-effort. Internal failures are logged and treated as a miss
(``get``) or ignored (``put``); they never reach the caller.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field

from cachetools import TLRUCache

from knowledge_search.search.exceptions import CacheError
from knowledge_search.search.models import ItemType, SearchMode, SearchResult

logger = logging.getLogger(__name__)

_DEFAULT_TTL_SECONDS = 300.0
_DEFAULT_MAX_ENTRIES = 1000


@dataclass(frozen=True)
class CacheKey:
    """Cache key carrying its scope so scope invalidation can find it.

    Attributes:
        scope: Owner scope of the query
        digest: sha256 of normalized query, mode, top_k, item types and tags
    """

    scope: str
    digest: str


@dataclass(frozen=True)
class CacheEntry:
    key: CacheKey
    results: tuple[SearchResult, ...]
    created_at: float
    ttl: float = field(default=_DEFAULT_TTL_SECONDS)


def make_key(
    normalized_query: str,
    scope: str,
    mode: SearchMode,
    top_k: int,
    item_types: Iterable[ItemType] | None = None,
    tags: Iterable[str] | None = None,
) -> CacheKey:
    """Build the key for one request.

    ``normalized_query`` should already be normalized (see
    TextPreprocessor.normalize_query) so trivially different spellings share
    an entry.
    """
    material = json.dumps(
        {
            "query": normalized_query,
            "scope": scope,
            "mode": mode.value,
            "top_k": top_k,
            "item_types": sorted(t.value for t in item_types) if item_types else [],
            "tags": sorted(tags) if tags else [],
        },
        sort_keys=True,
        ensure_ascii=False,
    )
    return CacheKey(scope=scope, digest=hashlib.sha256(material.encode("utf-8")).hexdigest())


class SearchCache:
    """Thread-safe TTL + LRU cache of search results.

    Usage:
        cache = SearchCache(max_entries=1000, ttl_seconds=300)
        cached = cache.get(key)
        generation = cache.generation("project-1")
        results = ...  # run the search
        cache.put(key, results, generation=generation)
        cache.invalidate_scope("project-1")
    """

    def __init__(
        self,
        max_entries: int = _DEFAULT_MAX_ENTRIES,
        ttl_seconds: float = _DEFAULT_TTL_SECONDS,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize an empty cache.

        Args:
            max_entries: Capacity bound
            ttl_seconds: Default time-to-live for entries
            timer: Clock used for expiry (tests inject a fake)
        """
        if max_entries < 1:
            raise ValueError(f"max_entries must be positive, got {max_entries}")
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {ttl_seconds}")
        self._ttl = ttl_seconds
        self._timer = timer
        self._lock = threading.RLock()
        self._entries: TLRUCache = TLRUCache(
            maxsize=max_entries,
            ttu=lambda _key, entry, now: now + entry.ttl,
            timer=timer,
        )
        self._generations: dict[str, int] = {}
        self._epoch = 0

    def generation(self, scope: str) -> tuple[int, int]:
        """Token identifying the current contents of ``scope``.

        Changes whenever ``scope`` is invalidated or the cache is cleared.
        """
        with self._lock:
            return (self._epoch, self._generations.get(scope, 0))

    @property
    def default_ttl(self) -> float:
        return self._ttl

    def __len__(self) -> int:
        with self._lock:
            self._entries.expire()
            return len(self._entries)

    def get(self, key: CacheKey) -> tuple[SearchResult, ...] | None:
        """Cached results for ``key``, or None on miss, expiry or failure."""
        try:
            with self._lock:
                entry = self._lookup(key)
        except CacheError as e:
            logger.warning("Search cache read failed, treating as miss: %s", e)
            return None
        return entry.results if entry is not None else None

    def put(
        self,
        key: CacheKey,
        results: Sequence[SearchResult],
        ttl: float | None = None,
        generation: tuple[int, int] | None = None,
    ) -> None:
        """Store results under ``key``; failures are logged and ignored.

        When ``generation`` is given and the scope has been invalidated since
        it was read, the results are stale and are dropped.
        """
        entry = CacheEntry(
            key=key,
            results=tuple(results),
            created_at=self._timer(),
            ttl=ttl if ttl is not None else self._ttl,
        )
        try:
            with self._lock:
                if generation is not None and generation != self.generation(key.scope):
                    logger.debug("Dropped results computed before scope %r was invalidated", key.scope)
                    return
                self._store(entry)
        except CacheError as e:
            logger.warning("Search cache write failed, result not cached: %s", e)

    def invalidate_scope(self, scope: str) -> int:
        """Drop every entry whose key carries ``scope``.

        Returns:
            Number of entries removed
        """
        with self._lock:
            self._generations[scope] = self._generations.get(scope, 0) + 1
        try:
            with self._lock:
                doomed = [key for key in list(self._entries.keys()) if key.scope == scope]
                for key in doomed:
                    self._entries.pop(key, None)
        except Exception as e:
            logger.warning("Search cache invalidation for scope %r failed, clearing: %s", scope, e)
            self.clear()
            return 0
        if doomed:
            logger.debug("Invalidated %d cached searches for scope %r", len(doomed), scope)
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._epoch += 1
            self._entries.clear()

    def _lookup(self, key: CacheKey) -> CacheEntry | None:
        try:
            return self._entries.get(key)
        except Exception as e:
            raise CacheError(f"lookup failed: {e}", cause=e) from e

    def _store(self, entry: CacheEntry) -> None:
        try:
            self._entries[entry.key] = entry
        except Exception as e:
            raise CacheError(f"store failed: {e}", cause=e) from e
