"""
Unit tests for SearchCache.

A fake timer drives expiry so no test sleeps.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest

from knowledge_search.search.cache import SearchCache, make_key
from knowledge_search.search.models import ItemType, MatchKind, SearchMode, SearchResult
from tests.fakes import BASE_TIME


class FakeTimer:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def result(item_id: str) -> SearchResult:
    return SearchResult(
        item_id=item_id,
        title=f"Title {item_id}",
        snippet="",
        score=0.5,
        match_kind=MatchKind.KEYWORD,
        item_type=ItemType.DOCUMENT,
        updated_at=BASE_TIME,
    )


@pytest.fixture
def timer() -> FakeTimer:
    return FakeTimer()


@pytest.fixture
def cache(timer: FakeTimer) -> SearchCache:
    return SearchCache(max_entries=3, ttl_seconds=300, timer=timer)


class TestMakeKey:
    """Tests for cache key construction."""

    def test_same_request_same_key(self) -> None:
        assert make_key("oauth", "p1", SearchMode.HYBRID, 10) == make_key(
            "oauth", "p1", SearchMode.HYBRID, 10
        )

    @pytest.mark.parametrize(
        "other",
        [
            ("login", "p1", SearchMode.HYBRID, 10, None),
            ("oauth", "p2", SearchMode.HYBRID, 10, None),
            ("oauth", "p1", SearchMode.KEYWORD, 10, None),
            ("oauth", "p1", SearchMode.HYBRID, 5, None),
            ("oauth", "p1", SearchMode.HYBRID, 10, [ItemType.ISSUE]),
            ("oauth", "p1", SearchMode.HYBRID, 10, None, ["auth"]),
        ],
    )
    def test_any_difference_changes_key(self, other: tuple) -> None:
        assert make_key("oauth", "p1", SearchMode.HYBRID, 10) != make_key(*other)

    def test_item_type_order_does_not_matter(self) -> None:
        a = make_key("q", "p1", SearchMode.HYBRID, 10, [ItemType.ISSUE, ItemType.FEATURE])
        b = make_key("q", "p1", SearchMode.HYBRID, 10, [ItemType.FEATURE, ItemType.ISSUE])
        assert a == b

    def test_tag_order_does_not_matter(self) -> None:
        a = make_key("q", "p1", SearchMode.HYBRID, 10, tags=["ui", "auth"])
        b = make_key("q", "p1", SearchMode.HYBRID, 10, tags=["auth", "ui"])
        assert a == b

    def test_key_carries_scope(self) -> None:
        assert make_key("q", "p9", SearchMode.HYBRID, 10).scope == "p9"


class TestGetPut:
    def test_miss_returns_none(self, cache: SearchCache) -> None:
        assert cache.get(make_key("q", "p1", SearchMode.HYBRID, 10)) is None

    def test_hit_returns_stored_results(self, cache: SearchCache) -> None:
        key = make_key("q", "p1", SearchMode.HYBRID, 10)
        cache.put(key, [result("a"), result("b")])
        assert [r.item_id for r in cache.get(key)] == ["a", "b"]

    def test_entry_expires_after_ttl(self, cache: SearchCache, timer: FakeTimer) -> None:
        key = make_key("q", "p1", SearchMode.HYBRID, 10)
        cache.put(key, [result("a")])

        timer.advance(299)
        assert cache.get(key) is not None

        timer.advance(2)
        assert cache.get(key) is None

    def test_per_entry_ttl(self, cache: SearchCache, timer: FakeTimer) -> None:
        short = make_key("short", "p1", SearchMode.HYBRID, 10)
        long = make_key("long", "p1", SearchMode.HYBRID, 10)
        cache.put(short, [result("a")], ttl=10)
        cache.put(long, [result("b")])

        timer.advance(11)

        assert cache.get(short) is None
        assert cache.get(long) is not None

    def test_evicts_least_recently_used_at_capacity(self, cache: SearchCache) -> None:
        keys = [make_key(f"q{i}", "p1", SearchMode.HYBRID, 10) for i in range(4)]
        for key in keys[:3]:
            cache.put(key, [result("a")])
        cache.get(keys[0])  # refresh q0

        cache.put(keys[3], [result("b")])

        assert len(cache) == 3
        assert cache.get(keys[1]) is None
        assert cache.get(keys[0]) is not None

    def test_rejects_invalid_configuration(self) -> None:
        with pytest.raises(ValueError):
            SearchCache(max_entries=0)
        with pytest.raises(ValueError):
            SearchCache(ttl_seconds=0)


class TestInvalidateScope:
    def test_drops_only_that_scope(self, cache: SearchCache) -> None:
        p1 = make_key("q", "p1", SearchMode.HYBRID, 10)
        p1_other = make_key("other", "p1", SearchMode.KEYWORD, 5)
        p2 = make_key("q", "p2", SearchMode.HYBRID, 10)
        for key in (p1, p1_other, p2):
            cache.put(key, [result("a")])

        removed = cache.invalidate_scope("p1")

        assert removed == 2
        assert cache.get(p1) is None
        assert cache.get(p1_other) is None
        assert cache.get(p2) is not None

    def test_unknown_scope_is_noop(self, cache: SearchCache) -> None:
        assert cache.invalidate_scope("nobody") == 0


class TestCacheFailures:
    """Cache failures never reach the caller."""

    def test_lookup_failure_is_a_miss(self, cache: SearchCache) -> None:
        key = make_key("q", "p1", SearchMode.HYBRID, 10)
        cache.put(key, [result("a")])
        with patch.object(cache._entries, "get", side_effect=RuntimeError("boom")):
            assert cache.get(key) is None

    def test_store_failure_is_ignored(self, cache: SearchCache) -> None:
        key = make_key("q", "p1", SearchMode.HYBRID, 10)
        with patch.object(cache, "_entries") as entries:
            entries.__setitem__.side_effect = RuntimeError("boom")
            cache.put(key, [result("a")])


class TestGenerations:
    """Results computed before a scope invalidation are never stored."""

    def test_put_with_current_generation_is_stored(self, cache: SearchCache) -> None:
        key = make_key("q", "p1", SearchMode.HYBRID, 10)
        generation = cache.generation("p1")

        cache.put(key, [result("a")], generation=generation)

        assert cache.get(key) is not None

    def test_put_after_invalidation_is_dropped(self, cache: SearchCache) -> None:
        key = make_key("q", "p1", SearchMode.HYBRID, 10)
        generation = cache.generation("p1")

        cache.invalidate_scope("p1")
        cache.put(key, [result("stale")], generation=generation)

        assert cache.get(key) is None
        assert len(cache) == 0

    def test_other_scope_invalidation_does_not_interfere(self, cache: SearchCache) -> None:
        key = make_key("q", "p1", SearchMode.HYBRID, 10)
        generation = cache.generation("p1")

        cache.invalidate_scope("p2")
        cache.put(key, [result("a")], generation=generation)

        assert cache.get(key) is not None

    def test_clear_changes_every_generation(self, cache: SearchCache) -> None:
        before = cache.generation("p1")
        cache.clear()
        assert cache.generation("p1") != before


class TestConcurrentAccess:
    def test_threads_share_one_cache(self) -> None:
        cache = SearchCache(max_entries=16, ttl_seconds=300)
        scopes = [f"p{n}" for n in range(4)]

        def hammer(worker: int) -> None:
            for i in range(300):
                scope = scopes[(worker + i) % len(scopes)]
                key = make_key(f"q{i % 40}", scope, SearchMode.HYBRID, 10)
                generation = cache.generation(scope)
                cache.put(key, [result(f"{worker}-{i}")], generation=generation)
                cache.get(key)
                if i % 25 == 0:
                    cache.invalidate_scope(scope)
                assert len(cache) <= 16

        with ThreadPoolExecutor(max_workers=8) as pool:
            futures = [pool.submit(hammer, worker) for worker in range(8)]
            for future in futures:
                future.result()

        assert len(cache) <= 16
