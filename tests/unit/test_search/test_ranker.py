"""
Unit tests for ResultRanker.

Merge rule: combined = max(semantic_weight * s, keyword_weight * k), items
found by one signal keep that weighted score, ordering is score descending
then newer first then item ID.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from knowledge_search.search.models import KeywordHit, MatchKind, VectorMatch
from knowledge_search.search.ranker import (
    ResultRanker,
    from_keyword,
    from_semantic,
    rank_key,
)
from tests.fakes import BASE_TIME

T0 = BASE_TIME
T1 = BASE_TIME + timedelta(hours=1)


@pytest.fixture
def ranker() -> ResultRanker:
    return ResultRanker(semantic_weight=0.6, keyword_weight=0.4)


class TestRankerInitialization:
    def test_default_weights(self) -> None:
        ranker = ResultRanker()
        assert ranker.semantic_weight == pytest.approx(0.6)
        assert ranker.keyword_weight == pytest.approx(0.4)

    @pytest.mark.parametrize("semantic, keyword", [(-0.1, 0.4), (0.6, 1.5)])
    def test_rejects_out_of_range_weights(self, semantic: float, keyword: float) -> None:
        with pytest.raises(ValueError):
            ResultRanker(semantic_weight=semantic, keyword_weight=keyword)


class TestCombine:
    """Tests for ResultRanker.combine."""

    def test_both_signals_takes_max_of_weighted(self, ranker: ResultRanker) -> None:
        assert ranker.combine(0.9, 0.5) == pytest.approx(0.54)
        assert ranker.combine(0.2, 1.0) == pytest.approx(0.4)

    def test_single_signal_is_weighted(self, ranker: ResultRanker) -> None:
        assert ranker.combine(0.8, None) == pytest.approx(0.48)
        assert ranker.combine(None, 0.5) == pytest.approx(0.2)

    def test_absent_from_both_is_zero(self, ranker: ResultRanker) -> None:
        assert ranker.combine(None, None) == 0.0

    def test_scores_are_clamped(self, ranker: ResultRanker) -> None:
        assert ranker.combine(1.7, None) == pytest.approx(0.6)


class TestMerge:
    """Tests for ResultRanker.merge."""

    def test_match_kinds(self, ranker: ResultRanker) -> None:
        merged = ranker.merge(
            [VectorMatch("both", 0.9, T0), VectorMatch("sem", 0.8, T0)],
            [KeywordHit("both", 0.5, T0), KeywordHit("kw", 0.9, T0)],
        )
        kinds = {hit.item_id: hit.match_kind for hit in merged}
        assert kinds == {
            "both": MatchKind.HYBRID,
            "sem": MatchKind.SEMANTIC,
            "kw": MatchKind.KEYWORD,
        }

    def test_sorted_descending_by_combined(self, ranker: ResultRanker) -> None:
        merged = ranker.merge(
            [VectorMatch("a", 0.7, T0), VectorMatch("b", 0.95, T0)],
            [KeywordHit("c", 1.0, T0)],
        )
        assert [hit.item_id for hit in merged] == ["b", "a", "c"]
        scores = [hit.score for hit in merged]
        assert scores == sorted(scores, reverse=True)

    def test_ties_broken_by_recency_then_id(self, ranker: ResultRanker) -> None:
        merged = ranker.merge(
            [],
            [KeywordHit("b", 0.5, T0), KeywordHit("a", 0.5, T0), KeywordHit("c", 0.5, T1)],
        )
        assert [hit.item_id for hit in merged] == ["c", "a", "b"]

    def test_keeps_component_scores(self, ranker: ResultRanker) -> None:
        (hit,) = ranker.merge([VectorMatch("x", 0.9, T0)], [KeywordHit("x", 0.3, T0)])
        assert hit.semantic_score == pytest.approx(0.9)
        assert hit.keyword_score == pytest.approx(0.3)
        assert hit.score == pytest.approx(0.54)

    def test_empty_inputs(self, ranker: ResultRanker) -> None:
        assert ranker.merge([], []) == []


class TestSingleSignal:
    def test_from_semantic_uses_raw_similarity(self) -> None:
        (hit,) = from_semantic([VectorMatch("x", 0.8, T0)])
        assert hit.score == pytest.approx(0.8)
        assert hit.match_kind is MatchKind.SEMANTIC

    def test_from_keyword_uses_raw_score(self) -> None:
        hits = from_keyword([KeywordHit("x", 0.3, T0), KeywordHit("y", 0.9, T0)])
        assert [h.item_id for h in hits] == ["y", "x"]
        assert all(h.match_kind is MatchKind.KEYWORD for h in hits)


def test_rank_key_orders_score_then_recency_then_id() -> None:
    keys = sorted(
        [
            ("old", rank_key(0.5, T0, "old")),
            ("new", rank_key(0.5, T1, "new")),
            ("top", rank_key(0.9, T0, "top")),
        ],
        key=lambda pair: pair[1],
    )
    assert [name for name, _ in keys] == ["top", "new", "old"]
