"""
Result merging and ordering.

Merge rule for items found by both signals:
    combined = max(semantic_weight * semantic_score, keyword_weight * keyword_score)
Items found by one signal keep that single weighted score. ``max`` rather than
a sum keeps weak double matches from outranking one strong match.

Ordering everywhere in the search path is score descending, then more-recent
``updated_at``, then item ID for determinism.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from knowledge_search.search.models import KeywordHit, MatchKind, VectorMatch

# =============================================================================
# Constants
# =============================================================================

_DEFAULT_SEMANTIC_WEIGHT = 0.6
_DEFAULT_KEYWORD_WEIGHT = 0.4


def rank_key(score: float, updated_at: datetime, item_id: str) -> tuple[float, float, str]:
    """Sort key: higher score first, then newer, then by ID."""
    return (-score, -updated_at.timestamp(), item_id)


@dataclass(frozen=True)
class MergedHit:
    """One item after merging, before hydration into a SearchResult."""

    item_id: str
    score: float
    match_kind: MatchKind
    updated_at: datetime
    semantic_score: float | None = None
    keyword_score: float | None = None


class ResultRanker:
    """Weighted max-fusion of semantic and keyword result sets.

    Usage:
        ranker = ResultRanker(semantic_weight=0.6, keyword_weight=0.4)
        merged = ranker.merge(vector_matches, keyword_hits)
    """

    def __init__(
        self,
        semantic_weight: float = _DEFAULT_SEMANTIC_WEIGHT,
        keyword_weight: float = _DEFAULT_KEYWORD_WEIGHT,
    ) -> None:
        """Initialize the ranker.

        Raises:
            ValueError: If a weight lies outside [0, 1]
        """
        for name, weight in (("semantic", semantic_weight), ("keyword", keyword_weight)):
            if not 0.0 <= weight <= 1.0:
                raise ValueError(f"{name} weight must be within [0, 1], got {weight}")
        self._semantic_weight = semantic_weight
        self._keyword_weight = keyword_weight

    @property
    def semantic_weight(self) -> float:
        return self._semantic_weight

    @property
    def keyword_weight(self) -> float:
        return self._keyword_weight

    def combine(self, semantic_score: float | None, keyword_score: float | None) -> float:
        """Combined score for one item; None means absent from that set."""
        weighted = []
        if semantic_score is not None:
            weighted.append(self._semantic_weight * _clamp(semantic_score))
        if keyword_score is not None:
            weighted.append(self._keyword_weight * _clamp(keyword_score))
        return max(weighted) if weighted else 0.0

    def merge(
        self,
        semantic: list[VectorMatch],
        keyword: list[KeywordHit],
    ) -> list[MergedHit]:
        """Merge both result sets and order them.

        Returns:
            All merged items sorted by combined score (not truncated)
        """
        semantic_by_id = {m.item_id: m for m in semantic}
        keyword_by_id = {h.item_id: h for h in keyword}

        merged = []
        for item_id in semantic_by_id.keys() | keyword_by_id.keys():
            match = semantic_by_id.get(item_id)
            hit = keyword_by_id.get(item_id)
            semantic_score = match.similarity if match else None
            keyword_score = hit.score if hit else None

            if match and hit:
                kind = MatchKind.HYBRID
                updated_at = max(match.updated_at, hit.updated_at)
            elif match:
                kind = MatchKind.SEMANTIC
                updated_at = match.updated_at
            else:
                kind = MatchKind.KEYWORD
                updated_at = hit.updated_at  # type: ignore[union-attr]

            merged.append(
                MergedHit(
                    item_id=item_id,
                    score=self.combine(semantic_score, keyword_score),
                    match_kind=kind,
                    updated_at=updated_at,
                    semantic_score=semantic_score,
                    keyword_score=keyword_score,
                )
            )

        return sort_hits(merged)


def sort_hits(hits: list[MergedHit]) -> list[MergedHit]:
    """Order merged hits by score, recency, then ID."""
    return sorted(hits, key=lambda h: rank_key(h.score, h.updated_at, h.item_id))


def from_semantic(matches: list[VectorMatch]) -> list[MergedHit]:
    """Single-signal hits for semantic mode (raw similarity as score)."""
    return sort_hits(
        [
            MergedHit(
                item_id=m.item_id,
                score=_clamp(m.similarity),
                match_kind=MatchKind.SEMANTIC,
                updated_at=m.updated_at,
                semantic_score=m.similarity,
            )
            for m in matches
        ]
    )


def from_keyword(hits: list[KeywordHit]) -> list[MergedHit]:
    """Single-signal hits for keyword mode and the keyword-only fallback."""
    return sort_hits(
        [
            MergedHit(
                item_id=h.item_id,
                score=_clamp(h.score),
                match_kind=MatchKind.KEYWORD,
                updated_at=h.updated_at,
                keyword_score=h.score,
            )
            for h in hits
        ]
    )


def _clamp(score: float) -> float:
    return max(0.0, min(1.0, float(score)))
