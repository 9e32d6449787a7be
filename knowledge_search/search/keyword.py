"""
Keyword index adapter over the repository's FTS5 table.

Three match tiers, each normalized to [0, 1]; an item keeps its best:
- Exact item-ID token: 1.0
- FTS5 whole-word and prefix match: bm25 rank r rescaled as x / (1 + x), x = -r
- Substring match for technical tokens the tokenizer or stemmer misses
  (error codes, identifiers): 0.5 * matched_tokens / total_tokens

Keyword search is the fallback tier, so ``search`` never raises: failures are
logged and degrade to an empty result. ``search_strict`` surfaces them as
KeywordIndexDegraded for callers that must tell "no matches" from "failed".
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime
from typing import TYPE_CHECKING

from knowledge_search.search.exceptions import KeywordIndexDegraded
from knowledge_search.search.models import ItemType, KeywordHit
from knowledge_search.search.ranker import rank_key

if TYPE_CHECKING:
    from knowledge_search.storage.repository import ItemRepository

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

_ID_MATCH_SCORE = 1.0
_SUBSTRING_MAX_SCORE = 0.5
_MIN_SUBSTRING_TOKEN_LEN = 2
_MAX_QUERY_TOKENS = 16
_SUBSTRING_FETCH_FACTOR = 4

_WORD_RE = re.compile(r"\w+", re.UNICODE)


def fts_query(text: str) -> str:
    """Build an FTS5 MATCH expression with prefix matching.

    Every word becomes a quoted prefix term (``"oauth"*``) and terms are
    OR-ed, so bm25 rewards items matching more of the query. Quoting keeps
    user input from being parsed as FTS5 operators.
    """
    words = _WORD_RE.findall(text)[:_MAX_QUERY_TOKENS]
    return " OR ".join('"' + word.replace('"', '""') + '"*' for word in words)


def substring_tokens(text: str) -> list[str]:
    """Whitespace tokens kept whole, so ``ERR-404`` or ``auth.py`` stay intact."""
    seen: dict[str, None] = {}
    for token in text.split():
        token = token.strip("\"'`()[]{},;")
        if len(token) >= _MIN_SUBSTRING_TOKEN_LEN:
            seen.setdefault(token.casefold(), None)
    return list(seen)[:_MAX_QUERY_TOKENS]


def bm25_to_score(rank: float) -> float:
    """Rescale a (negative) bm25 rank to [0, 1)."""
    x = max(0.0, -float(rank))
    return x / (1.0 + x)


class KeywordIndex:
    """Exact, prefix and substring search over one scope.

    Usage:
        index = KeywordIndex(repository)
        hits = await index.search("ERR-401 oauth", scope="project-1", limit=10)
    """

    def __init__(self, repository: ItemRepository) -> None:
        self._repository = repository

    async def search(
        self,
        query_text: str,
        scope: str,
        limit: int,
        *,
        item_types: frozenset[ItemType] | None = None,
        tags: frozenset[str] | None = None,
    ) -> list[KeywordHit]:
        """Keyword search that degrades to [] on failure."""
        try:
            return await self.search_strict(
                query_text, scope, limit, item_types=item_types, tags=tags
            )
        except KeywordIndexDegraded as e:
            logger.warning("Keyword search degraded to empty result: %s", e)
            return []

    async def search_strict(
        self,
        query_text: str,
        scope: str,
        limit: int,
        *,
        item_types: frozenset[ItemType] | None = None,
        tags: frozenset[str] | None = None,
    ) -> list[KeywordHit]:
        """Keyword search.

        ``tags`` keeps only items carrying at least one of the given tags.

        Returns:
            Up to ``limit`` hits, best first (ties: newer, then ID)

        Raises:
            KeywordIndexDegraded: If the underlying store fails
        """
        if limit <= 0 or not query_text or not query_text.strip():
            return []
        try:
            return await asyncio.to_thread(
                self._search_sync, query_text, scope, limit, item_types, tags
            )
        except Exception as e:
            raise KeywordIndexDegraded(f"Keyword index query failed: {e}", cause=e) from e

    def _search_sync(
        self,
        query_text: str,
        scope: str,
        limit: int,
        item_types: frozenset[ItemType] | None,
        tags: frozenset[str] | None,
    ) -> list[KeywordHit]:
        scores: dict[str, float] = {}
        updated: dict[str, datetime] = {}

        def offer(item_id: str, score: float, updated_at: datetime) -> None:
            if score > scores.get(item_id, -1.0):
                scores[item_id] = score
            updated[item_id] = updated_at

        tokens = substring_tokens(query_text)
        # Exact ID matches, independent of the LIMITed tiers below
        for row in self._repository.find_items_by_id(tokens, scope, item_types, tags):
            offer(row.item_id, _ID_MATCH_SCORE, row.updated_at)

        expression = fts_query(query_text)
        if expression:
            for row in self._repository.search_fts(expression, scope, limit, item_types, tags):
                offer(row.item_id, bm25_to_score(row.rank), row.updated_at)

        rows = self._repository.search_substring(
            tokens, scope, limit * _SUBSTRING_FETCH_FACTOR, item_types, tags
        )
        for row in rows:
            haystack = row.haystack.casefold()
            matched = sum(1 for token in tokens if token in haystack)
            if matched:
                offer(
                    row.item_id,
                    _SUBSTRING_MAX_SCORE * matched / len(tokens),
                    row.updated_at,
                )

        hits = [KeywordHit(item_id, score, updated[item_id]) for item_id, score in scores.items()]
        hits.sort(key=lambda h: rank_key(h.score, h.updated_at, h.item_id))
        return hits[:limit]
