"""
Hybrid search engine.

Combines semantic search (embed query, then vector store) with keyword search
(FTS5) and merges them with weighted max-fusion.

Request flow:
1. Serve an unexpired cache hit immediately
2. Run the semantic branch and the keyword branch concurrently; merge only
   after both have resolved
3. Merge, order (score, then recency, then ID), truncate to top_k
4. Hydrate titles and snippets from the item store
5. Cache the response unless it is degraded

Fallback state machine, per request (nothing carries over between requests):

    HYBRID --(embedding or vector index failure)--> KEYWORD_ONLY

KEYWORD_ONLY answers from keyword hits alone and flags the response as
degraded. Degraded responses are not cached, so the next request retries
HYBRID. Explicit semantic mode never falls back; it raises
SemanticSearchUnavailable.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from enum import Enum
from typing import Any

from knowledge_search.search.cache import SearchCache, make_key
from knowledge_search.search.exceptions import (
    EmbeddingError,
    KeywordIndexDegraded,
    SearchDeadlineExceeded,
    SearchUnavailable,
    SemanticSearchUnavailable,
    VectorIndexUnavailable,
)
from knowledge_search.search.keyword import KeywordIndex
from knowledge_search.search.models import (
    ItemType,
    KeywordHit,
    SearchMode,
    SearchResponse,
    SearchResult,
    VectorMatch,
)
from knowledge_search.search.preprocess import TextPreprocessor
from knowledge_search.search.ranker import MergedHit, ResultRanker, from_keyword, from_semantic
from knowledge_search.search.snippets import build_snippet

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

MAX_TOP_K = 100
_DEFAULT_TOP_K = 10
_DEFAULT_MIN_SIMILARITY = 0.5
_DEFAULT_TIMEOUT = 10.0
_DEFAULT_SNIPPET_CHARS = 200
_DEFAULT_MAX_CHARS = 32_000

_SEMANTIC_FAILURES = (EmbeddingError, VectorIndexUnavailable)


class EngineState(str, Enum):
    """Per-request fallback state."""

    HYBRID = "hybrid"
    KEYWORD_ONLY = "keyword_only"


class HybridSearchEngine:
    """Orchestrates keyword and semantic search for one corpus.

    Usage:
        engine = HybridSearchEngine(
            embedding_client=client,
            vector_store=store,
            keyword_index=KeywordIndex(repository),
            item_store=repository,
            cache=SearchCache(),
            settings=settings,
        )
        response = await engine.search("oauth login broken", scope="project-1")
    """

    def __init__(
        self,
        embedding_client: Any,
        vector_store: Any,
        keyword_index: KeywordIndex,
        item_store: Any,
        cache: SearchCache,
        settings: Any,
        preprocessor: TextPreprocessor | None = None,
        ranker: ResultRanker | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            embedding_client: EmbeddingClient (or anything with embed_one)
            vector_store: VectorStore implementation
            keyword_index: KeywordIndex over the same corpus
            item_store: ItemStore used to hydrate results
            cache: Shared SearchCache instance
            settings: Settings with search and embedding attributes

        Raises:
            ValueError: If configured weights are outside [0, 1]
        """
        self._embedding_client = embedding_client
        self._vector_store = vector_store
        self._keyword_index = keyword_index
        self._item_store = item_store
        self._cache = cache

        self._model = settings.embedding_model
        self._semantic_enabled = getattr(settings, "semantic_search_enabled", True)
        self._min_similarity = getattr(
            settings, "semantic_min_similarity", _DEFAULT_MIN_SIMILARITY
        )
        self._timeout = getattr(settings, "search_timeout_seconds", _DEFAULT_TIMEOUT)
        self._snippet_chars = getattr(settings, "snippet_max_chars", _DEFAULT_SNIPPET_CHARS)
        self._preprocessor = preprocessor or TextPreprocessor(
            getattr(settings, "text_max_chars", _DEFAULT_MAX_CHARS)
        )
        self._ranker = ranker or ResultRanker(
            semantic_weight=settings.hybrid_semantic_weight,
            keyword_weight=settings.hybrid_keyword_weight,
        )

    @property
    def semantic_enabled(self) -> bool:
        return self._semantic_enabled

    async def search(
        self,
        query_text: str,
        scope: str,
        mode: SearchMode | str = SearchMode.HYBRID,
        top_k: int = _DEFAULT_TOP_K,
        *,
        item_types: Iterable[ItemType] | None = None,
        tags: Iterable[str] | None = None,
    ) -> SearchResponse:
        """Search one scope.

        Args:
            query_text: Raw query
            scope: Owner scope results must belong to
            mode: keyword, semantic or hybrid
            top_k: Maximum results, 1..100
            item_types: Optional item type filter
            tags: Optional tag filter; results carry at least one of these tags

        Returns:
            SearchResponse with at most top_k results

        Raises:
            ValueError: If top_k is out of range
            SemanticSearchUnavailable: Semantic mode could not be served
            SearchUnavailable: No result source was available
            SearchDeadlineExceeded: The request deadline expired
        """
        if not 1 <= top_k <= MAX_TOP_K:
            raise ValueError(f"top_k must be between 1 and {MAX_TOP_K}, got {top_k}")
        mode = SearchMode(mode)
        if not self._semantic_enabled:
            mode = SearchMode.KEYWORD
        types = frozenset(item_types) if item_types else None
        tag_set = frozenset(tags) if tags else None

        normalized = self._preprocessor.normalize_query(query_text)
        if not normalized:
            return SearchResponse(results=())

        key = make_key(normalized, scope, mode, top_k, types, tag_set)
        cached = self._cache.get(key)
        if cached is not None:
            return SearchResponse(results=cached, cached=True)
        generation = self._cache.generation(scope)

        try:
            response = await asyncio.wait_for(
                self._execute(query_text, scope, mode, top_k, types, tag_set),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            raise SearchDeadlineExceeded(
                f"Search did not complete within {self._timeout}s",
                cause=e,
            ) from e

        if not response.degraded:
            self._cache.put(key, response.results, generation=generation)
        return response

    async def _execute(
        self,
        query_text: str,
        scope: str,
        mode: SearchMode,
        top_k: int,
        item_types: frozenset[ItemType] | None,
        tags: frozenset[str] | None,
    ) -> SearchResponse:
        degraded = False
        if mode is SearchMode.KEYWORD:
            hits = await self._keyword_index.search(
                query_text, scope, top_k, item_types=item_types, tags=tags
            )
            merged = from_keyword(hits)
        elif mode is SearchMode.SEMANTIC:
            try:
                matches = await self._semantic_branch(
                    query_text, scope, top_k, item_types, tags
                )
            except _SEMANTIC_FAILURES as e:
                raise SemanticSearchUnavailable(
                    f"Semantic search unavailable: {e}",
                    cause=e,
                ) from e
            merged = from_semantic(matches)
        else:
            merged, degraded = await self._hybrid(query_text, scope, top_k, item_types, tags)

        results = await self._hydrate(merged, query_text, scope, top_k, tags)
        return SearchResponse(results=tuple(results), degraded=degraded)

    async def _semantic_branch(
        self,
        query_text: str,
        scope: str,
        top_k: int,
        item_types: frozenset[ItemType] | None,
        tags: frozenset[str] | None,
    ) -> list[VectorMatch]:
        vector = await self._embedding_client.embed_one(self._preprocessor.normalize(query_text))
        return await self._vector_store.query(
            vector,
            scope,
            top_k,
            self._min_similarity,
            model=self._model,
            item_types=item_types,
            tags=tags,
        )

    async def _hybrid(
        self,
        query_text: str,
        scope: str,
        top_k: int,
        item_types: frozenset[ItemType] | None,
        tags: frozenset[str] | None,
    ) -> tuple[list[MergedHit], bool]:
        """Run both branches concurrently and apply the fallback policy.

        Returns:
            (merged hits, degraded flag)
        """
        semantic_outcome, keyword_outcome = await asyncio.gather(
            self._semantic_branch(query_text, scope, top_k, item_types, tags),
            self._keyword_index.search_strict(
                query_text, scope, top_k, item_types=item_types, tags=tags
            ),
            return_exceptions=True,
        )

        state = EngineState.HYBRID
        semantic_error: Exception | None = None
        if isinstance(semantic_outcome, _SEMANTIC_FAILURES):
            state = EngineState.KEYWORD_ONLY
            semantic_error = semantic_outcome
            logger.warning(
                "Semantic branch failed (%s), answering from keyword index only",
                semantic_outcome.kind.value,
            )
        elif isinstance(semantic_outcome, BaseException):
            raise semantic_outcome

        keyword_degraded = False
        keyword_hits: list[KeywordHit] = []
        if isinstance(keyword_outcome, KeywordIndexDegraded):
            keyword_degraded = True
            logger.warning("Keyword branch degraded to empty result: %s", keyword_outcome)
        elif isinstance(keyword_outcome, BaseException):
            raise keyword_outcome
        else:
            keyword_hits = keyword_outcome

        if state is EngineState.KEYWORD_ONLY:
            if keyword_degraded:
                raise SearchUnavailable(
                    "Neither semantic nor keyword search is available",
                    cause=semantic_error,
                ) from semantic_error
            return from_keyword(keyword_hits), True

        return self._ranker.merge(semantic_outcome, keyword_hits), False

    async def _hydrate(
        self,
        merged: list[MergedHit],
        query_text: str,
        scope: str,
        top_k: int,
        tags: frozenset[str] | None = None,
    ) -> list[SearchResult]:
        """Attach titles and snippets; drop items deleted, moved or retagged since indexing."""
        if not merged:
            return []
        items = await asyncio.to_thread(self._item_store.get_items, [h.item_id for h in merged])

        results: list[SearchResult] = []
        for hit in merged:
            item = items.get(hit.item_id)
            if item is None or item.owner_scope != scope:
                continue
            if tags and not item.tags & tags:
                continue
            results.append(
                SearchResult(
                    item_id=item.item_id,
                    title=item.title,
                    snippet=build_snippet(item, query_text, self._snippet_chars),
                    score=hit.score,
                    match_kind=hit.match_kind,
                    item_type=item.item_type,
                    updated_at=hit.updated_at,
                )
            )
            if len(results) == top_k:
                break
        return results
