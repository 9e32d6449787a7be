"""
Search module for knowledge-search.

Provides keyword search (SQLite FTS5), semantic search (vector store) and
hybrid search with weighted max-fusion, cache and fallback policy.

- preprocess.py: text normalization for embedding and cache keys
- vector.py: Qdrant and in-memory vector stores
- keyword.py: FTS5 keyword index adapter
- cache.py: TTL + LRU result cache
- ranker.py: merge rule and ordering
- hybrid.py: HybridSearchEngine
"""

from __future__ import annotations

from knowledge_search.search.cache import CacheKey, SearchCache, make_key
from knowledge_search.search.hybrid import EngineState, HybridSearchEngine
from knowledge_search.search.keyword import KeywordIndex
from knowledge_search.search.models import (
    FieldKind,
    ItemType,
    MatchKind,
    SearchableItem,
    SearchMode,
    SearchResponse,
    SearchResult,
)
from knowledge_search.search.preprocess import TextPreprocessor
from knowledge_search.search.ranker import ResultRanker
from knowledge_search.search.vector import (
    InMemoryVectorStore,
    QdrantVectorStore,
    VectorStore,
    create_vector_store,
)

__all__ = [
    "CacheKey",
    "EngineState",
    "FieldKind",
    "HybridSearchEngine",
    "InMemoryVectorStore",
    "ItemType",
    "KeywordIndex",
    "MatchKind",
    "QdrantVectorStore",
    "ResultRanker",
    "SearchCache",
    "SearchMode",
    "SearchResponse",
    "SearchResult",
    "SearchableItem",
    "TextPreprocessor",
    "VectorStore",
    "create_vector_store",
    "make_key",
]
