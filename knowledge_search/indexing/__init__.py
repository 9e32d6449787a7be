"""
Indexing module for knowledge-search.

- embedder.py: ItemEmbedder, shared by the write path and the backfill
- indexer.py: SearchIndexer, the item write path
"""

from __future__ import annotations

from knowledge_search.indexing.embedder import EmbedOutcome, EmbedStatus, ItemEmbedder
from knowledge_search.indexing.indexer import SearchIndexer

__all__ = [
    "EmbedOutcome",
    "EmbedStatus",
    "ItemEmbedder",
    "SearchIndexer",
]
