"""
Embedding backfill for knowledge-search.

- runner.py: EmbeddingBackfillRunner and MigrationStats
- cli.py: knowledge-search-backfill console script
"""

from __future__ import annotations

from knowledge_search.backfill.runner import EmbeddingBackfillRunner, MigrationStats

__all__ = [
    "EmbeddingBackfillRunner",
    "MigrationStats",
]
