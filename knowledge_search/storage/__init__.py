"""
Item storage for knowledge-search.

- repository.py: SQLite item store, FTS5 index and embedding bookkeeping
"""

from __future__ import annotations

from knowledge_search.storage.repository import ItemRepository, ItemStore, SaveResult, content_hash

__all__ = [
    "ItemRepository",
    "ItemStore",
    "SaveResult",
    "content_hash",
]
