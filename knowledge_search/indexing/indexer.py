"""
SearchIndexer - the item write path.

write item -> invalidate scope cache -> embed (async) -> upsert vectors

Embedding failures never fail the write; the item stays keyword-searchable
and the backfill picks it up later.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from knowledge_search.indexing.embedder import EmbedStatus, ItemEmbedder
from knowledge_search.search.cache import SearchCache
from knowledge_search.search.models import SearchableItem
from knowledge_search.storage.repository import SaveResult

logger = logging.getLogger(__name__)


class SearchIndexer:
    """Keeps the search indexes in step with item writes.

    Usage:
        indexer = SearchIndexer(repository, ItemEmbedder(client, store, repository), cache)
        await indexer.index_item(item)

        # From a request handler: persist now, embed in the background
        if (await indexer.save(item)).changed:
            indexer.schedule_embedding(item)
        ...
        await indexer.drain()
    """

    def __init__(self, item_store: Any, embedder: ItemEmbedder, cache: SearchCache) -> None:
        self._item_store = item_store
        self._embedder = embedder
        self._cache = cache
        self._tasks: set[asyncio.Task[bool]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def save(self, item: SearchableItem) -> SaveResult:
        """Persist an item and drop cached results for every scope it touched."""
        result = await asyncio.to_thread(self._item_store.save_item, item)
        self._cache.invalidate_scope(item.owner_scope)
        if result.previous_scope and result.previous_scope != item.owner_scope:
            self._cache.invalidate_scope(result.previous_scope)
        return result

    async def embed(self, item: SearchableItem) -> bool:
        """Embed one item; returns True if its vectors are now current."""
        outcome = (await self._embedder.embed_items([item]))[0]
        if outcome.status is EmbedStatus.FAILED:
            logger.warning(
                "Embedding deferred to backfill for item %s (%s)",
                item.item_id,
                outcome.error.kind.value if outcome.error else "unknown",
            )
        elif outcome.status is EmbedStatus.EMBEDDED:
            # Vectors landed after the save; results cached in between lack them.
            self._cache.invalidate_scope(item.owner_scope)
        return outcome.status is EmbedStatus.EMBEDDED

    async def index_item(self, item: SearchableItem) -> bool:
        """Save an item and embed it if its searchable content changed.

        Returns:
            True if the item was (re-)embedded
        """
        result = await self.save(item)
        if not result.changed:
            return False
        return await self.embed(item)

    def schedule_embedding(self, item: SearchableItem) -> asyncio.Task[bool]:
        """Embed an item in a tracked background task."""
        task = asyncio.create_task(self.embed(item), name=f"embed-{item.item_id}")
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def schedule(self, item: SearchableItem) -> asyncio.Task[bool]:
        """Run index_item in a tracked background task."""
        task = asyncio.create_task(self.index_item(item), name=f"index-{item.item_id}")
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[bool]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background indexing task %s failed", task.get_name(), exc_info=exc)

    async def remove_item(self, item_id: str) -> bool:
        """Delete an item.

        Its vectors and bookkeeping rows are collected by the next backfill;
        search already drops hits for items that no longer exist.

        Returns:
            True if the item existed
        """
        scope = await asyncio.to_thread(self._item_store.delete_item, item_id)
        if scope is None:
            return False
        self._cache.invalidate_scope(scope)
        return True

    async def drain(self) -> None:
        """Wait for outstanding background tasks."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
