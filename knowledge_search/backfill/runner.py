"""
Embedding backfill.

Embeds items that lack a current embedding under the configured model:
items written before semantic search existed, items whose write-time
embedding failed, and items edited since they were last embedded.

The run is idempotent and resumable. It only ever asks the item store for
items still missing an embedding, so a second run with no intervening writes
processes nothing. Failed items stay missing and are retried by the next run.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from typing import Any

from knowledge_search.indexing.embedder import EmbedStatus, ItemEmbedder

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 5
DEFAULT_INTER_BATCH_DELAY = 2.0


@dataclass
class MigrationStats:
    """Counters for one backfill run.

    Attributes:
        processed: Items embedded during this run
        failed: Items whose embedding or vector upsert failed
        skipped: Items already embedded at start, or with no embeddable text
        total: Items in the store at start
        orphans_removed: Embeddings removed because their item was deleted
    """

    processed: int = 0
    failed: int = 0
    skipped: int = 0
    total: int = 0
    orphans_removed: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class EmbeddingBackfillRunner:
    """Batch job embedding existing items.

    Usage:
        runner = EmbeddingBackfillRunner(repository, embedder, vector_store)
        stats = await runner.run(batch_size=5, inter_batch_delay=2.0)
    """

    def __init__(
        self,
        item_store: Any,
        embedder: ItemEmbedder,
        vector_store: Any,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._item_store = item_store
        self._embedder = embedder
        self._vector_store = vector_store
        self._sleep = sleep or asyncio.sleep

    @property
    def model(self) -> str:
        return self._embedder.model

    async def run(
        self,
        batch_size: int = DEFAULT_BATCH_SIZE,
        inter_batch_delay: float = DEFAULT_INTER_BATCH_DELAY,
    ) -> MigrationStats:
        """Embed every item missing a current-model embedding.

        Args:
            batch_size: Items per provider call
            inter_batch_delay: Seconds to wait between batches

        Returns:
            MigrationStats for the run

        Raises:
            ValueError: If batch_size < 1 or inter_batch_delay < 0
            VectorIndexUnavailable: If orphaned vectors cannot be removed
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        if inter_batch_delay < 0:
            raise ValueError(f"inter_batch_delay must be >= 0, got {inter_batch_delay}")

        stats = MigrationStats()
        stats.orphans_removed = await self._remove_orphans()

        stats.total = await asyncio.to_thread(self._item_store.count_items)
        missing = await asyncio.to_thread(
            self._item_store.count_items_missing_embedding, self.model
        )
        stats.skipped = stats.total - missing
        logger.info(
            "Backfill starting: model=%s total=%d missing=%d batch_size=%d",
            self.model,
            stats.total,
            missing,
            batch_size,
        )

        # Items left behind in a page (failed, empty) stay "missing"; skip past them.
        offset = 0
        batch_number = 0
        while True:
            batch = await asyncio.to_thread(
                self._item_store.get_items_missing_embedding, self.model, batch_size, offset
            )
            if not batch:
                break
            if batch_number:
                await self._sleep(inter_batch_delay)
            batch_number += 1

            for outcome in await self._embedder.embed_items(batch):
                if outcome.status is EmbedStatus.EMBEDDED:
                    stats.processed += 1
                    continue
                offset += 1
                if outcome.status is EmbedStatus.FAILED:
                    stats.failed += 1
                else:
                    stats.skipped += 1

            logger.info(
                "Backfill batch %d done: processed=%d failed=%d skipped=%d",
                batch_number,
                stats.processed,
                stats.failed,
                stats.skipped,
                extra={"backfill": {"batch": batch_number, **stats.to_dict()}},
            )

        logger.info("Backfill finished: %s", stats.to_dict(), extra={"backfill": stats.to_dict()})
        return stats

    async def _remove_orphans(self) -> int:
        orphan_ids = await asyncio.to_thread(self._item_store.get_orphaned_embedding_item_ids)
        if not orphan_ids:
            return 0
        await self._vector_store.delete_items(orphan_ids)
        await asyncio.to_thread(self._item_store.delete_embedding_records, orphan_ids)
        logger.info("Removed embeddings for %d deleted items", len(orphan_ids))
        return len(orphan_ids)
