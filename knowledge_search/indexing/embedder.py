"""
Embedding of items into the vector store.

Shared by the write path (SearchIndexer) and the backfill runner: normalize
each item's title and body, embed them in one provider call, upsert the
vectors, then record the bookkeeping rows.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from knowledge_search.search.exceptions import (
    EmbeddingError,
    InvalidInput,
    SearchError,
    VectorIndexUnavailable,
)
from knowledge_search.search.models import FieldKind, SearchableItem
from knowledge_search.search.preprocess import TextPreprocessor
from knowledge_search.storage.repository import content_hash

logger = logging.getLogger(__name__)


class EmbedStatus(str, Enum):
    EMBEDDED = "embedded"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class EmbedOutcome:
    """Result of embedding one item."""

    item_id: str
    status: EmbedStatus
    error: SearchError | None = None


@dataclass(frozen=True)
class _Prepared:
    item: SearchableItem
    fields: tuple[tuple[FieldKind, str], ...]


class ItemEmbedder:
    """Embeds items and stores their vectors.

    Never raises for provider or index failures; each item gets an
    EmbedOutcome instead.
    """

    def __init__(
        self,
        embedding_client: Any,
        vector_store: Any,
        item_store: Any,
        preprocessor: TextPreprocessor | None = None,
    ) -> None:
        self._client = embedding_client
        self._vector_store = vector_store
        self._item_store = item_store
        self._preprocessor = preprocessor or TextPreprocessor()

    @property
    def model(self) -> str:
        return self._client.model

    def _prepare(self, item: SearchableItem) -> _Prepared:
        fields = []
        for kind in FieldKind:
            text = self._preprocessor.normalize(item.field_text(kind))
            if text:
                fields.append((kind, text))
        return _Prepared(item=item, fields=tuple(fields))

    async def embed_items(self, items: list[SearchableItem]) -> list[EmbedOutcome]:
        """Embed a batch of items with one provider call.

        An InvalidInput rejection of the whole batch is retried item by item
        so one bad input does not fail its neighbours; other provider errors
        fail the whole batch.

        Returns:
            One outcome per input item, in order
        """
        outcomes: dict[str, EmbedOutcome] = {}
        prepared: list[_Prepared] = []
        for item in items:
            entry = self._prepare(item)
            if entry.fields:
                prepared.append(entry)
            else:
                outcomes[item.item_id] = EmbedOutcome(item.item_id, EmbedStatus.SKIPPED)

        if prepared:
            for outcome in await self._embed_prepared(prepared):
                outcomes[outcome.item_id] = outcome

        return [outcomes[item.item_id] for item in items]

    async def _embed_prepared(self, prepared: list[_Prepared]) -> list[EmbedOutcome]:
        texts = [text for entry in prepared for _, text in entry.fields]
        try:
            vectors = await self._client.embed(texts)
        except InvalidInput as e:
            if len(prepared) == 1:
                logger.warning("Item %s rejected by embedding provider: %s", prepared[0].item.item_id, e)
                return [EmbedOutcome(prepared[0].item.item_id, EmbedStatus.FAILED, e)]
            outcomes = []
            for entry in prepared:
                outcomes.extend(await self._embed_prepared([entry]))
            return outcomes
        except EmbeddingError as e:
            logger.warning("Embedding failed for %d items: %s", len(prepared), e)
            return [EmbedOutcome(entry.item.item_id, EmbedStatus.FAILED, e) for entry in prepared]

        outcomes = []
        position = 0
        for entry in prepared:
            item_vectors = vectors[position : position + len(entry.fields)]
            position += len(entry.fields)
            outcomes.append(await self._store(entry, item_vectors))
        return outcomes

    async def _store(self, entry: _Prepared, vectors: list[list[float]]) -> EmbedOutcome:
        item = entry.item
        try:
            for (kind, _), vector in zip(entry.fields, vectors, strict=True):
                await self._vector_store.upsert(
                    item.item_id,
                    kind,
                    self.model,
                    vector,
                    owner_scope=item.owner_scope,
                    item_type=item.item_type,
                    updated_at=item.updated_at,
                    tags=item.tags,
                )
        except VectorIndexUnavailable as e:
            logger.warning("Vector upsert failed for item %s: %s", item.item_id, e)
            return EmbedOutcome(item.item_id, EmbedStatus.FAILED, e)

        recorded = await asyncio.to_thread(
            self._item_store.record_embeddings,
            item.item_id,
            self.model,
            [kind for kind, _ in entry.fields],
            len(vectors[0]),
            content_hash(item),
        )
        if not recorded:
            if await asyncio.to_thread(self._item_store.get_item, item.item_id) is None:
                await self._drop_vectors(item.item_id)
            else:
                # Edited while embedding; its records stay stale.
                logger.info("Item %s changed during embedding, left for re-embedding", item.item_id)
            return EmbedOutcome(item.item_id, EmbedStatus.SKIPPED)
        return EmbedOutcome(item.item_id, EmbedStatus.EMBEDDED)

    async def _drop_vectors(self, item_id: str) -> None:
        """Remove vectors written for an item deleted while it was being embedded.

        No bookkeeping rows exist for them, so the backfill's orphan sweep
        would never find them.
        """
        try:
            await self._vector_store.delete_items([item_id])
        except VectorIndexUnavailable as e:
            logger.warning("Could not remove vectors of deleted item %s: %s", item_id, e)
            return
        logger.info("Item %s deleted during embedding, vectors removed", item_id)
