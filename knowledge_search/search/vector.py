"""
Vector store: persistence of embeddings and similarity queries.

Design:
- Repository pattern: ``VectorStore`` protocol with a Qdrant implementation
  and an in-memory implementation sharing the same semantics
- One point per (item_id, field_kind, model); the point ID is derived from
  that triple, so re-embedding overwrites and a new model adds new points
- Cosine similarity mapped to [0, 1] via (1 + cos) / 2
- Scope, model, item-type and tag filtering happen inside the query, before the
  similarity cutoff, so ``top_k`` is drawn from the scoped subset
- An item's similarity is the best of its field vectors; querying
  ``top_k * len(FieldKind)`` points is enough to find the best ``top_k`` items
- Failures raise VectorIndexUnavailable and are never retried here
"""

from __future__ import annotations

import asyncio
import math
import uuid
from collections.abc import Iterable
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from qdrant_client import AsyncQdrantClient
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    FilterSelector,
    HnswConfigDiff,
    MatchAny,
    MatchValue,
    PayloadSchemaType,
    PointStruct,
    VectorParams,
)

from knowledge_search.search.exceptions import VectorIndexUnavailable
from knowledge_search.search.models import FieldKind, ItemType, VectorMatch
from knowledge_search.search.ranker import rank_key

# =============================================================================
# Constants
# =============================================================================

_DEFAULT_COLLECTION = "knowledge_items"
_DEFAULT_HNSW_M = 16
_DEFAULT_HNSW_EF_CONSTRUCT = 100
_FIELDS_PER_ITEM = len(FieldKind)
_INDEXED_PAYLOAD_FIELDS = ("item_id", "owner_scope", "model", "item_type", "tags")


def point_id(item_id: str, field_kind: FieldKind, model: str) -> str:
    """Deterministic point ID for one (item, field, model) embedding."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{item_id}\x1f{field_kind.value}\x1f{model}"))


def cosine_to_similarity(cosine: float) -> float:
    """Map cosine in [-1, 1] to similarity in [0, 1]."""
    return max(0.0, min(1.0, (1.0 + cosine) / 2.0))


def similarity_to_cosine(similarity: float) -> float:
    """Inverse of cosine_to_similarity, used to push thresholds to the backend."""
    return 2.0 * similarity - 1.0


def collapse_matches(
    candidates: Iterable[tuple[str, float, datetime]],
    top_k: int,
) -> list[VectorMatch]:
    """Keep each item's best similarity, order, and truncate to top_k."""
    best: dict[str, VectorMatch] = {}
    for item_id, similarity, updated_at in candidates:
        current = best.get(item_id)
        if current is None or similarity > current.similarity:
            best[item_id] = VectorMatch(item_id, similarity, updated_at)

    ordered = sorted(
        best.values(),
        key=lambda m: rank_key(m.similarity, m.updated_at, m.item_id),
    )
    return ordered[:top_k]


# =============================================================================
# Protocol for Duck Typing
# =============================================================================


@runtime_checkable
class VectorStore(Protocol):
    """Interface shared by every vector store backend."""

    async def upsert(
        self,
        item_id: str,
        field_kind: FieldKind,
        model: str,
        vector: list[float],
        *,
        owner_scope: str,
        item_type: ItemType,
        updated_at: datetime,
        tags: Iterable[str] = (),
    ) -> None:
        """Insert or replace the embedding for one item field."""
        ...

    async def query(
        self,
        query_vector: list[float],
        scope: str,
        top_k: int,
        min_similarity: float,
        *,
        model: str,
        item_types: frozenset[ItemType] | None = None,
        tags: frozenset[str] | None = None,
    ) -> list[VectorMatch]:
        """Return up to top_k items ordered by similarity."""
        ...

    async def delete_items(self, item_ids: list[str]) -> None:
        """Remove every embedding of the given items."""
        ...


# =============================================================================
# Qdrant Implementation
# =============================================================================


class QdrantVectorStore:
    """Qdrant-backed vector store.

    Reuses a single AsyncQdrantClient instance.

    Usage:
        async with QdrantVectorStore(settings=settings) as store:
            await store.ensure_collection()
            matches = await store.query(vector, "project-1", 10, 0.5, model="m")
    """

    def __init__(self, settings: Any, client: AsyncQdrantClient | None = None) -> None:
        """Initialize store with Settings object.

        Args:
            settings: Settings with qdrant_url, qdrant_collection,
                      qdrant_api_key and embedding_dimensions attributes
            client: Optional pre-built client; otherwise created in connect()
        """
        self._settings = settings
        self._url = settings.qdrant_url
        self._collection = getattr(settings, "qdrant_collection", _DEFAULT_COLLECTION)
        self._api_key = getattr(settings, "qdrant_api_key", None)
        self._vector_size = getattr(settings, "embedding_dimensions", None)
        self._client = client

    async def connect(self) -> None:
        """Connect to Qdrant and verify connectivity.

        The client is kept when the check fails, so later calls reach the
        server once it is back.

        Raises:
            VectorIndexUnavailable: If connection fails
        """
        try:
            if self._client is None:
                self._client = AsyncQdrantClient(url=self._url, api_key=self._api_key)
            await self._client.get_collections()
        except Exception as e:
            raise VectorIndexUnavailable(
                f"Failed to connect to Qdrant at {self._url}: {e}",
                cause=e,
            ) from e

    async def close(self) -> None:
        """Close the Qdrant client connection. Idempotent."""
        if self._client is not None:
            await self._client.close()
            self._client = None

    async def __aenter__(self) -> QdrantVectorStore:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.close()

    def _require_client(self) -> AsyncQdrantClient:
        if self._client is None:
            raise VectorIndexUnavailable("Vector store is not connected. Call connect() first.")
        return self._client

    async def health_check(self) -> bool:
        """True when the backend answers a lightweight request."""
        if self._client is None:
            return False
        try:
            await self._client.get_collections()
        except Exception:
            return False
        return True

    async def ensure_collection(
        self,
        vector_size: int | None = None,
        hnsw_m: int | None = None,
        hnsw_ef_construct: int | None = None,
    ) -> None:
        """Create the cosine HNSW collection and payload indexes if missing.

        Raises:
            VectorIndexUnavailable: If the collection cannot be created
        """
        client = self._require_client()
        size = vector_size if vector_size is not None else self._vector_size
        if size is None:
            raise ValueError("vector_size is required when settings lack embedding_dimensions")

        try:
            if await client.collection_exists(collection_name=self._collection):
                return
            await client.create_collection(
                collection_name=self._collection,
                vectors_config=VectorParams(size=size, distance=Distance.COSINE),
                hnsw_config=HnswConfigDiff(
                    m=hnsw_m if hnsw_m is not None else _DEFAULT_HNSW_M,
                    ef_construct=(
                        hnsw_ef_construct
                        if hnsw_ef_construct is not None
                        else _DEFAULT_HNSW_EF_CONSTRUCT
                    ),
                ),
            )
            for field_name in _INDEXED_PAYLOAD_FIELDS:
                await client.create_payload_index(
                    collection_name=self._collection,
                    field_name=field_name,
                    field_schema=PayloadSchemaType.KEYWORD,
                )
        except Exception as e:
            raise VectorIndexUnavailable(
                f"Failed to ensure collection '{self._collection}': {e}",
                cause=e,
            ) from e

    async def upsert(
        self,
        item_id: str,
        field_kind: FieldKind,
        model: str,
        vector: list[float],
        *,
        owner_scope: str,
        item_type: ItemType,
        updated_at: datetime,
        tags: Iterable[str] = (),
    ) -> None:
        """Insert or replace the embedding for one item field.

        Raises:
            VectorIndexUnavailable: If the write fails
        """
        client = self._require_client()
        point = PointStruct(
            id=point_id(item_id, field_kind, model),
            vector=vector,
            payload={
                "item_id": item_id,
                "field_kind": field_kind.value,
                "model": model,
                "owner_scope": owner_scope,
                "item_type": item_type.value,
                "updated_at": updated_at.isoformat(),
                "tags": sorted(tags),
            },
        )
        try:
            await client.upsert(collection_name=self._collection, points=[point])
        except Exception as e:
            raise VectorIndexUnavailable(
                f"Upsert failed for item '{item_id}' ({field_kind.value}): {e}",
                cause=e,
            ) from e

    async def query(
        self,
        query_vector: list[float],
        scope: str,
        top_k: int,
        min_similarity: float,
        *,
        model: str,
        item_types: frozenset[ItemType] | None = None,
        tags: frozenset[str] | None = None,
    ) -> list[VectorMatch]:
        """Similarity query restricted to one scope and model.

        Raises:
            VectorIndexUnavailable: If the query fails
        """
        client = self._require_client()
        must: list[FieldCondition] = [
            FieldCondition(key="owner_scope", match=MatchValue(value=scope)),
            FieldCondition(key="model", match=MatchValue(value=model)),
        ]
        if item_types:
            must.append(
                FieldCondition(
                    key="item_type",
                    match=MatchAny(any=sorted(t.value for t in item_types)),
                )
            )
        if tags:
            must.append(FieldCondition(key="tags", match=MatchAny(any=sorted(tags))))

        try:
            response = await client.query_points(
                collection_name=self._collection,
                query=query_vector,
                query_filter=Filter(must=must),
                limit=top_k * _FIELDS_PER_ITEM,
                score_threshold=similarity_to_cosine(min_similarity),
                with_payload=True,
            )
        except Exception as e:
            raise VectorIndexUnavailable(
                f"Query failed in collection '{self._collection}': {e}",
                cause=e,
            ) from e

        candidates = []
        for point in response.points:
            payload = point.payload or {}
            similarity = cosine_to_similarity(point.score)
            if similarity < min_similarity:
                continue
            candidates.append(
                (
                    payload["item_id"],
                    similarity,
                    datetime.fromisoformat(payload["updated_at"]),
                )
            )
        return collapse_matches(candidates, top_k)

    async def delete_items(self, item_ids: list[str]) -> None:
        """Remove every embedding of the given items.

        Raises:
            VectorIndexUnavailable: If the delete fails
        """
        if not item_ids:
            return
        client = self._require_client()
        try:
            await client.delete(
                collection_name=self._collection,
                points_selector=FilterSelector(
                    filter=Filter(
                        must=[FieldCondition(key="item_id", match=MatchAny(any=list(item_ids)))]
                    )
                ),
            )
        except Exception as e:
            raise VectorIndexUnavailable(
                f"Delete failed for {len(item_ids)} items: {e}",
                cause=e,
            ) from e


# =============================================================================
# In-Memory Implementation
# =============================================================================


class InMemoryVectorStore:
    """Process-local vector store with the same semantics as QdrantVectorStore.

    Exact (brute-force) cosine search; suited to development and tests.
    """

    def __init__(self) -> None:
        self._points: dict[str, tuple[list[float], dict[str, Any]]] = {}

    def __len__(self) -> int:
        return len(self._points)

    async def connect(self) -> None:
        await asyncio.sleep(0)  # Yield to event loop

    async def close(self) -> None:
        await asyncio.sleep(0)  # Yield to event loop

    async def ensure_collection(self, vector_size: int | None = None, **_: Any) -> None:
        await asyncio.sleep(0)  # Yield to event loop

    async def health_check(self) -> bool:
        await asyncio.sleep(0)  # Yield to event loop
        return True

    async def upsert(
        self,
        item_id: str,
        field_kind: FieldKind,
        model: str,
        vector: list[float],
        *,
        owner_scope: str,
        item_type: ItemType,
        updated_at: datetime,
        tags: Iterable[str] = (),
    ) -> None:
        await asyncio.sleep(0)  # Yield to event loop
        self._points[point_id(item_id, field_kind, model)] = (
            list(vector),
            {
                "item_id": item_id,
                "field_kind": field_kind,
                "model": model,
                "owner_scope": owner_scope,
                "item_type": item_type,
                "updated_at": updated_at,
                "tags": frozenset(tags),
            },
        )

    async def query(
        self,
        query_vector: list[float],
        scope: str,
        top_k: int,
        min_similarity: float,
        *,
        model: str,
        item_types: frozenset[ItemType] | None = None,
        tags: frozenset[str] | None = None,
    ) -> list[VectorMatch]:
        await asyncio.sleep(0)  # Yield to event loop
        candidates = []
        for vector, payload in self._points.values():
            if payload["owner_scope"] != scope or payload["model"] != model:
                continue
            if item_types and payload["item_type"] not in item_types:
                continue
            if tags and not payload["tags"] & tags:
                continue
            similarity = cosine_to_similarity(cosine(query_vector, vector))
            if similarity < min_similarity:
                continue
            candidates.append((payload["item_id"], similarity, payload["updated_at"]))
        return collapse_matches(candidates, top_k)

    async def delete_items(self, item_ids: list[str]) -> None:
        await asyncio.sleep(0)  # Yield to event loop
        doomed = set(item_ids)
        for key in [k for k, (_, p) in self._points.items() if p["item_id"] in doomed]:
            del self._points[key]

    def has_embedding(self, item_id: str, field_kind: FieldKind, model: str) -> bool:
        return point_id(item_id, field_kind, model) in self._points


def cosine(a: list[float], b: list[float]) -> float:
    """Cosine similarity in [-1, 1]; 0.0 when either vector is zero."""
    dot_product = sum(x * y for x, y in zip(a, b, strict=False))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(x * x for x in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot_product / (norm_a * norm_b)


def create_vector_store(settings: Any) -> QdrantVectorStore | InMemoryVectorStore:
    """Build the store selected by ``settings.vector_backend`` (not yet connected)."""
    if getattr(settings, "vector_backend", "qdrant") == "memory":
        return InMemoryVectorStore()
    return QdrantVectorStore(settings=settings)
