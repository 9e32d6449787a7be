"""
Pytest configuration and fixtures for knowledge-search tests.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from knowledge_search.core.config import Settings
from knowledge_search.indexing.embedder import ItemEmbedder
from knowledge_search.search.cache import SearchCache
from knowledge_search.search.vector import InMemoryVectorStore
from knowledge_search.storage.repository import ItemRepository
from tests.fakes import FakeEmbeddingClient


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Provide test settings: in-memory vectors, temp SQLite, small vectors."""
    return Settings(
        _env_file=None,
        item_db_path=str(tmp_path / "items.db"),
        vector_backend="memory",
        embedding_model="fake-model",
        embedding_dimensions=4,
        embedding_api_key="test-key",
        semantic_search_enabled=True,
        semantic_min_similarity=0.5,
        hybrid_semantic_weight=0.6,
        hybrid_keyword_weight=0.4,
        search_timeout_seconds=5.0,
    )


@pytest.fixture
def repository(settings: Settings) -> ItemRepository:
    """SQLite repository in a temp directory."""
    return ItemRepository(settings.item_db_path)


@pytest.fixture
def embedding_client() -> FakeEmbeddingClient:
    return FakeEmbeddingClient()


@pytest.fixture
def vector_store() -> InMemoryVectorStore:
    return InMemoryVectorStore()


@pytest.fixture
def cache() -> SearchCache:
    return SearchCache(max_entries=100, ttl_seconds=300)


@pytest.fixture
def embedder(
    embedding_client: FakeEmbeddingClient,
    vector_store: InMemoryVectorStore,
    repository: ItemRepository,
) -> ItemEmbedder:
    return ItemEmbedder(embedding_client, vector_store, repository)
