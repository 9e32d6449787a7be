"""
Dependency injection for API services.

Provides the service container and the factory that wires it from Settings.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from knowledge_search.core.config import Settings
from knowledge_search.embeddings.client import EmbeddingClient
from knowledge_search.indexing.embedder import ItemEmbedder
from knowledge_search.indexing.indexer import SearchIndexer
from knowledge_search.search.cache import SearchCache
from knowledge_search.search.hybrid import HybridSearchEngine
from knowledge_search.search.keyword import KeywordIndex
from knowledge_search.search.preprocess import TextPreprocessor
from knowledge_search.search.vector import create_vector_store
from knowledge_search.storage.repository import ItemRepository


@dataclass
class ServiceContainer:
    """Container for all service dependencies."""

    settings: Settings
    engine: HybridSearchEngine
    indexer: SearchIndexer
    item_store: Any
    vector_store: Any
    embedding_client: Any = None


def build_services(settings: Settings) -> ServiceContainer:
    """Wire production services from settings.

    The vector store is returned unconnected; the application lifespan
    connects and closes it.
    """
    repository = ItemRepository(settings.item_db_path)
    vector_store = create_vector_store(settings)
    embedding_client = EmbeddingClient(settings)
    preprocessor = TextPreprocessor(settings.text_max_chars)
    cache = SearchCache(
        max_entries=settings.search_cache_max_entries,
        ttl_seconds=settings.search_cache_ttl_seconds,
    )
    engine = HybridSearchEngine(
        embedding_client=embedding_client,
        vector_store=vector_store,
        keyword_index=KeywordIndex(repository),
        item_store=repository,
        cache=cache,
        settings=settings,
        preprocessor=preprocessor,
    )
    indexer = SearchIndexer(
        repository,
        ItemEmbedder(embedding_client, vector_store, repository, preprocessor),
        cache,
    )
    return ServiceContainer(
        settings=settings,
        engine=engine,
        indexer=indexer,
        item_store=repository,
        vector_store=vector_store,
        embedding_client=embedding_client,
    )
