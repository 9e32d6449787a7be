"""
knowledge-search-backfill: embed existing items.

Usage:
    knowledge-search-backfill
    knowledge-search-backfill --batch-size 10 --inter-batch-delay-ms 500
    knowledge-search-backfill --model text-embedding-3-large

Environment Variables:
    ITEM_DB_PATH: SQLite item database (default: knowledge.db)
    EMBEDDING_PROVIDER_ENDPOINT, EMBEDDING_API_KEY, EMBEDDING_MODEL
    VECTOR_BACKEND, QDRANT_URL, QDRANT_COLLECTION

Prints MigrationStats as JSON. Exits 0 when the run completes (even with
failed items) and 1 when the item store or vector store cannot be reached.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sqlite3
import sys
from collections.abc import Sequence

from knowledge_search.backfill.runner import EmbeddingBackfillRunner, MigrationStats
from knowledge_search.core.config import Settings, get_settings
from knowledge_search.core.logging import setup_structured_logging
from knowledge_search.embeddings.client import EmbeddingClient
from knowledge_search.indexing.embedder import ItemEmbedder
from knowledge_search.search.exceptions import VectorIndexUnavailable
from knowledge_search.search.preprocess import TextPreprocessor
from knowledge_search.search.vector import create_vector_store
from knowledge_search.storage.repository import ItemRepository

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_SETUP_ERROR = 1


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="knowledge-search-backfill",
        description="Embed items that lack an embedding under the current model",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=settings.backfill_batch_size,
        help=f"Items per embedding call (default: {settings.backfill_batch_size})",
    )
    parser.add_argument(
        "--inter-batch-delay-ms",
        type=int,
        default=settings.backfill_inter_batch_delay_ms,
        help=f"Pause between batches in ms (default: {settings.backfill_inter_batch_delay_ms})",
    )
    parser.add_argument(
        "--model",
        default=settings.embedding_model,
        help=f"Embedding model (default: {settings.embedding_model})",
    )
    return parser


async def run_backfill(
    settings: Settings,
    batch_size: int,
    inter_batch_delay: float,
) -> MigrationStats:
    """Wire the collaborators from settings and run one backfill.

    Raises:
        sqlite3.Error: If the item database cannot be opened
        VectorIndexUnavailable: If the vector store cannot be reached
    """
    repository = ItemRepository(settings.item_db_path)
    vector_store = create_vector_store(settings)
    await vector_store.connect()
    try:
        await vector_store.ensure_collection()
        async with EmbeddingClient(settings) as client:
            embedder = ItemEmbedder(
                client,
                vector_store,
                repository,
                TextPreprocessor(settings.text_max_chars),
            )
            runner = EmbeddingBackfillRunner(repository, embedder, vector_store)
            return await runner.run(batch_size=batch_size, inter_batch_delay=inter_batch_delay)
    finally:
        await vector_store.close()


def main(argv: Sequence[str] | None = None) -> int:
    settings = get_settings()
    args = build_parser(settings).parse_args(argv)
    if args.batch_size < 1:
        print("--batch-size must be at least 1", file=sys.stderr)
        return EXIT_SETUP_ERROR
    if args.inter_batch_delay_ms < 0:
        print("--inter-batch-delay-ms must not be negative", file=sys.stderr)
        return EXIT_SETUP_ERROR

    setup_structured_logging(service_name="knowledge-search-backfill")
    if args.model != settings.embedding_model:
        settings = settings.model_copy(update={"embedding_model": args.model})

    try:
        stats = asyncio.run(
            run_backfill(settings, args.batch_size, args.inter_batch_delay_ms / 1000.0)
        )
    except (sqlite3.Error, VectorIndexUnavailable) as e:
        logger.error("Backfill setup failed: %s", e)
        print(f"✗ Backfill could not start: {e}", file=sys.stderr)
        return EXIT_SETUP_ERROR

    print(json.dumps(stats.to_dict()))
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
