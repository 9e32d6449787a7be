"""
Embedding provider access for knowledge-search.

- client.py: batched, retrying client for an OpenAI-compatible endpoint
"""

from __future__ import annotations

from knowledge_search.embeddings.client import EmbeddingClient, plan_batches

__all__ = [
    "EmbeddingClient",
    "plan_batches",
]
