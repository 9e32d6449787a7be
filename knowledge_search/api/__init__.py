"""
API module for knowledge-search.

Provides FastAPI routes for search, item write hooks and health.
"""

from knowledge_search.api.app import create_app
from knowledge_search.api.models import (
    ErrorResponse,
    ItemWriteRequest,
    ItemWriteResponse,
    SearchRequest,
    SearchResponseModel,
    SearchResultItem,
)
from knowledge_search.api.routes import router

__all__ = [
    "create_app",
    "router",
    "ErrorResponse",
    "ItemWriteRequest",
    "ItemWriteResponse",
    "SearchRequest",
    "SearchResponseModel",
    "SearchResultItem",
]
