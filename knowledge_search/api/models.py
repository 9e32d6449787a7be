"""
Pydantic models for API request/response validation.

Wire names are camelCase (topK, itemTypes, itemId, ...); Python attributes
stay snake_case.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from knowledge_search.search.models import ItemType, MatchKind, SearchMode

_CAMEL = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class SearchRequest(BaseModel):
    """Request model for the search endpoint."""

    model_config = _CAMEL

    query: str = Field(description="Free-text query", max_length=10000)
    scope: str = Field(description="Owner scope to search", min_length=1)
    mode: SearchMode = Field(default=SearchMode.HYBRID, description="keyword, semantic or hybrid")
    top_k: int = Field(default=10, ge=1, le=100, description="Maximum number of results")
    item_types: list[ItemType] | None = Field(
        default=None,
        description="Restrict results to these item types",
    )
    tags: list[str] | None = Field(
        default=None,
        description="Restrict results to items carrying at least one of these tags",
    )


class SearchResultItem(BaseModel):
    """Single search result."""

    model_config = _CAMEL

    item_id: str
    title: str
    snippet: str
    score: float = Field(ge=0.0, le=1.0)
    match_kind: MatchKind
    item_type: ItemType


class SearchResponseModel(BaseModel):
    """Response model for the search endpoint."""

    model_config = _CAMEL

    results: list[SearchResultItem] = Field(default_factory=list)
    degraded: bool = Field(
        default=False,
        description="True when semantic search was unavailable and results are keyword-only",
    )


class ItemWriteRequest(BaseModel):
    """Body of PUT /v1/items/{itemId}."""

    model_config = _CAMEL

    item_type: ItemType
    title: str = Field(max_length=1000)
    body: str = ""
    owner_scope: str = Field(min_length=1)
    tags: list[str] = Field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ItemWriteResponse(BaseModel):
    """Outcome of an item write."""

    model_config = _CAMEL

    item_id: str
    changed: bool = Field(description="True when searchable content changed")
    embedding_scheduled: bool = Field(description="True when background embedding was started")


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    model_config = ConfigDict(extra="forbid")

    status: str = Field(description="Overall health status")
    services: dict[str, str] = Field(
        default_factory=dict,
        description="Individual service statuses",
    )
    semantic_search_enabled: bool
    version: str = Field(description="API version")


class ErrorResponse(BaseModel):
    """Structured error body."""

    model_config = ConfigDict(extra="forbid")

    error: str = Field(description="Error kind")
    message: str = Field(description="Error message")
    retryable: bool = Field(description="Whether retrying the same request may succeed")
