"""
API routes for knowledge-search.

Provides endpoints for search, item write hooks and health.
"""

from __future__ import annotations

import asyncio
import logging
import time

from fastapi import APIRouter, Depends, Response, status

from knowledge_search.api.dependencies import ServiceContainer
from knowledge_search.api.models import (
    ErrorResponse,
    HealthResponse,
    ItemWriteRequest,
    ItemWriteResponse,
    SearchRequest,
    SearchResponseModel,
    SearchResultItem,
)
from knowledge_search.search.models import SearchableItem, utcnow

logger = logging.getLogger(__name__)

router = APIRouter()

API_VERSION = "1.0.0"


def get_services() -> ServiceContainer:
    """Get service container - injected at runtime."""
    # This is overridden by dependency injection in create_app
    msg = "Services not configured"
    raise RuntimeError(msg)


@router.post(
    "/v1/search",
    response_model=SearchResponseModel,
    responses={
        422: {"model": ErrorResponse, "description": "Validation error"},
        503: {"model": ErrorResponse, "description": "Search unavailable"},
        504: {"model": ErrorResponse, "description": "Search deadline exceeded"},
    },
    tags=["search"],
    summary="Keyword, semantic or hybrid search within one scope",
)
async def search(
    request: SearchRequest,
    services: ServiceContainer = Depends(get_services),  # noqa: B008
) -> SearchResponseModel:
    """
    Search knowledge items.

    Hybrid mode merges semantic and keyword scores with
    `combined = max(semantic_weight * s, keyword_weight * k)`.
    When semantic search is unavailable, hybrid requests are answered from
    the keyword index and flagged `degraded`.
    """
    start_time = time.perf_counter()
    response = await services.engine.search(
        request.query,
        request.scope,
        mode=request.mode,
        top_k=request.top_k,
        item_types=request.item_types,
        tags=request.tags,
    )
    latency_ms = (time.perf_counter() - start_time) * 1000
    logger.info(
        "Search mode=%s results=%d degraded=%s cached=%s latency_ms=%.1f",
        request.mode.value,
        len(response.results),
        response.degraded,
        response.cached,
        latency_ms,
        extra={
            "search": {
                "scope": request.scope,
                "mode": request.mode.value,
                "results": len(response.results),
                "degraded": response.degraded,
                "cached": response.cached,
                "latency_ms": round(latency_ms, 1),
            }
        },
    )
    return SearchResponseModel(
        results=[
            SearchResultItem(
                item_id=r.item_id,
                title=r.title,
                snippet=r.snippet,
                score=r.score,
                match_kind=r.match_kind,
                item_type=r.item_type,
            )
            for r in response.results
        ],
        degraded=response.degraded,
    )


@router.put(
    "/v1/items/{item_id}",
    response_model=ItemWriteResponse,
    tags=["items"],
    summary="Create or update an item and index it",
)
async def put_item(
    item_id: str,
    request: ItemWriteRequest,
    services: ServiceContainer = Depends(get_services),  # noqa: B008
) -> ItemWriteResponse:
    """
    Store an item, invalidate cached results for its scope and, when its
    searchable content changed, embed it in the background.
    """
    now = utcnow()
    item = SearchableItem(
        item_id=item_id,
        item_type=request.item_type,
        title=request.title,
        body=request.body,
        owner_scope=request.owner_scope,
        tags=frozenset(request.tags),
        created_at=request.created_at or now,
        updated_at=request.updated_at or now,
    )
    result = await services.indexer.save(item)
    scheduled = False
    if result.changed and services.engine.semantic_enabled:
        services.indexer.schedule_embedding(item)
        scheduled = True
    return ItemWriteResponse(item_id=item_id, changed=result.changed, embedding_scheduled=scheduled)


@router.delete(
    "/v1/items/{item_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse, "description": "Item not found"}},
    tags=["items"],
    summary="Delete an item",
)
async def delete_item(
    item_id: str,
    services: ServiceContainer = Depends(get_services),  # noqa: B008
) -> Response:
    """Delete an item and invalidate cached results for its scope."""
    if not await services.indexer.remove_item(item_id):
        return Response(
            status_code=status.HTTP_404_NOT_FOUND,
            content=ErrorResponse(
                error="not_found",
                message=f"Item {item_id} not found",
                retryable=False,
            ).model_dump_json(),
            media_type="application/json",
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/health",
    response_model=HealthResponse,
    tags=["health"],
    summary="Health check endpoint",
)
async def health_check(
    services: ServiceContainer = Depends(get_services),  # noqa: B008
) -> HealthResponse:
    """
    Check the health of the item store and the vector store.

    A vector store outage leaves the service usable (keyword-only), so it is
    reported as degraded rather than unhealthy.
    """
    service_statuses: dict[str, str] = {}

    try:
        item_store_ok = await asyncio.to_thread(services.item_store.ping)
        service_statuses["item_store"] = "healthy" if item_store_ok else "unhealthy"
    except Exception:
        logger.exception("Item store health check failed")
        service_statuses["item_store"] = "unhealthy"

    if services.engine.semantic_enabled:
        try:
            vector_ok = await services.vector_store.health_check()
            service_statuses["vector"] = "healthy" if vector_ok else "unhealthy"
        except Exception:
            logger.exception("Vector store health check failed")
            service_statuses["vector"] = "unhealthy"
    else:
        service_statuses["vector"] = "not_configured"

    if service_statuses["item_store"] != "healthy":
        overall_status = "unhealthy"
    elif service_statuses["vector"] == "unhealthy":
        overall_status = "degraded"
    else:
        overall_status = "healthy"

    return HealthResponse(
        status=overall_status,
        services=service_statuses,
        semantic_search_enabled=services.engine.semantic_enabled,
        version=API_VERSION,
    )
