"""
FastAPI application factory for knowledge-search.

Creates and configures the FastAPI application with routes, error handlers
and dependencies.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from knowledge_search.api.dependencies import ServiceContainer, build_services
from knowledge_search.api.routes import API_VERSION, get_services, router
from knowledge_search.core.config import Settings, get_settings
from knowledge_search.core.logging import (
    clear_correlation_id,
    set_correlation_id,
    setup_structured_logging,
)
from knowledge_search.search.exceptions import (
    SearchDeadlineExceeded,
    SearchError,
    VectorIndexUnavailable,
)

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def error_status(exc: SearchError) -> int:
    """HTTP status for a search error that reached the API boundary."""
    if isinstance(exc, SearchDeadlineExceeded):
        return status.HTTP_504_GATEWAY_TIMEOUT
    return status.HTTP_503_SERVICE_UNAVAILABLE


async def _search_error_handler(request: Request, exc: SearchError) -> JSONResponse:
    logger.warning("Search request failed: %s (%s)", exc.message, exc.kind.value)
    return JSONResponse(status_code=error_status(exc), content=exc.to_dict())


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    message = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg', '')}"
        for err in errors
    )
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"error": "invalid_request", "message": message, "retryable": False},
    )


async def _value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"error": "invalid_request", "message": str(exc), "retryable": False},
    )


async def _correlation_id_middleware(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
    set_correlation_id(request_id)
    try:
        response = await call_next(request)
    finally:
        clear_correlation_id()
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


async def _open_vector_store(container: ServiceContainer) -> None:
    """Connect the vector store; an outage at startup is not fatal.

    While the store is down hybrid requests are answered from the keyword
    index and /health reports the vector service as unhealthy.
    """
    try:
        await container.vector_store.connect()
        await container.vector_store.ensure_collection()
    except VectorIndexUnavailable as e:
        logger.warning("Vector store unavailable at startup, serving keyword results only: %s", e)


def create_app(
    settings: Settings | None = None,
    services: ServiceContainer | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Optional settings (default: get_settings())
        services: Optional pre-configured service container; when given, the
            caller owns its lifecycle except for draining indexing tasks

    Returns:
        Configured FastAPI application
    """
    owns_services = services is None
    if services is None:
        services = build_services(settings or get_settings())

    setup_structured_logging(service_name="knowledge-search")

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        container: ServiceContainer = app.state.services
        if owns_services and container.settings.semantic_search_enabled:
            await _open_vector_store(container)
        try:
            yield
        finally:
            await container.indexer.drain()
            if owns_services:
                await container.vector_store.close()
                if container.embedding_client is not None:
                    await container.embedding_client.close()

    app = FastAPI(
        title="Knowledge Search Service",
        description="Hybrid keyword + semantic search over knowledge items",
        version=API_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(_correlation_id_middleware)

    app.add_exception_handler(SearchError, _search_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(ValueError, _value_error_handler)

    # Store services in app state for dependency injection
    app.state.services = services

    # Override the dependency to return our services
    def _get_services() -> ServiceContainer:
        return app.state.services

    app.dependency_overrides[get_services] = _get_services

    # Include routes
    app.include_router(router)

    return app
