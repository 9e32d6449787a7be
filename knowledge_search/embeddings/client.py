"""
Embedding provider client.

Calls an OpenAI-compatible ``/embeddings`` endpoint over httpx with:
- Request batching by item count and estimated token budget
- Exponential backoff on rate limiting (HTTP 429)
- Jittered backoff on transient failures (transport errors, HTTP 5xx)
- A timeout on every provider call, and an optional overall deadline that
  bounds the whole call including backoff sleeps

Retry policy is built on tenacity ``AsyncRetrying``. The rate-limit loop wraps
the transient loop, so a 429 seen while retrying a transient failure is
handled by the rate-limit policy.

Usage:
    async with EmbeddingClient(settings) as client:
        vectors = await client.embed(["first text", "second text"])
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random_exponential,
)

from knowledge_search.search.exceptions import (
    EmbeddingTimeout,
    InvalidInput,
    ProviderUnavailable,
    RateLimitExceeded,
)
from knowledge_search.search.preprocess import estimate_tokens

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

_DEFAULT_BATCH_SIZE = 16
_DEFAULT_MAX_BATCH_TOKENS = 8000
_DEFAULT_TIMEOUT = 30.0
_DEFAULT_DEADLINE = 120.0
_DEFAULT_BASE_DELAY = 0.5
_DEFAULT_MAX_DELAY = 30.0
_DEFAULT_RATE_LIMIT_RETRIES = 5
_DEFAULT_TRANSIENT_RETRIES = 3

_RATE_LIMIT_STATUS = 429
_AUTH_STATUSES = {401, 403}


class _RateLimited(Exception):
    """Internal retry signal for HTTP 429."""


class _TransientFailure(Exception):
    """Internal retry signal for transport errors and 5xx responses."""


def plan_batches(
    texts: Sequence[str],
    max_items: int = _DEFAULT_BATCH_SIZE,
    max_tokens: int = _DEFAULT_MAX_BATCH_TOKENS,
) -> list[list[int]]:
    """Group text indices into provider batches.

    A batch closes when adding the next text would exceed either ``max_items``
    or ``max_tokens``. A single text over the token budget gets its own batch.

    Returns:
        Lists of indices into ``texts``, in order
    """
    batches: list[list[int]] = []
    current: list[int] = []
    current_tokens = 0

    for index, text in enumerate(texts):
        tokens = estimate_tokens(text)
        if current and (
            len(current) >= max_items or current_tokens + tokens > max_tokens
        ):
            batches.append(current)
            current = []
            current_tokens = 0
        current.append(index)
        current_tokens += tokens

    if current:
        batches.append(current)
    return batches


class EmbeddingClient:
    """Batched, retrying client for the embedding provider.

    Storage of the returned vectors is the caller's responsibility.
    """

    def __init__(
        self,
        settings: Any,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        """Initialize client with Settings object.

        Args:
            settings: Settings with embedding_* attributes
            http_client: Optional pre-built httpx client (tests inject one
                with ``httpx.MockTransport``); created lazily otherwise
            sleep: Awaitable used between retries (default: asyncio.sleep)
        """
        self._endpoint = settings.embedding_provider_endpoint
        self._api_key = getattr(settings, "embedding_api_key", None)
        self._model = settings.embedding_model
        self._dimensions = settings.embedding_dimensions
        self._batch_size = getattr(settings, "embedding_batch_size", _DEFAULT_BATCH_SIZE)
        self._max_batch_tokens = getattr(
            settings, "embedding_max_batch_tokens", _DEFAULT_MAX_BATCH_TOKENS
        )
        self._timeout = getattr(settings, "embedding_timeout_seconds", _DEFAULT_TIMEOUT)
        self._deadline = getattr(settings, "embedding_deadline_seconds", _DEFAULT_DEADLINE)
        self._base_delay = getattr(
            settings, "embedding_rate_limit_base_delay", _DEFAULT_BASE_DELAY
        )
        self._max_delay = getattr(
            settings, "embedding_rate_limit_max_delay", _DEFAULT_MAX_DELAY
        )
        self._rate_limit_retries = getattr(
            settings, "embedding_rate_limit_max_retries", _DEFAULT_RATE_LIMIT_RETRIES
        )
        self._transient_retries = getattr(
            settings, "embedding_transient_max_retries", _DEFAULT_TRANSIENT_RETRIES
        )
        self._client = http_client
        self._owns_client = http_client is None
        self._sleep = sleep or asyncio.sleep

    @property
    def model(self) -> str:
        """Embedding model identifier sent to the provider."""
        return self._model

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def close(self) -> None:
        """Close the underlying HTTP client. Idempotent."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> EmbeddingClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.close()

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed texts, batching provider calls.

        Args:
            texts: Normalized input texts

        Returns:
            One vector per input text, in input order

        Raises:
            InvalidInput: If any text is empty or the provider rejects input
            RateLimitExceeded: If rate limiting outlasts all backoff retries
            ProviderUnavailable: If the provider stays unreachable or erroring
            EmbeddingTimeout: If a provider call times out or the overall
                deadline passes
        """
        if not texts:
            return []

        empty = [i for i, text in enumerate(texts) if not text or not text.strip()]
        if empty:
            raise InvalidInput(f"Cannot embed empty text at positions {empty}")

        vectors: list[list[float]] = []
        try:
            async with asyncio.timeout(self._deadline):
                for batch in plan_batches(texts, self._batch_size, self._max_batch_tokens):
                    vectors.extend(await self._embed_batch([texts[i] for i in batch]))
        except TimeoutError as e:
            raise EmbeddingTimeout(
                f"Embedding {len(texts)} texts did not finish within {self._deadline}s",
                cause=e,
            ) from e
        return vectors

    async def embed_one(self, text: str) -> list[float]:
        """Embed a single text (e.g. a query)."""
        vectors = await self.embed([text])
        return vectors[0]

    async def _embed_batch(self, texts: list[str]) -> list[list[float]]:
        vectors: list[list[float]] = []
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(_RateLimited),
                stop=stop_after_attempt(self._rate_limit_retries + 1),
                wait=wait_exponential(
                    multiplier=self._base_delay,
                    min=self._base_delay,
                    max=self._max_delay,
                ),
                sleep=self._sleep,
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    vectors = await self._embed_with_transient_retries(texts)
        except _RateLimited as e:
            raise RateLimitExceeded(
                f"Embedding provider rate limit persisted after "
                f"{self._rate_limit_retries} retries",
                cause=e,
            ) from e
        return vectors

    async def _embed_with_transient_retries(self, texts: list[str]) -> list[list[float]]:
        vectors: list[list[float]] = []
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(_TransientFailure),
                stop=stop_after_attempt(self._transient_retries + 1),
                wait=wait_random_exponential(
                    multiplier=self._base_delay,
                    max=self._max_delay,
                ),
                sleep=self._sleep,
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    vectors = await self._post(texts)
        except _TransientFailure as e:
            raise ProviderUnavailable(
                f"Embedding provider unavailable after "
                f"{self._transient_retries} retries: {e}",
                cause=e,
            ) from e
        return vectors

    async def _post(self, texts: list[str]) -> list[list[float]]:
        """Single provider call, classified into retry signals or errors."""
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        payload = {
            "model": self._model,
            "input": texts,
            "dimensions": self._dimensions,
        }

        try:
            response = await asyncio.wait_for(
                self._get_client().post(self._endpoint, json=payload, headers=headers),
                timeout=self._timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise EmbeddingTimeout(
                f"Embedding call timed out after {self._timeout}s",
                cause=e,
            ) from e
        except httpx.TransportError as e:
            raise _TransientFailure(f"transport error: {e}") from e

        status = response.status_code
        if status == _RATE_LIMIT_STATUS:
            raise _RateLimited("provider returned 429")
        if status >= 500:
            raise _TransientFailure(f"provider returned {status}")
        if status in _AUTH_STATUSES:
            raise ProviderUnavailable(f"Embedding provider rejected credentials ({status})")
        if status >= 400:
            raise InvalidInput(f"Embedding provider rejected input ({status}): {response.text[:200]}")

        return self._parse_response(response, expected=len(texts))

    def _parse_response(self, response: httpx.Response, expected: int) -> list[list[float]]:
        try:
            body = response.json()
            items = sorted(body["data"], key=lambda item: item.get("index", 0))
            vectors = [[float(x) for x in item["embedding"]] for item in items]
        except (ValueError, KeyError, TypeError) as e:
            raise ProviderUnavailable(f"Malformed embedding response: {e}", cause=e) from e

        if len(vectors) != expected:
            raise ProviderUnavailable(
                f"Provider returned {len(vectors)} embeddings for {expected} inputs"
            )
        for vector in vectors:
            if len(vector) != self._dimensions:
                raise ProviderUnavailable(
                    f"Provider returned {len(vector)}-dimensional vector, "
                    f"expected {self._dimensions}"
                )
        return vectors
