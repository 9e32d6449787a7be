"""
Error taxonomy for knowledge-search.

Every error carries a ``kind`` tag and a ``retryable`` flag so callers can
decide retry vs. abort without inspecting message strings. Names avoid
shadowing builtins (TimeoutError, ConnectionError): the embedding timeout is
``EmbeddingTimeout`` and is also exported as ``Timeout``.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Tag identifying an error without string matching."""

    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    TIMEOUT = "timeout"
    INVALID_INPUT = "invalid_input"
    VECTOR_INDEX_UNAVAILABLE = "vector_index_unavailable"
    KEYWORD_INDEX_DEGRADED = "keyword_index_degraded"
    CACHE_ERROR = "cache_error"
    SEMANTIC_SEARCH_UNAVAILABLE = "semantic_search_unavailable"
    SEARCH_UNAVAILABLE = "search_unavailable"
    DEADLINE_EXCEEDED = "deadline_exceeded"


class SearchError(Exception):
    """Base exception for all knowledge-search errors."""

    kind: ErrorKind = ErrorKind.SEARCH_UNAVAILABLE
    retryable: bool = False

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        """Initialize with message and optional cause.

        Args:
            message: Human-readable error description
            cause: Original exception that caused this error
        """
        super().__init__(message)
        self.message = message
        self.cause = cause

    def to_dict(self) -> dict[str, object]:
        """Structured form used in error responses."""
        return {
            "error": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
        }


# =============================================================================
# Embedding provider errors
# =============================================================================


class EmbeddingError(SearchError):
    """Base exception for embedding provider failures."""

    kind = ErrorKind.PROVIDER_UNAVAILABLE
    retryable = True


class RateLimitExceeded(EmbeddingError):
    """Provider kept signalling rate limits after all backoff retries."""

    kind = ErrorKind.RATE_LIMIT_EXCEEDED


class ProviderUnavailable(EmbeddingError):
    """Provider unreachable, erroring, or returning malformed responses."""

    kind = ErrorKind.PROVIDER_UNAVAILABLE


class EmbeddingTimeout(EmbeddingError):
    """A provider call exceeded its timeout and was cancelled."""

    kind = ErrorKind.TIMEOUT


Timeout = EmbeddingTimeout


class InvalidInput(EmbeddingError):
    """Input rejected by the client or the provider; retrying will not help."""

    kind = ErrorKind.INVALID_INPUT
    retryable = False


# =============================================================================
# Index errors
# =============================================================================


class VectorIndexUnavailable(SearchError):
    """The vector index could not be queried or written.

    Retryable by the caller; never retried inside the store.
    """

    kind = ErrorKind.VECTOR_INDEX_UNAVAILABLE
    retryable = True


class KeywordIndexDegraded(SearchError):
    """Keyword search failed; callers treat this as an empty result set."""

    kind = ErrorKind.KEYWORD_INDEX_DEGRADED
    retryable = True


class CacheError(SearchError):
    """Cache failure. Swallowed at the cache boundary and treated as a miss."""

    kind = ErrorKind.CACHE_ERROR


# =============================================================================
# Request-level errors
# =============================================================================


class SemanticSearchUnavailable(SearchError):
    """An explicit semantic-mode request could not be served."""

    kind = ErrorKind.SEMANTIC_SEARCH_UNAVAILABLE

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        super().__init__(message, cause=cause)
        self.retryable = bool(getattr(cause, "retryable", False))


class SearchUnavailable(SearchError):
    """No result source was available for the request.

    Kind and retryability mirror the semantic-branch failure.
    """

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        super().__init__(message, cause=cause)
        if isinstance(cause, SearchError):
            self.kind = cause.kind
            self.retryable = cause.retryable


class SearchDeadlineExceeded(SearchError):
    """The overall request deadline expired; both branches were cancelled."""

    kind = ErrorKind.DEADLINE_EXCEEDED
    retryable = True
