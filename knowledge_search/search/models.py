"""
Data model shared by every search component.

All item kinds (conversations, issues, features, documents) are one
``SearchableItem`` variant tagged by ``item_type``; nothing in the search
path branches on the kind except snippet rendering.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class ItemType(str, Enum):
    """Kinds of knowledge items."""

    CONVERSATION = "conversation"
    ISSUE = "issue"
    FEATURE = "feature"
    DOCUMENT = "document"


class FieldKind(str, Enum):
    """Item fields that receive their own embedding."""

    TITLE = "title"
    BODY = "body"


class SearchMode(str, Enum):
    """Which backends a request may use."""

    KEYWORD = "keyword"
    SEMANTIC = "semantic"
    HYBRID = "hybrid"


class MatchKind(str, Enum):
    """Which result sets an item was found in."""

    SEMANTIC = "semantic"
    KEYWORD = "keyword"
    HYBRID = "hybrid"


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SearchableItem:
    """A knowledge item as read from the item store.

    Attributes:
        item_id: Opaque unique identifier
        item_type: Kind of item
        title: Short title
        body: Unstructured text, may contain fenced code
        tags: Free-form labels
        owner_scope: User or project the item is visible to
        created_at: Creation time
        updated_at: Last modification time (recency tie-breaker)
    """

    item_id: str
    item_type: ItemType
    title: str
    body: str
    owner_scope: str
    tags: frozenset[str] = field(default_factory=frozenset)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def field_text(self, kind: FieldKind) -> str:
        """Raw text of one embeddable field."""
        return self.title if kind is FieldKind.TITLE else self.body


@dataclass(frozen=True)
class EmbeddingRecord:
    """One embedding of one item field under one model.

    At most one record exists per (item_id, field_kind, model).
    """

    item_id: str
    field_kind: FieldKind
    model: str
    vector: list[float] = field(compare=False, repr=False)
    generated_at: datetime = field(default_factory=utcnow)
    stale: bool = False


@dataclass(frozen=True)
class VectorMatch:
    """Best similarity of one item against a query vector."""

    item_id: str
    similarity: float
    updated_at: datetime


@dataclass(frozen=True)
class KeywordHit:
    """Keyword relevance of one item, normalized to [0, 1]."""

    item_id: str
    score: float
    updated_at: datetime


@dataclass(frozen=True)
class SearchResult:
    """A ranked search result; built per query, never persisted."""

    item_id: str
    title: str
    snippet: str
    score: float
    match_kind: MatchKind
    item_type: ItemType
    updated_at: datetime

    def to_dict(self) -> dict[str, object]:
        return {
            "itemId": self.item_id,
            "title": self.title,
            "snippet": self.snippet,
            "score": self.score,
            "matchKind": self.match_kind.value,
            "itemType": self.item_type.value,
        }


@dataclass(frozen=True)
class SearchResponse:
    """Results plus the degradation flag surfaced to callers."""

    results: tuple[SearchResult, ...]
    degraded: bool = False
    cached: bool = False
