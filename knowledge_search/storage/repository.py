"""
SQLite item repository.

Holds the searchable corpus and the search subsystem's derived state:
- ``items``: one row per SearchableItem
- ``items_fts``: FTS5 external-content index over title, body and tags,
  kept in sync by triggers
- ``embedding_records``: one row per (item_id, field_kind, model); vectors
  themselves live in the vector store

Methods are synchronous and open one connection per call; async callers run
them through ``asyncio.to_thread``.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from knowledge_search.search.models import FieldKind, ItemType, SearchableItem, utcnow

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS items (
    item_id TEXT PRIMARY KEY,
    item_type TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    body TEXT NOT NULL DEFAULT '',
    tags TEXT NOT NULL DEFAULT '[]',  -- JSON array
    owner_scope TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    content_hash TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS items_scope_idx ON items(owner_scope, item_type);

CREATE VIRTUAL TABLE IF NOT EXISTS items_fts USING fts5(
    title,
    body,
    tags,
    content=items,
    content_rowid=rowid,
    tokenize='porter unicode61',
    prefix='2 3'
);

CREATE TRIGGER IF NOT EXISTS items_ai AFTER INSERT ON items BEGIN
    INSERT INTO items_fts(rowid, title, body, tags)
    VALUES (NEW.rowid, NEW.title, NEW.body, NEW.tags);
END;

CREATE TRIGGER IF NOT EXISTS items_ad AFTER DELETE ON items BEGIN
    INSERT INTO items_fts(items_fts, rowid, title, body, tags)
    VALUES ('delete', OLD.rowid, OLD.title, OLD.body, OLD.tags);
END;

CREATE TRIGGER IF NOT EXISTS items_au AFTER UPDATE ON items BEGIN
    INSERT INTO items_fts(items_fts, rowid, title, body, tags)
    VALUES ('delete', OLD.rowid, OLD.title, OLD.body, OLD.tags);
    INSERT INTO items_fts(rowid, title, body, tags)
    VALUES (NEW.rowid, NEW.title, NEW.body, NEW.tags);
END;

CREATE TABLE IF NOT EXISTS embedding_records (
    item_id TEXT NOT NULL,
    field_kind TEXT NOT NULL,
    model TEXT NOT NULL,
    dimensions INTEGER NOT NULL,
    generated_at TEXT NOT NULL,
    stale INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (item_id, field_kind, model)
);
"""

_LIKE_ESCAPE = "\\"


def content_hash(item: SearchableItem) -> str:
    """Hash of everything the vector payload depends on."""
    parts = (
        item.item_type.value,
        item.owner_scope,
        item.title,
        item.body,
        "\x1e".join(sorted(item.tags)),
    )
    return hashlib.sha256("\x1f".join(parts).encode("utf-8")).hexdigest()


def _escape_like(token: str) -> str:
    return (
        token.replace(_LIKE_ESCAPE, _LIKE_ESCAPE * 2)
        .replace("%", _LIKE_ESCAPE + "%")
        .replace("_", _LIKE_ESCAPE + "_")
    )


@dataclass(frozen=True)
class SaveResult:
    """Outcome of saving an item.

    Attributes:
        changed: True for new items and for edits to searchable content
        previous_scope: Scope before the save, when the item already existed
    """

    changed: bool
    previous_scope: str | None = None


@dataclass(frozen=True)
class FtsRow:
    item_id: str
    rank: float
    updated_at: datetime


@dataclass(frozen=True)
class IdRow:
    item_id: str
    updated_at: datetime


@dataclass(frozen=True)
class TextRow:
    item_id: str
    haystack: str
    updated_at: datetime


# =============================================================================
# Protocol for Duck Typing
# =============================================================================


@runtime_checkable
class ItemStore(Protocol):
    """Item-storage collaborator used by the engine, indexer and backfill."""

    def get_item(self, item_id: str) -> SearchableItem | None:
        ...

    def get_items(self, item_ids: Sequence[str]) -> dict[str, SearchableItem]:
        ...

    def count_items(self) -> int:
        ...

    def get_items_missing_embedding(
        self, model: str, limit: int, offset: int = 0
    ) -> list[SearchableItem]:
        ...

    def record_embeddings(
        self,
        item_id: str,
        model: str,
        field_kinds: Sequence[FieldKind],
        dimensions: int,
        expected_hash: str,
    ) -> bool:
        ...

    def get_orphaned_embedding_item_ids(self) -> list[str]:
        ...

    def delete_embedding_records(self, item_ids: Sequence[str]) -> int:
        ...


# =============================================================================
# SQLite Implementation
# =============================================================================


class ItemRepository:
    """SQLite-backed item store with FTS5 keyword index.

    Usage:
        repo = ItemRepository("knowledge.db")
        repo.save_item(item)
        missing = repo.get_items_missing_embedding("text-embedding-3-small", 5)
    """

    def __init__(self, db_path: str | Path) -> None:
        """Open (and create if needed) the database schema.

        Raises:
            sqlite3.Error: If the database cannot be opened or lacks FTS5
        """
        self._db_path = str(db_path)
        with self._connection() as conn:
            conn.executescript(SCHEMA)
        logger.debug("Item repository ready at %s", self._db_path)

    @property
    def db_path(self) -> str:
        return self._db_path

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def ping(self) -> bool:
        """True when the database answers a trivial query."""
        try:
            with self._connection() as conn:
                conn.execute("SELECT 1").fetchone()
        except sqlite3.Error:
            return False
        return True

    # =========================================================================
    # Items
    # =========================================================================

    def save_item(self, item: SearchableItem) -> SaveResult:
        """Insert or update an item.

        Editing searchable content marks the item's embedding records stale
        so the backfill re-embeds it.
        """
        new_hash = content_hash(item)
        with self._connection() as conn:
            existing = conn.execute(
                "SELECT content_hash, owner_scope FROM items WHERE item_id = ?",
                (item.item_id,),
            ).fetchone()
            conn.execute(
                """
                INSERT INTO items (item_id, item_type, title, body, tags, owner_scope,
                                   created_at, updated_at, content_hash)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(item_id) DO UPDATE SET
                    item_type = excluded.item_type,
                    title = excluded.title,
                    body = excluded.body,
                    tags = excluded.tags,
                    owner_scope = excluded.owner_scope,
                    updated_at = excluded.updated_at,
                    content_hash = excluded.content_hash
                """,
                (
                    item.item_id,
                    item.item_type.value,
                    item.title,
                    item.body,
                    json.dumps(sorted(item.tags)),
                    item.owner_scope,
                    item.created_at.isoformat(),
                    item.updated_at.isoformat(),
                    new_hash,
                ),
            )
            if existing is None:
                return SaveResult(changed=True)

            changed = existing["content_hash"] != new_hash
            if changed:
                conn.execute(
                    "UPDATE embedding_records SET stale = 1 WHERE item_id = ?",
                    (item.item_id,),
                )
            return SaveResult(changed=changed, previous_scope=existing["owner_scope"])

    def delete_item(self, item_id: str) -> str | None:
        """Delete an item, returning its scope (None if it did not exist).

        Embedding records are left behind as orphans for the backfill to
        collect.
        """
        with self._connection() as conn:
            row = conn.execute(
                "SELECT owner_scope FROM items WHERE item_id = ?", (item_id,)
            ).fetchone()
            if row is None:
                return None
            conn.execute("DELETE FROM items WHERE item_id = ?", (item_id,))
            return row["owner_scope"]

    def get_item(self, item_id: str) -> SearchableItem | None:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM items WHERE item_id = ?", (item_id,)).fetchone()
        return self._row_to_item(row) if row else None

    def get_items(self, item_ids: Sequence[str]) -> dict[str, SearchableItem]:
        """Fetch several items keyed by ID; unknown IDs are omitted."""
        if not item_ids:
            return {}
        placeholders = ",".join("?" * len(item_ids))
        with self._connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM items WHERE item_id IN ({placeholders})",  # noqa: S608
                list(item_ids),
            ).fetchall()
        return {row["item_id"]: self._row_to_item(row) for row in rows}

    def count_items(self) -> int:
        with self._connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM items").fetchone()[0]

    # =========================================================================
    # Embedding bookkeeping
    # =========================================================================

    def get_items_missing_embedding(
        self, model: str, limit: int, offset: int = 0
    ) -> list[SearchableItem]:
        """Items without a current (non-stale) embedding under ``model``."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT i.* FROM items i
                WHERE NOT EXISTS (
                    SELECT 1 FROM embedding_records r
                    WHERE r.item_id = i.item_id AND r.model = ? AND r.stale = 0
                )
                ORDER BY i.created_at, i.item_id
                LIMIT ? OFFSET ?
                """,
                (model, limit, offset),
            ).fetchall()
        return [self._row_to_item(row) for row in rows]

    def count_items_missing_embedding(self, model: str) -> int:
        with self._connection() as conn:
            return conn.execute(
                """
                SELECT COUNT(*) FROM items i
                WHERE NOT EXISTS (
                    SELECT 1 FROM embedding_records r
                    WHERE r.item_id = i.item_id AND r.model = ? AND r.stale = 0
                )
                """,
                (model,),
            ).fetchone()[0]

    def record_embeddings(
        self,
        item_id: str,
        model: str,
        field_kinds: Sequence[FieldKind],
        dimensions: int,
        expected_hash: str,
    ) -> bool:
        """Mark fields as freshly embedded.

        Only applies when the item still has ``expected_hash``; an edit that
        raced the embedding call leaves the records stale.

        Returns:
            True if the records were written
        """
        generated_at = utcnow().isoformat()
        with self._connection() as conn:
            current = conn.execute(
                "SELECT content_hash FROM items WHERE item_id = ?", (item_id,)
            ).fetchone()
            if current is None or current["content_hash"] != expected_hash:
                return False
            conn.executemany(
                """
                INSERT INTO embedding_records
                    (item_id, field_kind, model, dimensions, generated_at, stale)
                VALUES (?, ?, ?, ?, ?, 0)
                ON CONFLICT(item_id, field_kind, model) DO UPDATE SET
                    dimensions = excluded.dimensions,
                    generated_at = excluded.generated_at,
                    stale = 0
                """,
                [(item_id, kind.value, model, dimensions, generated_at) for kind in field_kinds],
            )
            return True

    def embedding_status(self, item_id: str, model: str) -> dict[FieldKind, bool]:
        """Map of embedded field -> stale flag for one item and model."""
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT field_kind, stale FROM embedding_records WHERE item_id = ? AND model = ?",
                (item_id, model),
            ).fetchall()
        return {FieldKind(row["field_kind"]): bool(row["stale"]) for row in rows}

    def get_orphaned_embedding_item_ids(self) -> list[str]:
        """Item IDs that have embedding records but no longer exist."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT r.item_id FROM embedding_records r
                LEFT JOIN items i ON i.item_id = r.item_id
                WHERE i.item_id IS NULL
                ORDER BY r.item_id
                """
            ).fetchall()
        return [row["item_id"] for row in rows]

    def delete_embedding_records(self, item_ids: Sequence[str]) -> int:
        if not item_ids:
            return 0
        with self._connection() as conn:
            cursor = conn.executemany(
                "DELETE FROM embedding_records WHERE item_id = ?",
                [(item_id,) for item_id in item_ids],
            )
            return cursor.rowcount

    # =========================================================================
    # Keyword primitives
    # =========================================================================

    def find_items_by_id(
        self,
        item_ids: Sequence[str],
        scope: str,
        item_types: frozenset[ItemType] | None = None,
        tags: frozenset[str] | None = None,
    ) -> list[IdRow]:
        """Items in ``scope`` whose ID equals one of ``item_ids``, ignoring ASCII case."""
        if not item_ids:
            return []
        type_clause, type_params = self._type_filter(item_types, column="item_type")
        tag_clause, tag_params = self._tag_filter(tags, column="tags")
        placeholders = ",".join("?" * len(item_ids))
        with self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT item_id, updated_at FROM items
                WHERE lower(item_id) IN ({placeholders}) AND owner_scope = ?
                {type_clause} {tag_clause}
                """,  # noqa: S608
                [*(i.lower() for i in item_ids), scope, *type_params, *tag_params],
            ).fetchall()
        return [IdRow(row["item_id"], datetime.fromisoformat(row["updated_at"])) for row in rows]

    def search_fts(
        self,
        match_expression: str,
        scope: str,
        limit: int,
        item_types: frozenset[ItemType] | None = None,
        tags: frozenset[str] | None = None,
    ) -> list[FtsRow]:
        """FTS5 MATCH restricted to a scope, best bm25 rank first.

        bm25 ranks are negative; closer to zero is worse.
        """
        type_clause, type_params = self._type_filter(item_types)
        tag_clause, tag_params = self._tag_filter(tags)
        with self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT i.item_id, i.updated_at, bm25(items_fts, 2.0, 1.0, 1.5) AS rank
                FROM items_fts
                JOIN items i ON i.rowid = items_fts.rowid
                WHERE items_fts MATCH ? AND i.owner_scope = ? {type_clause} {tag_clause}
                ORDER BY rank
                LIMIT ?
                """,  # noqa: S608
                [match_expression, scope, *type_params, *tag_params, limit],
            ).fetchall()
        return [
            FtsRow(row["item_id"], row["rank"], datetime.fromisoformat(row["updated_at"]))
            for row in rows
        ]

    def search_substring(
        self,
        tokens: Sequence[str],
        scope: str,
        limit: int,
        item_types: frozenset[ItemType] | None = None,
        tags: frozenset[str] | None = None,
    ) -> list[TextRow]:
        """Items whose ID, title, body or tags contain any token as a substring.

        LIKE is case-insensitive for ASCII only; callers re-check matches on
        the returned haystack with casefold().
        """
        if not tokens:
            return []
        conditions = []
        params: list[Any] = [scope]
        for token in tokens:
            pattern = f"%{_escape_like(token)}%"
            conditions.append(
                "(item_id LIKE ? ESCAPE '\\' OR title LIKE ? ESCAPE '\\' "
                "OR body LIKE ? ESCAPE '\\' OR tags LIKE ? ESCAPE '\\')"
            )
            params.extend([pattern] * 4)
        type_clause, type_params = self._type_filter(item_types, column="item_type")
        tag_clause, tag_params = self._tag_filter(tags, column="tags")
        params.extend(type_params)
        params.extend(tag_params)
        params.append(limit)

        with self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT item_id, title, body, tags, updated_at FROM items
                WHERE owner_scope = ? AND ({" OR ".join(conditions)}) {type_clause} {tag_clause}
                ORDER BY updated_at DESC
                LIMIT ?
                """,  # noqa: S608
                params,
            ).fetchall()
        return [
            TextRow(
                item_id=row["item_id"],
                haystack=" ".join(
                    (row["item_id"], row["title"], row["body"], " ".join(json.loads(row["tags"])))
                ),
                updated_at=datetime.fromisoformat(row["updated_at"]),
            )
            for row in rows
        ]

    @staticmethod
    def _type_filter(
        item_types: frozenset[ItemType] | None,
        column: str = "i.item_type",
    ) -> tuple[str, list[str]]:
        if not item_types:
            return "", []
        values = sorted(t.value for t in item_types)
        return f"AND {column} IN ({','.join('?' * len(values))})", values

    @staticmethod
    def _tag_filter(
        tags: frozenset[str] | None,
        column: str = "i.tags",
    ) -> tuple[str, list[str]]:
        """Clause keeping items that carry at least one of ``tags``."""
        if not tags:
            return "", []
        values = sorted(tags)
        return (
            f"AND EXISTS (SELECT 1 FROM json_each({column}) AS tag "
            f"WHERE tag.value IN ({','.join('?' * len(values))}))",
            values,
        )

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> SearchableItem:
        return SearchableItem(
            item_id=row["item_id"],
            item_type=ItemType(row["item_type"]),
            title=row["title"],
            body=row["body"],
            owner_scope=row["owner_scope"],
            tags=frozenset(json.loads(row["tags"])),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )
