"""
Snippet rendering, keyed on item type.

Pure functions: the search algorithm never branches on item type, only this
presentation step does.
"""

from __future__ import annotations

import re
from collections.abc import Callable

from knowledge_search.search.models import ItemType, SearchableItem

_DEFAULT_MAX_CHARS = 200
_ELLIPSIS = "…"
_WORD_RE = re.compile(r"\w+", re.UNICODE)
_WHITESPACE_RE = re.compile(r"\s+")


def _flatten(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


def _clip(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    cut = text[: max_chars - 1]
    space = cut.rfind(" ")
    if space > max_chars // 2:
        cut = cut[:space]
    return cut.rstrip() + _ELLIPSIS


def _window(text: str, query: str, max_chars: int) -> str:
    """Excerpt centered on the first query word found in the text."""
    flat = _flatten(text)
    if len(flat) <= max_chars:
        return flat

    lowered = flat.casefold()
    hit = -1
    for word in _WORD_RE.findall(query.casefold()):
        hit = lowered.find(word)
        if hit >= 0:
            break
    if hit < 0:
        return _clip(flat, max_chars)

    start = max(0, hit - max_chars // 3)
    excerpt = _clip(flat[start:], max_chars - (1 if start else 0))
    return (_ELLIPSIS + excerpt.lstrip()) if start else excerpt


def _conversation_snippet(item: SearchableItem, query: str, max_chars: int) -> str:
    return _window(item.body or item.title, query, max_chars)


def _issue_snippet(item: SearchableItem, query: str, max_chars: int) -> str:
    # Issue bodies open with the symptom description; lead with it.
    first_paragraph = (item.body or "").strip().split("\n\n", 1)[0]
    return _clip(_flatten(first_paragraph or item.title), max_chars)


def _feature_snippet(item: SearchableItem, query: str, max_chars: int) -> str:
    first_line = next((line for line in (item.body or "").splitlines() if line.strip()), "")
    return _clip(_flatten(first_line or item.title), max_chars)


def _document_snippet(item: SearchableItem, query: str, max_chars: int) -> str:
    return _window(item.body or item.title, query, max_chars)


_SNIPPET_BUILDERS: dict[ItemType, Callable[[SearchableItem, str, int], str]] = {
    ItemType.CONVERSATION: _conversation_snippet,
    ItemType.ISSUE: _issue_snippet,
    ItemType.FEATURE: _feature_snippet,
    ItemType.DOCUMENT: _document_snippet,
}


def build_snippet(item: SearchableItem, query: str, max_chars: int = _DEFAULT_MAX_CHARS) -> str:
    """Bounded excerpt of ``item`` for a result list.

    Never longer than ``max_chars`` characters.
    """
    return _SNIPPET_BUILDERS[item.item_type](item, query, max_chars)
