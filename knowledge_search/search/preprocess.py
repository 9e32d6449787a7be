"""
Text normalization applied before embedding and cache-key hashing.

Prose is whitespace-collapsed and stripped of control characters; fenced code
blocks pass through untouched so identifiers, indentation and syntax survive.
"""

from __future__ import annotations

import math
import re
import unicodedata

_DEFAULT_MAX_CHARS = 32_000
_CHARS_PER_TOKEN = 4
_REPLACEMENT_CHAR = "\ufffd"

# An unterminated fence runs to the end of the text.
_CODE_FENCE_RE = re.compile(r"```.*?(?:```|\Z)", re.DOTALL)
_WHITESPACE_RE = re.compile(r"\s+")
_SURROGATE_RE = re.compile(r"[\ud800-\udfff]")


def estimate_tokens(text: str) -> int:
    """Rough provider token count used for batch sizing."""
    if not text:
        return 0
    return math.ceil(len(text) / _CHARS_PER_TOKEN)


def _strip_control(segment: str) -> str:
    return "".join(
        ch
        for ch in segment
        if ch.isspace() or unicodedata.category(ch) not in ("Cc", "Cf")
    )


def _clean_prose(segment: str) -> str:
    return _WHITESPACE_RE.sub(" ", _strip_control(segment))


class TextPreprocessor:
    """Pure text normalizer.

    Usage:
        preprocessor = TextPreprocessor(max_chars=32_000)
        text = preprocessor.normalize(item.body)
    """

    def __init__(self, max_chars: int = _DEFAULT_MAX_CHARS) -> None:
        if max_chars < 1:
            raise ValueError(f"max_chars must be positive, got {max_chars}")
        self._max_chars = max_chars

    @property
    def max_chars(self) -> int:
        return self._max_chars

    def normalize(self, text: str | bytes | None) -> str:
        """Normalize text for embedding.

        Args:
            text: Raw text; bytes are decoded as UTF-8

        Returns:
            Collapsed, control-free text with code fences preserved,
            truncated from the end to ``max_chars`` code points.
            Undecodable input becomes U+FFFD rather than raising.
        """
        if text is None:
            return ""
        if isinstance(text, bytes):
            text = text.decode("utf-8", errors="replace")
        text = _SURROGATE_RE.sub(_REPLACEMENT_CHAR, text)

        parts: list[str] = []
        position = 0
        for match in _CODE_FENCE_RE.finditer(text):
            parts.append(_clean_prose(text[position : match.start()]))
            parts.append(match.group(0))
            position = match.end()
        parts.append(_clean_prose(text[position:]))

        normalized = "".join(parts).strip()
        # str slicing is by code point, so truncation never splits one
        return normalized[: self._max_chars]

    def normalize_query(self, text: str | bytes | None) -> str:
        """Normalization used for cache keys: normalize, then casefold."""
        return self.normalize(text).casefold()
