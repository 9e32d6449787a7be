"""
Unit tests for TextPreprocessor.

Normalization must be deterministic, keep fenced code verbatim, never raise
on malformed input and truncate on code-point boundaries.
"""

from __future__ import annotations

import pytest

from knowledge_search.search.preprocess import TextPreprocessor, estimate_tokens


@pytest.fixture
def preprocessor() -> TextPreprocessor:
    return TextPreprocessor(max_chars=32_000)


class TestNormalize:
    """Tests for TextPreprocessor.normalize."""

    def test_collapses_whitespace_and_strips(self, preprocessor: TextPreprocessor) -> None:
        assert preprocessor.normalize("  login \n\n  fails\tafter   reset  ") == "login fails after reset"

    def test_removes_control_characters(self, preprocessor: TextPreprocessor) -> None:
        assert preprocessor.normalize("bad\x00input\u200bhere") == "badinputhere"

    def test_preserves_code_fences_verbatim(self, preprocessor: TextPreprocessor) -> None:
        code = "```python\ndef f():\n    return  1\n```"
        text = f"Before   the\n\nfix:\n{code}\nafter   it"

        result = preprocessor.normalize(text)

        assert code in result
        assert result.startswith("Before the fix: ")
        assert result.endswith(" after it")

    def test_unterminated_fence_runs_to_end(self, preprocessor: TextPreprocessor) -> None:
        text = "see\n```\nx  =  1\n  y"
        assert preprocessor.normalize(text) == "see ```\nx  =  1\n  y"

    def test_none_and_empty_become_empty(self, preprocessor: TextPreprocessor) -> None:
        assert preprocessor.normalize(None) == ""
        assert preprocessor.normalize("") == ""
        assert preprocessor.normalize(" \n\t ") == ""

    def test_invalid_utf8_bytes_are_replaced(self, preprocessor: TextPreprocessor) -> None:
        result = preprocessor.normalize(b"caf\xc3 ok")
        assert "\ufffd" in result
        assert result.endswith("ok")

    def test_lone_surrogates_are_replaced(self, preprocessor: TextPreprocessor) -> None:
        assert preprocessor.normalize("a\ud800b") == "a\ufffdb"

    def test_truncates_to_max_chars(self) -> None:
        preprocessor = TextPreprocessor(max_chars=5)
        assert preprocessor.normalize("abcdefgh") == "abcde"

    def test_truncation_counts_code_points(self) -> None:
        preprocessor = TextPreprocessor(max_chars=3)
        assert preprocessor.normalize("😀😀😀😀") == "😀😀😀"

    def test_is_deterministic(self, preprocessor: TextPreprocessor) -> None:
        text = "Same   text\nevery time"
        assert preprocessor.normalize(text) == preprocessor.normalize(text)

    def test_rejects_non_positive_max_chars(self) -> None:
        with pytest.raises(ValueError):
            TextPreprocessor(max_chars=0)


class TestNormalizeQuery:
    """Tests for cache-key normalization."""

    def test_casefolds(self, preprocessor: TextPreprocessor) -> None:
        assert preprocessor.normalize_query("  OAuth   Login ") == "oauth login"

    def test_equivalent_spellings_match(self, preprocessor: TextPreprocessor) -> None:
        assert preprocessor.normalize_query("Straße") == preprocessor.normalize_query("STRASSE")


class TestEstimateTokens:
    def test_four_chars_per_token(self) -> None:
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2
