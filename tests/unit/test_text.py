"""
Unit tests for tokenizing, edit distance, relevance and highlighting.
"""

import pytest

from dbaas.docquery.query.text import (
    fuzzy_equal,
    highlight,
    levenshtein,
    relevance,
    render_text,
    tokenize,
)


class TestTokenize:
    def test_splits_on_punctuation_and_underscore(self):
        assert tokenize("Hello, world_wide-web 42!") == ["hello", "world", "wide", "web", "42"]

    def test_case_sensitive(self):
        assert tokenize("Hello World", case_sensitive=True) == ["Hello", "World"]

    def test_unicode_letters(self):
        assert tokenize("Crème brûlée") == ["crème", "brûlée"]


class TestLevenshtein:
    @pytest.mark.parametrize(
        "a,b,expected",
        [
            ("kitten", "sitting", 3),
            ("", "abc", 3),
            ("same", "same", 0),
            ("helo", "hello", 1),
        ],
    )
    def test_distance(self, a, b, expected):
        assert levenshtein(a, b) == expected

    def test_short_tokens_need_exact_match(self):
        assert not fuzzy_equal("cat", "bat")
        assert fuzzy_equal("helo", "hello")


class TestRelevance:
    def test_fraction_of_matched_tokens(self):
        assert relevance(["red", "car"], ["a", "red", "bus"]) == 0.5

    def test_fuzzy_toggle(self):
        assert relevance(["helo"], ["hello", "world"], fuzzy=True) == 1.0
        assert relevance(["helo"], ["hello", "world"], fuzzy=False) == 0.0

    def test_empty_query(self):
        assert relevance([], ["anything"]) == 0.0


class TestRenderText:
    def test_nested_values(self):
        assert render_text({"a": ["x", 1], "b": True, "c": None}) == "x 1 true"


class TestHighlight:
    def test_literal_matches_case_insensitive(self):
        spans = highlight("Hello hello", ["hello"])

        assert [(s.start, s.end, s.token) for s in spans] == [(0, 5, "Hello"), (6, 11, "hello")]

    def test_fuzzy_word_span(self):
        spans = highlight("say hello world", ["helo"])

        assert [(s.start, s.end, s.token) for s in spans] == [(4, 9, "hello")]

    def test_no_fuzzy_span_when_disabled(self):
        assert highlight("say hello world", ["helo"], fuzzy=False) == []

    def test_adjacent_ranges_merged(self):
        spans = highlight("abcdef", ["abc", "def"], fuzzy=False)

        assert [(s.start, s.end) for s in spans] == [(0, 6)]
