"""
Text utilities for full-text search: tokenizing, edit distance, relevance
scoring and match highlighting.

Tokens are maximal runs of Unicode letters and digits, case-folded unless
the search is case-sensitive. A query token fuzzily matches a document
token when their Levenshtein distance is at most floor(ratio * len(query
token)); with the default ratio of 0.3, tokens shorter than 4 characters
must match exactly.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Sequence

TOKEN_PATTERN = re.compile(r"[^\W_]+")

DEFAULT_FUZZY_RATIO = 0.3


@dataclass(frozen=True)
class HighlightSpan:
    """A matched range of a field's text. end is exclusive."""

    start: int
    end: int
    token: str


def tokenize(text: str, case_sensitive: bool = False) -> List[str]:
    """Split text into letter/digit tokens."""
    if not case_sensitive:
        text = text.lower()
    return TOKEN_PATTERN.findall(text)


def render_text(value: Any) -> str:
    """Render a field value as searchable text."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, dict):
        return " ".join(filter(None, (render_text(v) for v in value.values())))
    if isinstance(value, (list, tuple)):
        return " ".join(filter(None, (render_text(v) for v in value)))
    return str(value)


def levenshtein(a: str, b: str) -> int:
    """Classic edit distance with unit insertion, deletion and substitution costs."""
    if a == b:
        return 0
    if len(a) < len(b):
        a, b = b, a
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(
                min(
                    previous[j] + 1,  # deletion
                    current[j - 1] + 1,  # insertion
                    previous[j - 1] + (ca != cb),  # substitution
                )
            )
        previous = current
    return previous[-1]


def max_distance(token: str, ratio: float = DEFAULT_FUZZY_RATIO) -> int:
    return math.floor(len(token) * ratio)


def fuzzy_equal(query_token: str, doc_token: str, ratio: float = DEFAULT_FUZZY_RATIO) -> bool:
    limit = max_distance(query_token, ratio)
    if abs(len(query_token) - len(doc_token)) > limit:
        return False
    return levenshtein(query_token, doc_token) <= limit


def relevance(
    query_tokens: Sequence[str],
    doc_tokens: Iterable[str],
    fuzzy: bool = True,
    ratio: float = DEFAULT_FUZZY_RATIO,
) -> float:
    """Fraction of query tokens matched by the document tokens.

    Returns 0.0 for an empty query.
    """
    if not query_tokens:
        return 0.0
    candidates = set(doc_tokens)

    matched = 0
    for token in query_tokens:
        if token in candidates:
            matched += 1
        elif fuzzy and any(fuzzy_equal(token, c, ratio) for c in candidates):
            matched += 1
    return matched / len(query_tokens)


def highlight(
    text: str,
    query_tokens: Sequence[str],
    case_sensitive: bool = False,
    fuzzy: bool = True,
    ratio: float = DEFAULT_FUZZY_RATIO,
) -> List[HighlightSpan]:
    """Locate literal and fuzzy occurrences of the query tokens in text.

    Overlapping and touching ranges are merged. Offsets index into the
    original text and token is the merged slice of it.
    """
    flags = 0 if case_sensitive else re.IGNORECASE
    ranges = []

    for token in dict.fromkeys(query_tokens):
        for match in re.finditer(re.escape(token), text, flags):
            ranges.append((match.start(), match.end()))

        if fuzzy:
            for word in TOKEN_PATTERN.finditer(text):
                candidate = word.group() if case_sensitive else word.group().lower()
                if fuzzy_equal(token, candidate, ratio):
                    ranges.append((word.start(), word.end()))

    ranges.sort()
    merged: List[List[int]] = []
    for start, end in ranges:
        if merged and start <= merged[-1][1]:
            merged[-1][1] = max(merged[-1][1], end)
        else:
            merged.append([start, end])

    return [HighlightSpan(start, end, text[start:end]) for start, end in merged]
