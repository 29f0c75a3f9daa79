"""Label normalization and keyword expressions.

An expression is a comma-separated list of OR groups; inside a group,
whitespace-separated terms are ANDed. ``"ACME, EDF GAZ"`` matches labels
containing ACME, or containing both EDF and GAZ.
"""

from __future__ import annotations

import re
import unicodedata
from collections.abc import Iterable
from dataclasses import dataclass
from functools import lru_cache

_NON_ALNUM = re.compile(r"[^A-Z0-9]+")


def normalize_label(value: str | None) -> str:
    """Uppercase, strip diacritics, collapse non-alphanumeric runs to one space."""
    if not value:
        return ""
    decomposed = unicodedata.normalize("NFKD", value)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _NON_ALNUM.sub(" ", stripped.upper()).strip()


def contains_any(normalized_label: str, keywords: Iterable[str]) -> bool:
    """Return True if any normalized keyword is a substring of the label."""
    for keyword in keywords:
        term = normalize_label(keyword)
        if term and term in normalized_label:
            return True
    return False


@dataclass(frozen=True)
class KeywordExpression:
    """Parsed OR-of-AND keyword expression."""

    groups: tuple[tuple[str, ...], ...]

    @classmethod
    def parse(cls, raw: str | None) -> KeywordExpression:
        return _parse(raw or "")

    def __bool__(self) -> bool:
        return bool(self.groups)

    def matches(self, label: str) -> bool:
        normalized = normalize_label(label)
        if not normalized:
            return False
        return any(all(term in normalized for term in group) for group in self.groups)


@lru_cache(maxsize=1024)
def _parse(raw: str) -> KeywordExpression:
    groups: list[tuple[str, ...]] = []
    for chunk in raw.split(","):
        terms = tuple(term for term in (normalize_label(word) for word in chunk.split()) if term)
        if terms:
            groups.append(terms)
    return KeywordExpression(groups=tuple(groups))


def matches_expression(label: str, expression: str | None) -> bool:
    """Return True if the label satisfies the keyword expression."""
    return KeywordExpression.parse(expression).matches(label)


def effective_expression(keywords: str | None, fallback_name: str) -> str:
    """Configured expression, or the display name when none is configured."""
    if keywords and keywords.strip():
        return keywords
    return fallback_name
