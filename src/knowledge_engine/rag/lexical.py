"""Token-level helpers for lexical and exact-identifier matching."""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Collection, Iterable

TOKEN_PATTERN = re.compile(r"[a-z0-9][a-z0-9-]{2,}")

MAX_SNIPPET_KEYWORDS = 6
MAX_KEYWORDS = 8

EXACT_ID_SCORE = 0.999
LEXICAL_BASE_SCORE = 0.6
LEXICAL_SPAN = 0.4
LEXICAL_MAX_SCORE = 0.98


def tokenize(text: str) -> list[str]:
    """Lower-case alphanumeric tokens of at least three characters, in order."""
    return TOKEN_PATTERN.findall((text or "").lower())


def tokenize_query(query: str, stop_words: Collection[str] = ()) -> list[str]:
    """Unique query tokens with stop words removed, first occurrence order."""
    return [t for t in dict.fromkeys(tokenize(query)) if t not in stop_words]


def extract_identifiers(query: str, pattern: re.Pattern[str]) -> list[str]:
    """Exact identifiers found in the upper-cased query, deduplicated."""
    return list(dict.fromkeys(pattern.findall((query or "").upper())))


def lexical_score(hits: int, total: int) -> float:
    """``min(0.98, 0.6 + 0.4 * hits / total)``."""
    if total <= 0:
        return 0.0
    return min(LEXICAL_MAX_SCORE, LEXICAL_BASE_SCORE + LEXICAL_SPAN * hits / total)


def extract_keywords(
    text: str,
    existing: Iterable[str] = (),
    stop_words: Collection[str] = (),
) -> list[str]:
    """Merge existing keywords with the most frequent tokens of ``text``.

    Existing keywords come first (lower-cased, in order), followed by up to
    six of the snippet's most frequent non-stop-word tokens; the result is
    capped at eight.
    """
    merged = dict.fromkeys(str(word).strip().lower() for word in existing if str(word).strip())
    counts = Counter(token for token in tokenize(text) if token not in stop_words)
    for word, _ in counts.most_common(MAX_SNIPPET_KEYWORDS):
        merged.setdefault(word)
    return list(merged)[:MAX_KEYWORDS]
