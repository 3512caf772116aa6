"""
Query term tokenization shared by the lexical canon index.
"""
from __future__ import annotations

import re

_TERM_RE = re.compile(r"[a-z0-9]+")


def tokenize_terms(text: str, *, limit: int | None = None) -> list[str]:
    """
    Splits text into lowercase ASCII alphanumeric terms.
    Order and repetitions are preserved; each repetition counts again when scoring.
    """
    max_terms = int(limit) if limit is not None else None

    out: list[str] = []
    for term in _TERM_RE.findall(str(text or "").lower()):
        out.append(term)
        if max_terms is not None and len(out) >= max_terms:
            break
    return out


def count_occurrences(haystack: str, terms: list[str]) -> int:
    """Sums non-overlapping occurrences of every term in an already-lowercased haystack."""
    return sum(haystack.count(term) for term in terms)
