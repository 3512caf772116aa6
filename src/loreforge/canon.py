"""
Lexical canon index.

Loads world-lore files into memory and ranks them against a query by raw term
occurrence. Loading is best-effort: a file that cannot be read or parsed is
skipped and logged, and the rest of the directory still loads.
"""
from __future__ import annotations

import json
from pathlib import Path

from .config import EMBEDDING_INDEX_FILENAME
from .models import CanonDocument, CanonIndex
from .observability import get_logger
from .tokenization import count_occurrences, tokenize_terms

logger = get_logger(__name__)

CANON_SUFFIXES = {".md", ".markdown", ".txt", ".json"}
# Bookkeeping files written next to the canon that are not lore themselves.
EXCLUDED_FILENAMES = {EMBEDDING_INDEX_FILENAME, "index.json"}
DEFAULT_SNIPPET_WINDOW = 400


def _iter_canon_files(base: Path):
    for path in sorted(base.rglob("*")):
        if not path.is_file():
            continue
        if path.suffix.lower() not in CANON_SUFFIXES:
            continue
        if path.name in EXCLUDED_FILENAMES:
            continue
        yield path


def _read_canon_text(path: Path) -> str:
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        # Structured lore is re-rendered canonically so term counts ignore formatting.
        text = json.dumps(json.loads(text), indent=2, ensure_ascii=False)
    return text


def load_canon(root: str | Path | None) -> CanonIndex:
    """Recursively loads canon files under root. A missing root yields an empty index."""
    if root is None:
        return CanonIndex()
    base = Path(root)
    if not base.is_dir():
        logger.warning("canon_root_missing", path=str(base))
        return CanonIndex()

    docs: list[CanonDocument] = []
    for path in _iter_canon_files(base):
        try:
            text = _read_canon_text(path)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.warning("canon_file_skipped", path=str(path), error=str(exc))
            continue
        docs.append(CanonDocument(id=str(len(docs)), source_path=str(path), text=text))

    logger.info("canon_loaded", path=str(base), documents=len(docs))
    return CanonIndex(docs=tuple(docs))


def extract_snippet(text: str, terms: list[str], window: int = DEFAULT_SNIPPET_WINDOW) -> str:
    """
    Returns the fixed-size window with the most term hits.
    The window advances by half a window; the first window wins ties.
    """
    lower = text.lower()
    stride = max(1, window // 2)
    best_idx = 0
    best_count = -1
    for start in range(0, len(lower), stride):
        count = count_occurrences(lower[start:start + window], terms)
        if count > best_count:
            best_count = count
            best_idx = start
    return text[best_idx:best_idx + window].strip()


def score_documents(index: CanonIndex, terms: list[str]) -> list[tuple[CanonDocument, int]]:
    """Scores every document; zero-score documents are dropped, ties keep load order."""
    scored = []
    for doc in index.docs:
        score = count_occurrences(doc.text.lower(), terms)
        if score > 0:
            scored.append((doc, score))
    # sorted() is stable, so equal scores stay in load order.
    return sorted(scored, key=lambda item: item[1], reverse=True)


def search_canon(
    index: CanonIndex,
    query: str,
    top_k: int = 3,
    *,
    window: int = DEFAULT_SNIPPET_WINDOW,
) -> list[str]:
    """Returns up to top_k snippets from the best-matching canon documents."""
    if not query or not index.docs or top_k <= 0:
        return []
    terms = tokenize_terms(query)
    if not terms:
        return []

    ranked = score_documents(index, terms)[:top_k]
    return [extract_snippet(doc.text, terms, window) for doc, _score in ranked]
