"""
Vector canon index.

Holds precomputed embedding vectors per text chunk and ranks chunks against a
query by cosine similarity. The index is built by a separate offline pass and
persisted as a single JSON document; it is never updated incrementally.
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import numpy as np
from langchain_core.embeddings import Embeddings
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .config import LoreforgeConfig
from .models import LoreforgeError
from .observability import get_logger

logger = get_logger(__name__)

COSINE_EPSILON = 1e-8
INDEXABLE_SUFFIXES = {".md", ".markdown", ".txt"}


class EmbeddingDimensionError(LoreforgeError):
    """Raised when a query vector does not match the index dimensionality."""


class EmbeddingChunk(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    source: str
    offset: int = Field(ge=0)
    length: int = Field(gt=0)
    text: str
    vector: list[float]


class EmbeddingIndex(BaseModel):
    """Serialized as {"model", "updatedAt", "docs"}."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    embedding_model: str = Field(alias="model")
    updated_at: str = Field(alias="updatedAt")
    chunks: list[EmbeddingChunk] = Field(default_factory=list, alias="docs")

    @model_validator(mode="after")
    def _check_dimensions(self):
        dims = {len(chunk.vector) for chunk in self.chunks}
        if len(dims) > 1:
            raise ValueError(f"chunk vectors have mixed dimensionality: {sorted(dims)}")
        return self

    @property
    def dimensions(self) -> int | None:
        return len(self.chunks[0].vector) if self.chunks else None

    def __len__(self) -> int:
        return len(self.chunks)


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


# --- Persistence ---

def load_index(path: str | Path) -> EmbeddingIndex | None:
    """Loads an index file. Missing or unparsable files yield None."""
    index_path = Path(path)
    if not index_path.exists():
        return None
    try:
        raw = index_path.read_text(encoding="utf-8")
        index = EmbeddingIndex.model_validate_json(raw)
    except (OSError, UnicodeDecodeError, ValidationError) as exc:
        logger.warning("embedding_index_invalid", path=str(index_path), error=str(exc))
        return None
    logger.info("embedding_index_loaded", path=str(index_path), chunks=len(index.chunks))
    return index


def save_index(index: EmbeddingIndex, path: str | Path) -> Path:
    """Writes the index as one JSON document, replacing any previous file atomically."""
    index_path = Path(path)
    index_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = index_path.with_suffix(index_path.suffix + ".tmp")
    payload = index.model_dump(by_alias=True)
    tmp_path.write_text(json.dumps(payload, ensure_ascii=True), encoding="utf-8")
    tmp_path.replace(index_path)
    return index_path


# --- Similarity ---

def cosine_similarity(a, b) -> float:
    """dot(a, b) / (|a| * |b| + eps); zero vectors score 0 instead of dividing by zero."""
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb)) + COSINE_EPSILON
    return float(np.dot(va, vb)) / denom


def _cosine_scores(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    return (matrix @ query) / (norms + COSINE_EPSILON)


def rank_chunks(index: EmbeddingIndex, query_vector, top_k: int) -> list[tuple[EmbeddingChunk, float]]:
    """Ranks every chunk by cosine similarity to query_vector, best first."""
    if not index.chunks or top_k <= 0:
        return []
    query = np.asarray(query_vector, dtype=float)
    if query.ndim != 1 or query.shape[0] != index.dimensions:
        raise EmbeddingDimensionError(
            f"query has {query.shape[-1] if query.ndim else 0} dimensions, index has {index.dimensions}"
        )
    matrix = np.asarray([chunk.vector for chunk in index.chunks], dtype=float)
    scores = _cosine_scores(matrix, query)
    order = np.argsort(-scores, kind="stable")[:top_k]
    return [(index.chunks[i], float(scores[i])) for i in order]


def search_index(
    index: EmbeddingIndex | None,
    query: str,
    embeddings: Embeddings | None,
    top_k: int = 3,
) -> list[EmbeddingChunk]:
    """
    Embeds the query through the backend and returns the top_k closest chunks.
    Without an index, a query, or a reachable backend this returns an empty list.
    """
    if index is None or embeddings is None or not query or not index.chunks:
        return []
    try:
        query_vector = embeddings.embed_query(query)
    except Exception as exc:
        # Backend outages degrade to lexical-only retrieval.
        logger.warning(
            "embedding_query_failed",
            model=index.embedding_model,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return []
    try:
        ranked = rank_chunks(index, query_vector, top_k)
    except EmbeddingDimensionError as exc:
        logger.warning("embedding_dimension_mismatch", model=index.embedding_model, error=str(exc))
        return []
    return [chunk for chunk, _score in ranked]


# --- Offline construction ---

def _iter_indexable_files(base: Path):
    for path in sorted(base.rglob("*")):
        if path.is_file() and path.suffix.lower() in INDEXABLE_SUFFIXES:
            yield path


def chunk_text(text: str, chunk_chars: int) -> list[tuple[int, str]]:
    """Splits text into fixed-size character chunks as (offset, chunk) pairs."""
    size = max(1, int(chunk_chars))
    return [(offset, text[offset:offset + size]) for offset in range(0, len(text), size)]


def index_directory(
    directory: str | Path,
    index_path: str | Path,
    embeddings: Embeddings | None,
    *,
    model_name: str,
    chunk_chars: int = 1200,
) -> EmbeddingIndex | None:
    """Embeds every text file under directory and persists the index. Returns None without a backend."""
    if embeddings is None:
        logger.warning("embedding_backend_missing", directory=str(directory))
        return None

    base = Path(directory)
    chunks: list[EmbeddingChunk] = []
    if base.is_dir():
        for path in _iter_indexable_files(base):
            text = path.read_text(encoding="utf-8")
            pieces = chunk_text(text, chunk_chars)
            if not pieces:
                continue
            vectors = embeddings.embed_documents([piece for _offset, piece in pieces])
            for (offset, piece), vector in zip(pieces, vectors):
                chunks.append(
                    EmbeddingChunk(
                        id=f"{path.name}:{offset}",
                        source=path.relative_to(base).as_posix(),
                        offset=offset,
                        length=len(piece),
                        text=piece,
                        vector=list(vector),
                    )
                )
    else:
        logger.warning("embedding_directory_missing", directory=str(base))

    index = EmbeddingIndex(model=model_name, updatedAt=_utcnow_iso(), docs=chunks)
    save_index(index, index_path)
    logger.info("embedding_index_built", directory=str(base), chunks=len(chunks), path=str(index_path))
    return index


# --- Backend factory ---

def build_embeddings(config: LoreforgeConfig) -> Embeddings | None:
    """Returns the configured embedding backend, or None when embeddings are disabled."""
    backend = str(config.embedding_backend or "none").lower()
    if backend == "huggingface":
        from langchain_huggingface import HuggingFaceEmbeddings

        return HuggingFaceEmbeddings(model_name=config.embedding_model)
    if backend == "openai":
        from langchain_openai import OpenAIEmbeddings

        client_kwargs = {}
        if config.base_url:
            client_kwargs["base_url"] = config.base_url
        if config.api_key:
            client_kwargs["api_key"] = config.api_key
        return OpenAIEmbeddings(model=config.embedding_model, **client_kwargs)
    return None
