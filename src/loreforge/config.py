# /loreforge/config.py
"""
Centralized configuration for the narration pipeline.
Every component receives a LoreforgeConfig at construction; only
LoreforgeConfig.from_env() reads the process environment.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path

from dotenv import load_dotenv
from rich.console import Console

# ==============================================================================
# CONSOLE
# ==============================================================================
console = Console()

PROVIDER_CHOICES = ("local", "openai", "lmstudio", "ollama", "groq")
DEFAULT_PROVIDER_MODELS = {
    "openai": "gpt-4o-mini",
    "lmstudio": "gpt-4o-mini",
    "ollama": "granite3.3:2b",
    "groq": "gemma2-9b-it",
}
EMBEDDING_BACKEND_CHOICES = ("none", "huggingface", "openai")
EMBEDDING_INDEX_FILENAME = "embeddings.index.json"
OPENAI_EMBED_MODEL = "text-embedding-3-small"


def _env_str(name: str, default: str | None = None) -> str | None:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip()
    return value or default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        value = int(raw)
    except ValueError:
        return int(default)
    return max(minimum, value)


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        value = float(raw)
    except ValueError:
        return float(default)
    return max(float(minimum), value)


def _env_choice(name: str, default: str, choices: tuple[str, ...]) -> str:
    value = (_env_str(name, default) or default).lower()
    return value if value in choices else default


# ==============================================================================
# CONFIGURATION RECORD
# ==============================================================================
@dataclass(frozen=True)
class LoreforgeConfig:
    """Immutable pipeline configuration passed into each component."""

    # --- Paths ---
    canon_path: Path = Path("canon")
    embedding_index_path: Path | None = None
    sessions_dir: Path = Path("sessions")
    seed_path: Path | None = None
    log_path: Path | None = None

    # --- Seed defaults for composite seed directories ---
    seed_world_title: str = "Fanfic World"
    seed_world_tone: str = "adventurous, character-driven"

    # --- Narration provider ---
    provider: str = "local"
    model_name: str = "gpt-4o-mini"
    base_url: str | None = None
    api_key: str | None = None
    temperature: float = 0.7
    max_retries: int = 2
    backoff_base_s: float = 0.3

    # --- Embeddings ---
    embedding_backend: str = "none"
    embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    embed_chunk_chars: int = 1200

    # --- Retrieval ---
    lexical_top_k: int = 2
    vector_top_k: int = 1
    snippet_window: int = 400
    canon_dynamic: bool = True
    canon_query: str | None = None
    retrieval_max_workers: int = 2

    # --- Transcript / chapters ---
    transcript_tail_lines: int = 20
    transcript_tail_chars: int = 2000
    chapter_every_steps: int = 50
    auto_chapter_every: int = 0
    summarize_chapters: bool = False

    # --- Research ---
    tavily_api_key: str | None = None
    research_web_results: int = 5

    @property
    def resolved_index_path(self) -> Path:
        if self.embedding_index_path is not None:
            return Path(self.embedding_index_path)
        return Path(self.canon_path) / EMBEDDING_INDEX_FILENAME

    @property
    def resolved_log_path(self) -> Path:
        if self.log_path is not None:
            return Path(self.log_path)
        return Path(self.sessions_dir) / "loreforge.log"

    def with_overrides(self, **changes) -> "LoreforgeConfig":
        return replace(self, **changes)

    @classmethod
    def from_env(cls) -> "LoreforgeConfig":
        """Builds a configuration from the environment (and a .env file when present)."""
        load_dotenv()

        canon_path = Path(_env_str("CANON_PATH", "canon"))
        embedding_backend = _env_choice("EMBED_BACKEND", "none", EMBEDDING_BACKEND_CHOICES)
        default_embed_model = OPENAI_EMBED_MODEL if embedding_backend == "openai" else cls.embedding_model
        provider = _env_choice("AI_PROVIDER", "local", PROVIDER_CHOICES)
        default_model = DEFAULT_PROVIDER_MODELS.get(provider, cls.model_name)
        index_path = _env_str("EMBED_INDEX_PATH")
        seed_path = _env_str("SEED_PATH")
        log_path = _env_str("LOG_PATH")

        return cls(
            canon_path=canon_path,
            embedding_index_path=Path(index_path) if index_path else None,
            sessions_dir=Path(_env_str("SESSIONS_DIR", "sessions")),
            seed_path=Path(seed_path) if seed_path else None,
            log_path=Path(log_path) if log_path else None,
            seed_world_title=_env_str("SEED_WORLD_TITLE", cls.seed_world_title),
            seed_world_tone=_env_str("SEED_WORLD_TONE", cls.seed_world_tone),
            provider=provider,
            model_name=_env_str("AI_MODEL", default_model),
            base_url=_env_str("AI_BASE_URL"),
            api_key=_env_str("AI_API_KEY"),
            temperature=_env_float("AI_TEMPERATURE", cls.temperature, minimum=0.0),
            max_retries=_env_int("AI_RETRIES", cls.max_retries, minimum=0),
            backoff_base_s=_env_float("AI_BACKOFF_BASE_S", cls.backoff_base_s, minimum=0.0),
            embedding_backend=embedding_backend,
            embedding_model=_env_str("EMBED_MODEL", default_embed_model),
            embed_chunk_chars=_env_int("EMBED_CHARS", cls.embed_chunk_chars, minimum=64),
            lexical_top_k=_env_int("CANON_TOP_K", cls.lexical_top_k, minimum=0),
            vector_top_k=_env_int("EMBED_TOP_K", cls.vector_top_k, minimum=0),
            snippet_window=_env_int("CANON_SNIPPET_CHARS", cls.snippet_window, minimum=16),
            canon_dynamic=_env_bool("CANON_DYNAMIC", True),
            canon_query=_env_str("CANON_QUERY"),
            retrieval_max_workers=_env_int("RETRIEVAL_MAX_WORKERS", cls.retrieval_max_workers, minimum=1),
            transcript_tail_lines=_env_int("AI_TRANSCRIPT_TAIL_LINES", cls.transcript_tail_lines, minimum=1),
            transcript_tail_chars=_env_int("AI_TRANSCRIPT_TAIL_CHARS", cls.transcript_tail_chars, minimum=1),
            chapter_every_steps=_env_int("CHAPTER_EVERY_STEPS", cls.chapter_every_steps, minimum=0),
            auto_chapter_every=_env_int("AUTO_CHAPTER_EVERY", cls.auto_chapter_every, minimum=0),
            summarize_chapters=_env_bool("AI_SUMMARIZE_CHAPTERS", False),
            tavily_api_key=_env_str("TAVILY_API_KEY"),
            research_web_results=_env_int("RESEARCH_WEB_RESULTS", cls.research_web_results, minimum=0),
        )
