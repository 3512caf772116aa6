"""
Interactive narration session.

NarrativeSession owns one session directory and drives each turn:
player input -> world command -> canon retrieval -> prompt -> narration ->
transcript. Meta-commands (help, chapter, save, canon, research, ...) are
handled here without reaching the world. Every user-visible line is returned
in a SessionReply so the caller decides how to render it.
"""
from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from .canon import load_canon, search_canon
from .chapters import export_chapters, summarize_chapters
from .config import LoreforgeConfig
from .embeddings import load_index, search_index
from .metrics import NarrationMetrics
from .models import NarrationRequest, NarrationResult, SeedData
from .observability import get_logger
from .providers import NarrationProvider, build_provider
from .research import TavilySearchClient, research_and_ingest
from .retrieval import HybridCanonRetriever
from .seeds import load_seed
from .transcript import TranscriptWriter, transcript_tail

logger = get_logger(__name__)

HELP_COMMANDS = (
    "help, chapter, save, narrate <text>, note <text>, bookmark <label>, research <query>, "
    "canon <query>, export-chapters, reload-canon, reload-seed, set-seed <path>, quit"
)
UNKNOWN_COMMAND_TEXT = "Unknown command."
CANON_PREVIEW_CHARS = 200
CANON_COMMAND_TOP_K = 2
RESEARCH_MAX_PAGES = 5
_NUMERIC_CHOICE_RE = re.compile(r"^([1-9][0-9]*)$")
_BOOKMARK_SLUG_RE = re.compile(r"[^a-z0-9_-]+")


# ==============================================================================
# WORLD COLLABORATOR
# ==============================================================================
class WorldAdapter(Protocol):
    """External world simulation that executes player commands."""

    player_name: str
    room_id: str | None

    def has_command(self, name: str) -> bool:
        ...

    def execute(self, name: str, args: str) -> str:
        ...

    def snapshot(self) -> dict:
        ...


class OpenWorld:
    """Stand-in world: accepts every command, prints nothing."""

    def __init__(self, player_name: str = "Admin", room_id: str | None = None):
        self.player_name = player_name
        self.room_id = room_id

    def has_command(self, name: str) -> bool:
        return bool(name)

    def execute(self, name: str, args: str) -> str:
        return ""

    def snapshot(self) -> dict:
        return {"name": self.player_name, "room": self.room_id}


@dataclass
class SessionReply:
    lines: list[str] = field(default_factory=list)
    quit: bool = False


# ==============================================================================
# SESSION
# ==============================================================================
class NarrativeSession:
    """Single-writer session over a transcript, a story log and the canon indexes."""

    def __init__(
        self,
        config: LoreforgeConfig,
        world: WorldAdapter,
        provider: NarrationProvider,
        seed: SeedData,
        session_dir: str | Path,
        embeddings: Any = None,
        metrics: NarrationMetrics | None = None,
        search_client: TavilySearchClient | None = None,
    ):
        self.config = config
        self.world = world
        self.provider = provider
        self.seed = seed
        self.seed_path: Path | None = config.seed_path
        self.embeddings = embeddings
        self.metrics = metrics
        self.search_client = search_client or TavilySearchClient(config.tavily_api_key)

        self.session_dir = Path(session_dir)
        self.session_dir.mkdir(parents=True, exist_ok=True)
        self.transcript_path = self.session_dir / "transcript.ndjson"
        self.story_path = self.session_dir / "story.md"
        self.transcript = TranscriptWriter(self.transcript_path)

        self.step_counter = 0
        self.bookmark_counter = 0
        self.last_choices: list[str] = []
        self.canon_index = None
        self.embedding_index = None
        self.retriever: HybridCanonRetriever | None = None
        self.reload_indexes()

        self._exact_commands = {
            "help": self._cmd_help,
            "?": self._cmd_help,
            "chapter": self._cmd_chapter,
            "save": self._cmd_save,
            "reload-canon": self._cmd_reload_canon,
            "reload-seed": self._cmd_reload_seed,
            "export-chapters": self._cmd_export_chapters,
        }
        self._prefix_commands = (
            ("canon ", self._cmd_canon),
            ("set-seed ", self._cmd_set_seed),
            ("research ", self._cmd_research),
            ("note ", self._cmd_note),
        )

    # ------------------------------------------------------------------
    # Index lifecycle
    # ------------------------------------------------------------------
    def reload_indexes(self):
        """Rebuilds both canon indexes and swaps them in together."""
        canon_index = load_canon(self.config.canon_path)
        embedding_index = load_index(self.config.resolved_index_path)
        retriever = HybridCanonRetriever.from_config(
            self.config,
            canon_index,
            embedding_index=embedding_index,
            embeddings=self.embeddings,
        )
        self.canon_index, self.embedding_index, self.retriever = canon_index, embedding_index, retriever
        logger.info(
            "canon_loaded",
            docs=len(canon_index),
            chunks=len(embedding_index) if embedding_index is not None else 0,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _append_story(self, content: str):
        with open(self.story_path, "a", encoding="utf-8") as fh:
            fh.write(content)

    def _output(self, text: str) -> SessionReply:
        self.transcript.append("output", text)
        return SessionReply(lines=[text])

    def _snapshot_state(self) -> Path | None:
        snapshot_file = self.session_dir / f"state.step-{self.step_counter:04d}.json"
        try:
            data = self.world.snapshot()
            snapshot_file.write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("snapshot_failed", path=str(snapshot_file), error=str(exc))
            return None
        return snapshot_file

    def _canon_query(self, fallback: str | None) -> str:
        return self.config.canon_query or fallback or ""

    def _narrate(self, last_command: str | None, canon_query: str) -> NarrationResult:
        snippets = self.retriever.retrieve_snippets(canon_query) if canon_query else []
        request = NarrationRequest(
            player_name=self.world.player_name,
            seed=self.seed,
            room_id=self.world.room_id,
            last_command=last_command,
            transcript_tail=transcript_tail(
                self.transcript_path,
                self.config.transcript_tail_lines,
                self.config.transcript_tail_chars,
            ),
            canon_snippets=tuple(snippets),
        )
        started = time.perf_counter()
        result = self.provider.generate(request)
        if self.metrics is not None:
            self.metrics.record_generation(
                (time.perf_counter() - started) * 1000.0,
                success=not result.fallback,
                attempts=result.attempts,
                provider=getattr(self.provider, "name", ""),
            )
        return result

    def _narration_lines(self, result: NarrationResult) -> list[str]:
        lines = [result.narration] if result.narration else []
        lines.extend(f"{idx}. {choice}" for idx, choice in enumerate(result.choices, start=1))
        return lines

    def _summary_backend(self):
        return getattr(self.provider, "backend", None)

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------
    def open(self) -> SessionReply:
        """Runs the opening look and narration."""
        lines: list[str] = []
        if self.world.has_command("look"):
            look_output = self.world.execute("look", "")
            if look_output:
                self._append_story(look_output)
                lines.append(look_output)

        title = self.seed.world.title if self.seed.world is not None else None
        result = self._narrate(None, self._canon_query(title))
        self.transcript.append("narration", result.narration, choices=result.choices)
        intro = f"\n{result.narration}"
        if result.choices:
            intro += f"\nChoices: {' | '.join(result.choices)}"
        self._append_story(intro + "\n")
        self.last_choices = list(result.choices)
        lines.extend(self._narration_lines(result))
        return SessionReply(lines=lines)

    def handle(self, line: str) -> SessionReply:
        """Processes one line of player input."""
        text = line.strip()
        if not text:
            return SessionReply()
        if text == "quit":
            self.transcript.append("command", text)
            self._append_story(f"\n\n> {text}\n")
            return SessionReply(lines=["Goodbye."], quit=True)

        handler = self._exact_commands.get(text)
        if handler is not None:
            return handler()
        for prefix, prefixed_handler in self._prefix_commands:
            if text.startswith(prefix):
                return prefixed_handler(text[len(prefix):].strip())
        if text == "bookmark" or text.startswith("bookmark "):
            return self._cmd_bookmark(text[len("bookmark"):].strip())
        return self._play_turn(text)

    def _play_turn(self, text: str) -> SessionReply:
        lines: list[str] = []
        command_line = text
        narration_override = text[len("narrate "):].strip() if text.startswith("narrate ") else None

        match = _NUMERIC_CHOICE_RE.match(text)
        if match and self.last_choices:
            idx = int(match.group(1)) - 1
            if 0 <= idx < len(self.last_choices):
                command_line = self.last_choices[idx]

        self.transcript.append("command", command_line)
        self._append_story(f"\n\n> {command_line}\n")

        if narration_override is None:
            name, _, args = command_line.partition(" ")
            if not self.world.has_command(name):
                lines.append(UNKNOWN_COMMAND_TEXT)
                self.transcript.append("output", UNKNOWN_COMMAND_TEXT)
            else:
                try:
                    world_output = self.world.execute(name, args)
                except Exception as exc:
                    error_text = f"Error executing command: {exc}"
                    logger.warning("world_command_failed", command=name, error_type=type(exc).__name__, error=str(exc))
                    self.transcript.append("error", error_text)
                    lines.append(error_text)
                else:
                    if world_output:
                        self.transcript.append("output", world_output)
                        self._append_story(world_output)
                        lines.append(world_output)

        self.step_counter += 1
        self._snapshot_state()

        every = self.config.auto_chapter_every
        if every > 0 and self.step_counter % every == 0:
            self.transcript.append("chapter_break", "--- (auto)")
            self._append_story("\n\n# Chapter Break (auto)\n\n")

        last_command = narration_override or command_line
        result = self._narrate(last_command, self._canon_query(narration_override or command_line))
        self.transcript.append("narration", result.narration, choices=result.choices)
        numbered = [f"{idx}) {choice}" for idx, choice in enumerate(result.choices, start=1)]
        story = f"\n{result.narration}"
        if numbered:
            story += f"\nChoices: {' | '.join(numbered)}"
        self._append_story(story + "\n")
        self.last_choices = list(result.choices)
        lines.extend(self._narration_lines(result))
        return SessionReply(lines=lines)

    # ------------------------------------------------------------------
    # Meta-commands
    # ------------------------------------------------------------------
    def _cmd_help(self) -> SessionReply:
        parts = [
            f"Provider: {getattr(self.provider, 'name', 'unknown')}",
            f"Commands: {HELP_COMMANDS}",
            "Numeric choices: type 1..N to pick from the last suggested choices.",
        ]
        if self.last_choices:
            parts.append("")
            parts.append("Last choices:")
            parts.extend(f"{idx}. {choice}" for idx, choice in enumerate(self.last_choices, start=1))
        return self._output("\n".join(parts))

    def _cmd_chapter(self) -> SessionReply:
        self.transcript.append("chapter_break", "---")
        self._append_story("\n\n# Chapter Break\n\n")
        return SessionReply(lines=["(chapter break)"])

    def _cmd_save(self) -> SessionReply:
        self.step_counter += 1
        self._snapshot_state()
        return self._output("(saved snapshot)")

    def _cmd_reload_canon(self) -> SessionReply:
        self.reload_indexes()
        return self._output(f"(canon reloaded: {len(self.canon_index)} docs)")

    def _load_seed(self) -> list[str]:
        seed, warnings = load_seed(self.seed_path, self.config)
        self.seed = seed
        return [f"[seed] warnings: {' | '.join(warnings)}"] if warnings else []

    def _cmd_reload_seed(self) -> SessionReply:
        lines = self._load_seed()
        lines.append("(seed reloaded)")
        return SessionReply(lines=lines)

    def _cmd_set_seed(self, path: str) -> SessionReply:
        if path:
            self.seed_path = Path(path)
        lines = self._load_seed()
        lines.append(f"(seed set to {self.seed_path or ''})")
        return SessionReply(lines=lines)

    def _cmd_canon(self, query: str) -> SessionReply:
        snippets = search_canon(
            self.canon_index,
            query,
            CANON_COMMAND_TOP_K,
            window=self.config.snippet_window,
        )
        hits = [
            f"({chunk.source}@{chunk.offset}) {chunk.text[:CANON_PREVIEW_CHARS]}..."
            for chunk in search_index(self.embedding_index, query, self.embeddings, CANON_COMMAND_TOP_K)
        ]
        return self._output("\n".join([f"Canon results for: {query}", *snippets, *hits]))

    def _cmd_research(self, query: str) -> SessionReply:
        urls: list[str] = []
        if self.config.research_web_results > 0:
            urls = [r.url for r in self.search_client.search(query, self.config.research_web_results)]
        written = research_and_ingest(
            self.config.canon_path,
            urls,
            summarizer=self._summary_backend(),
            max_pages=RESEARCH_MAX_PAGES,
        )
        self.reload_indexes()
        return self._output(f"(research done: {len(written)} files)")

    def _cmd_note(self, note: str) -> SessionReply:
        self.transcript.append("note", note)
        return SessionReply(lines=["(noted)"])

    def _cmd_bookmark(self, label: str) -> SessionReply:
        label = label or f"mark-{self.bookmark_counter + 1}"
        self.bookmark_counter += 1
        self.transcript.append("bookmark", label)
        self._append_story(f"\n\n[Bookmark] {label}\n")
        slug = _BOOKMARK_SLUG_RE.sub("-", label.lower())
        bookmark_file = self.session_dir / f"bookmark-{self.bookmark_counter:03d}-{slug}.txt"
        try:
            bookmark_file.write_text(label, encoding="utf-8")
        except OSError as exc:
            logger.warning("bookmark_write_failed", path=str(bookmark_file), error=str(exc))
        return SessionReply(lines=["(bookmark added)"])

    def _cmd_export_chapters(self) -> SessionReply:
        out_path = export_chapters(
            self.transcript_path,
            self.session_dir / "chapters.md",
            self.config.chapter_every_steps,
            raw_log_path=self.story_path,
        )
        backend = self._summary_backend()
        if self.config.summarize_chapters and backend is not None:
            summarize_chapters(out_path, backend)
        return self._output(f"(exported to {out_path})")


def open_session(
    config: LoreforgeConfig,
    session_dir: str | Path,
    *,
    world: WorldAdapter | None = None,
    embeddings: Any = None,
) -> tuple[NarrativeSession, list[str]]:
    """Wires a session from configuration; returns it with any seed warnings."""
    seed, warnings = load_seed(config.seed_path, config)
    session = NarrativeSession(
        config,
        world or OpenWorld(),
        build_provider(config),
        seed,
        session_dir,
        embeddings=embeddings,
        metrics=NarrationMetrics(session_dir),
    )
    return session, warnings
