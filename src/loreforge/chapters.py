"""
Chapter segmentation and export.

Replays the ordered transcript and folds it into numbered chapters. A chapter
ends at an explicit chapter break or when the command count reaches a multiple
of steps_per_chapter. Empty buffers never produce (or number) a chapter.
"""
from __future__ import annotations

import re
from collections.abc import Iterable
from pathlib import Path

from langchain_core.messages import HumanMessage, SystemMessage

from .models import Chapter, TranscriptEvent
from .observability import get_logger
from .transcript import read_transcript

logger = get_logger(__name__)

EMPTY_CHAPTER_TEXT = "(Empty)"
SUMMARY_UNAVAILABLE = "(Summary unavailable)"
SUMMARY_BODY_LIMIT = 6000
SUMMARY_SYSTEM_PROMPT = (
    "Summarize the following chapter into 2-4 sentences. "
    "Return plain markdown text without headings."
)
_CHAPTER_HEADING_RE = re.compile(r"\n#{1,6}\s*Chapter\s+\d+\s*\n", flags=re.IGNORECASE)


class _ChapterBuilder:
    def __init__(self):
        self.chapters: list[Chapter] = []
        self.buffer: list[str] = []

    def add(self, line: str):
        self.buffer.append(line)

    def flush(self):
        content = "\n".join(self.buffer).strip()
        if content:
            self.chapters.append(Chapter(index=len(self.chapters) + 1, content=content))
        self.buffer = []


def segment_chapters(events: Iterable[TranscriptEvent], steps_per_chapter: int = 50) -> list[Chapter]:
    """Segments transcript events into chapters; never mutates its input."""
    builder = _ChapterBuilder()
    steps = 0

    for event in events:
        if event.type == "chapter_break":
            builder.flush()
            steps = 0
            continue

        if event.type == "command":
            steps += 1
            builder.add(f"\n> {event.text or ''}")
            if steps_per_chapter > 0 and steps % steps_per_chapter == 0:
                builder.flush()
        elif event.type == "narration":
            if event.text:
                builder.add(f"\n{event.text}")
            if event.choices:
                builder.add(f"\nChoices: {' | '.join(event.choices)}")
        elif event.type == "output" and event.text:
            builder.add(f"\n{event.text}")
        elif event.type == "note" and event.text:
            builder.add(f"\n[Author Note] {event.text}")

    builder.flush()
    if not builder.chapters:
        return [Chapter(index=1, content=EMPTY_CHAPTER_TEXT, empty=True)]
    return builder.chapters


def render_chapters(chapters: Iterable[Chapter]) -> str:
    return "\n\n".join(f"# Chapter {chapter.index}\n\n{chapter.content}" for chapter in chapters)


def export_chapters(
    transcript_path: str | Path,
    out_path: str | Path,
    steps_per_chapter: int = 50,
    raw_log_path: str | Path | None = None,
) -> Path:
    """Writes the chapter document; appends the raw story log when both sources exist."""
    transcript_file = Path(transcript_path)
    out_file = Path(out_path)
    events = read_transcript(transcript_file)
    chapters = segment_chapters(events, steps_per_chapter)

    document = render_chapters(chapters)
    raw_log = Path(raw_log_path) if raw_log_path is not None else None
    if transcript_file.exists() and raw_log is not None and raw_log.exists():
        document += f"\n\n---\n\n# Raw Story Log\n\n{raw_log.read_text(encoding='utf-8')}"

    out_file.parent.mkdir(parents=True, exist_ok=True)
    out_file.write_text(document, encoding="utf-8")
    logger.info(
        "chapters_exported",
        path=str(out_file),
        chapters=0 if chapters[0].empty else len(chapters),
        events=len(events),
    )
    return out_file


def summarize_chapters(out_path: str | Path, backend, *, temperature: float = 0.5) -> bool:
    """
    Prepends short per-chapter summaries produced by the narration backend.
    Returns False when the document holds no chapters to summarize.
    """
    out_file = Path(out_path)
    content = out_file.read_text(encoding="utf-8")
    # Leading newline so the first heading splits like the rest.
    sections = _CHAPTER_HEADING_RE.split("\n" + content)
    if len(sections) <= 1:
        return False

    summaries: list[str] = []
    for body in sections[1:]:
        messages = [
            SystemMessage(content=SUMMARY_SYSTEM_PROMPT),
            HumanMessage(content=body.strip()[:SUMMARY_BODY_LIMIT]),
        ]
        try:
            summaries.append(backend.complete(messages, temperature=temperature).strip())
        except Exception as exc:
            logger.warning("chapter_summary_failed", error_type=type(exc).__name__, error=str(exc))
            summaries.append(SUMMARY_UNAVAILABLE)

    blocks = "\n\n".join(f"### Chapter {idx}\n\n{summary}" for idx, summary in enumerate(summaries, start=1))
    out_file.write_text(f"## Chapter Summaries\n\n{blocks}\n\n---\n\n{content}", encoding="utf-8")
    return True
