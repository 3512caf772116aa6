"""
Session transcript: newline-delimited JSON records, append-only, single writer.
The transcript is the durable history of a session; chapters are derived from it.
"""
from __future__ import annotations

import json
from collections.abc import Sequence
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ValidationError

from .models import EventKind, TranscriptEvent
from .observability import get_logger

logger = get_logger(__name__)

PARSE_ERROR_TEXT = "parse-error"


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


class TranscriptRecord(BaseModel):
    """Wire form of one transcript line."""

    t: str
    type: EventKind
    text: str | None = None
    choices: list[str] | None = None

    def to_event(self) -> TranscriptEvent:
        return TranscriptEvent(
            type=self.type,
            timestamp=self.t,
            text=self.text,
            choices=tuple(self.choices) if self.choices is not None else None,
        )

    @classmethod
    def from_event(cls, event: TranscriptEvent) -> "TranscriptRecord":
        return cls(
            t=event.timestamp,
            type=event.type,
            text=event.text,
            choices=list(event.choices) if event.choices is not None else None,
        )


def parse_transcript_line(line: str) -> TranscriptEvent:
    """Parses one line; a bad line becomes an isolated error event."""
    try:
        return TranscriptRecord.model_validate_json(line).to_event()
    except ValidationError as exc:
        logger.warning("transcript_line_invalid", error_count=exc.error_count(), line=line[:200])
        return TranscriptEvent(type="error", timestamp=_utcnow_iso(), text=PARSE_ERROR_TEXT)


def _parse_raw_line(raw: bytes) -> TranscriptEvent:
    try:
        line = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        logger.warning("transcript_line_undecodable", error=str(exc))
        return TranscriptEvent(type="error", timestamp=_utcnow_iso(), text=PARSE_ERROR_TEXT)
    return parse_transcript_line(line)


def _raw_lines(path: Path) -> list[bytes]:
    if not path.exists():
        return []
    return [raw for raw in path.read_bytes().split(b"\n") if raw.strip()]


def read_transcript(path: str | Path) -> list[TranscriptEvent]:
    return [_parse_raw_line(raw) for raw in _raw_lines(Path(path))]


class TranscriptWriter:
    """Appends transcript records; never rewrites earlier lines."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def append(
        self,
        kind: EventKind,
        text: str | None = None,
        *,
        choices: Sequence[str] | None = None,
        timestamp: str | None = None,
    ) -> TranscriptEvent:
        event = TranscriptEvent(
            type=kind,
            timestamp=timestamp or _utcnow_iso(),
            text=text,
            choices=tuple(choices) if choices is not None else None,
        )
        record = TranscriptRecord.from_event(event).model_dump(exclude_none=True)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as fh:
            fh.write(json.dumps(record, ensure_ascii=False) + "\n")
        return event

    def read(self) -> list[TranscriptEvent]:
        return read_transcript(self.path)


def render_tail_event(event: TranscriptEvent) -> str:
    if event.type == "command":
        return f"> {event.text or ''}"
    if event.type in ("narration", "output"):
        return event.text or ""
    return ""


def transcript_tail(path: str | Path, max_lines: int = 20, max_chars: int = 2000) -> str:
    """Renders the last max_lines records and keeps at most the last max_chars characters."""
    transcript_path = Path(path)
    try:
        raw_lines = _raw_lines(transcript_path)
    except OSError as exc:
        logger.warning("transcript_tail_unreadable", path=str(transcript_path), error=str(exc))
        return ""
    if not raw_lines:
        return ""

    # Undecodable or invalid lines become error events, which render as nothing.
    events = [_parse_raw_line(raw) for raw in raw_lines[-max(1, int(max_lines)):]]
    text = "\n".join(rendered for rendered in (render_tail_event(e) for e in events) if rendered)
    limit = max(0, int(max_chars))
    return text[len(text) - limit:] if len(text) > limit else text
