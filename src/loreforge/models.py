"""Data models shared across the narration pipeline."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

EventKind = Literal["command", "output", "error", "narration", "chapter_break", "note", "bookmark"]
EVENT_KINDS: tuple[str, ...] = ("command", "output", "error", "narration", "chapter_break", "note", "bookmark")


@dataclass(frozen=True)
class CanonDocument:
    """A single canon file loaded into the lexical index."""

    id: str
    source_path: str
    text: str


@dataclass(frozen=True)
class CanonIndex:
    """Lexical index. Document order is the tie-break order for equal scores."""

    docs: tuple[CanonDocument, ...] = ()

    def __len__(self) -> int:
        return len(self.docs)


@dataclass(frozen=True)
class SeedWorld:
    title: str | None = None
    tone: str | None = None
    synopsis: str | None = None


@dataclass(frozen=True)
class SeedCharacter:
    name: str
    traits: tuple[str, ...] = ()
    summary: str | None = None


@dataclass(frozen=True)
class SeedData:
    """World seed for a session. Replaced wholesale on reload."""

    world: SeedWorld | None = None
    characters: tuple[SeedCharacter, ...] = ()
    canon_references: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        payload: dict = {}
        if self.world is not None:
            payload["world"] = {
                key: value
                for key, value in (
                    ("title", self.world.title),
                    ("tone", self.world.tone),
                    ("synopsis", self.world.synopsis),
                )
                if value is not None
            }
        payload["characters"] = [
            {"name": c.name, "traits": list(c.traits), **({"summary": c.summary} if c.summary else {})}
            for c in self.characters
        ]
        payload["canon"] = {"references": list(self.canon_references)}
        return payload


@dataclass(frozen=True)
class TranscriptEvent:
    """One entry of the append-only session transcript."""

    type: EventKind
    timestamp: str
    text: str | None = None
    choices: tuple[str, ...] | None = None


@dataclass(frozen=True)
class Chapter:
    index: int
    content: str
    empty: bool = False


@dataclass(frozen=True)
class NarrationRequest:
    """Everything a narration provider needs for one turn."""

    player_name: str
    seed: SeedData
    room_id: str | None = None
    last_command: str | None = None
    transcript_tail: str | None = None
    canon_snippets: tuple[str, ...] = ()
    state_snapshot: dict = field(default_factory=dict, compare=False)


@dataclass
class NarrationResult:
    narration: str
    choices: list[str] = field(default_factory=list)
    attempts: int = field(default=1, compare=False)
    fallback: bool = field(default=False, compare=False)

    @classmethod
    def empty(cls, *, attempts: int = 0) -> "NarrationResult":
        return cls(narration="", choices=[], attempts=attempts, fallback=True)


class LoreforgeError(Exception):
    """Base class for recoverable pipeline errors."""
