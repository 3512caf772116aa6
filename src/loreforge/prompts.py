"""Prompt assembly for narration backends. Pure functions, no side effects."""
from __future__ import annotations

from collections.abc import Sequence

from .models import SeedCharacter, SeedData

DEFAULT_WORLD_TITLE = "Untitled World"
DEFAULT_WORLD_TONE = "adventurous"

OUTPUT_RULES = (
    "Rules:",
    "- Keep narration concise (1-3 paragraphs) and forward-moving.",
    "- Maintain internal consistency with provided world and characters.",
    "- Offer 3-5 grounded next-action choices the player could take.",
    "- Output MUST be strict JSON with keys: narration (string), choices (string[]).",
)
JSON_ONLY_INSTRUCTION = 'Respond ONLY with JSON: {"narration": string, "choices": string[]}'


def _format_character(character: SeedCharacter) -> str:
    line = f"- {character.name}"
    if character.traits:
        line += f" ({', '.join(character.traits)})"
    if character.summary:
        line += f" - {character.summary}"
    return line


def build_system_prompt(seed: SeedData | None, canon_snippets: Sequence[str] | None = None) -> str:
    world = seed.world if seed is not None else None
    title = (world.title if world else None) or DEFAULT_WORLD_TITLE
    tone = (world.tone if world else None) or DEFAULT_WORLD_TONE
    synopsis = (world.synopsis if world else None) or ""
    cast = "\n".join(_format_character(c) for c in (seed.characters if seed is not None else ()))
    snippets = [s for s in (canon_snippets or ()) if s]

    parts = [
        "You are an expert Game Master and ghostwriter for a single-player, text-only RPG.",
        f"World: {title}",
        f"Tone: {tone}",
        f"Synopsis: {synopsis}" if synopsis else "",
        f"Characters:\n{cast}" if cast else "",
        "Canon context (snippets):\n- " + "\n- ".join(snippets) if snippets else "",
        *OUTPUT_RULES,
    ]
    return "\n".join(part for part in parts if part)


def build_user_prompt(
    player_name: str,
    room_id: str | None = None,
    last_command: str | None = None,
    transcript_tail: str | None = None,
) -> str:
    parts = [
        f"Player command: {last_command}" if last_command else "Start of session",
        f"Current location: {room_id}" if room_id else "",
        f"Player: {player_name or 'Player'}",
        f"Recent transcript:\n{transcript_tail}" if transcript_tail else "",
        JSON_ONLY_INSTRUCTION,
    ]
    return "\n".join(part for part in parts if part)
