"""
Seed loading and advisory validation.

A seed describes the world, its cast and canon references. It can come from a
seed.json file or from a composite directory of text and YAML files. Validation
never blocks: problems are reported as human-readable warnings and the seed is
coerced best-effort into an immutable SeedData.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import LoreforgeConfig
from .models import SeedCharacter, SeedData, SeedWorld
from .observability import get_logger

logger = get_logger(__name__)

DEFAULT_SEED_FILENAME = "seed.json"
CHARACTERS_FILE = "Characters.yaml"
ITEMS_FILE = "Items.yaml"
QUESTS_FILE = "Quests.yaml"
_RESERVED_YAML = {CHARACTERS_FILE, ITEMS_FILE, QUESTS_FILE}

FALLBACK_SEED = SeedData(
    world=SeedWorld(
        title="Seedless Realm",
        tone="exploratory",
        synopsis="A placeholder world used when no seed is provided.",
    ),
    characters=(SeedCharacter(name="Narrator", summary="An impartial observer."),),
)


# ==============================================================================
# VALIDATION
# ==============================================================================
class _WorldSchema(BaseModel):
    model_config = ConfigDict(strict=True, extra="allow")

    title: str | None = None
    tone: str | None = None
    synopsis: str | None = None


class _CharacterSchema(BaseModel):
    model_config = ConfigDict(strict=True, extra="allow")

    name: str = Field(min_length=1)
    traits: list[str] | None = None
    summary: str | None = None


class _CanonSchema(BaseModel):
    model_config = ConfigDict(strict=True, extra="allow")

    references: list[str] | None = None


class _SeedSchema(BaseModel):
    model_config = ConfigDict(strict=True, extra="allow")

    world: _WorldSchema | None = None
    characters: list[_CharacterSchema] | None = None
    canon: _CanonSchema | None = None


def _format_loc(loc: tuple) -> str:
    path = ""
    for part in loc:
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path += f".{part}" if path else str(part)
    return path or "seed"


def validate_seed(raw: Any) -> list[str]:
    """Returns one warning per structural problem; never raises."""
    if raw is None or raw == {}:
        return ["Seed is empty. Using defaults."] if raw is None else []
    try:
        _SeedSchema.model_validate(raw)
    except ValidationError as exc:
        return [f"{_format_loc(err['loc'])}: {err['msg']}" for err in exc.errors()]
    return []


# ==============================================================================
# COERCION
# ==============================================================================
def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = value.strip() if isinstance(value, str) else str(value)
    return text or None


def _coerce_character(entry: Any) -> SeedCharacter | None:
    if not isinstance(entry, dict):
        return None
    name = _text(entry.get("name"))
    if not name:
        return None
    traits = entry.get("traits")
    return SeedCharacter(
        name=name,
        traits=tuple(t for t in (_text(x) for x in traits) if t) if isinstance(traits, list) else (),
        summary=_text(entry.get("summary")),
    )


def coerce_seed(raw: Any) -> SeedData:
    """Builds a SeedData from a loosely structured mapping, dropping what cannot be used."""
    if not isinstance(raw, dict):
        return SeedData()

    world = None
    raw_world = raw.get("world")
    if isinstance(raw_world, dict):
        world = SeedWorld(
            title=_text(raw_world.get("title")),
            tone=_text(raw_world.get("tone")),
            synopsis=_text(raw_world.get("synopsis")),
        )

    characters = []
    raw_characters = raw.get("characters")
    if isinstance(raw_characters, list):
        characters = [c for c in (_coerce_character(e) for e in raw_characters) if c is not None]

    references: list[str] = []
    raw_canon = raw.get("canon")
    if isinstance(raw_canon, dict) and isinstance(raw_canon.get("references"), list):
        references = [r for r in (_text(x) for x in raw_canon["references"]) if r]

    return SeedData(
        world=world,
        characters=tuple(characters),
        canon_references=tuple(dict.fromkeys(references)),
    )


def parse_seed(raw: Any) -> tuple[SeedData, list[str]]:
    """Validates and coerces a raw seed mapping. The seed is usable even when warnings exist."""
    warnings = validate_seed(raw)
    return coerce_seed(raw), warnings


# ==============================================================================
# COMPOSITE SEED DIRECTORIES
# ==============================================================================
def _read_text_safe(path: Path) -> str:
    try:
        if path.is_file():
            return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("seed_file_unreadable", path=str(path), error=str(exc))
    return ""


def _load_yaml(path: Path) -> Any:
    if not path.is_file():
        return None
    try:
        return yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as exc:
        logger.warning("seed_yaml_invalid", path=str(path), error=str(exc))
        return None


def _first_text(mapping: dict, *keys: str) -> str | None:
    for key in keys:
        value = _text(mapping.get(key))
        if value:
            return value
    return None


def _character_from_yaml(name: str | None, entry: dict) -> SeedCharacter | None:
    if not name:
        return None
    traits = entry.get("traits")
    return SeedCharacter(
        name=name,
        traits=tuple(t for t in (_text(x) for x in traits) if t) if isinstance(traits, list) else (),
        summary=_first_text(entry, "summary", "description", "bio"),
    )


def parse_characters_yaml(path: Path) -> list[SeedCharacter]:
    data = _load_yaml(path)
    characters: list[SeedCharacter] = []
    if isinstance(data, list):
        for entry in data:
            if isinstance(entry, dict):
                character = _character_from_yaml(_first_text(entry, "name", "id", "title"), entry)
                if character:
                    characters.append(character)
    elif isinstance(data, dict):
        for key, value in data.items():
            entry = value if isinstance(value, dict) else {}
            character = _character_from_yaml(_first_text(entry, "name") or _text(key), entry)
            if character:
                characters.append(character)
    return characters


def parse_name_list_yaml(path: Path) -> list[str]:
    data = _load_yaml(path)
    names: list[str] = []
    if isinstance(data, list):
        for entry in data:
            name = _first_text(entry, "name", "title", "id") if isinstance(entry, dict) else _text(entry)
            if name:
                names.append(name)
    elif isinstance(data, dict):
        for key, value in data.items():
            name = _first_text(value, "name", "title") if isinstance(value, dict) else None
            name = name or _text(key)
            if name:
                names.append(name)
    return names


def build_composite_seed(directory: str | Path, config: LoreforgeConfig | None = None) -> SeedData:
    """Assembles a seed from info.txt, timeline.txt, Characters/Items/Quests YAML and location YAML files."""
    config = config or LoreforgeConfig()
    base = Path(directory)

    info = _read_text_safe(base / "info.txt").strip()
    timeline = _read_text_safe(base / "timeline.txt").strip()
    synopsis = "\n\n".join(part for part in (info, f"Timeline:\n{timeline}" if timeline else "") if part)

    characters = parse_characters_yaml(base / CHARACTERS_FILE)
    items = parse_name_list_yaml(base / ITEMS_FILE)
    quests = parse_name_list_yaml(base / QUESTS_FILE)
    locations = [
        path.stem
        for path in sorted(base.iterdir())
        if path.is_file() and path.suffix.lower() == ".yaml" and path.name not in _RESERVED_YAML
    ] if base.is_dir() else []

    return SeedData(
        world=SeedWorld(
            title=config.seed_world_title,
            tone=config.seed_world_tone,
            synopsis=synopsis or None,
        ),
        characters=tuple(characters),
        canon_references=tuple(dict.fromkeys([*items, *quests, *locations])),
    )


# ==============================================================================
# ENTRY POINTS
# ==============================================================================
def load_seed(
    seed_path: str | Path | None = None,
    config: LoreforgeConfig | None = None,
    *,
    search_dir: str | Path | None = None,
) -> tuple[SeedData, list[str]]:
    """
    Resolves and loads a seed, returning it with advisory warnings.
    Without a path, <search_dir or cwd>/seeds/seed.json is used when present,
    otherwise a built-in placeholder seed.
    """
    if seed_path is None:
        default_file = Path(search_dir or Path.cwd()) / "seeds" / DEFAULT_SEED_FILENAME
        if not default_file.is_file():
            return FALLBACK_SEED, []
        resolved = default_file
    else:
        resolved = Path(seed_path).expanduser().resolve()

    if not resolved.exists():
        logger.warning("seed_path_missing", path=str(resolved))
        return FALLBACK_SEED, [f"Seed path not found: {resolved}. Using defaults."]

    if resolved.is_dir():
        return build_composite_seed(resolved, config), []
    if resolved.suffix.lower() != ".json":
        return build_composite_seed(resolved.parent, config), []

    try:
        raw = json.loads(resolved.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("seed_json_invalid", path=str(resolved), error=str(exc))
        return SeedData(), [f"Seed file could not be parsed: {exc}"]

    seed, warnings = parse_seed(raw)
    for warning in warnings:
        logger.warning("seed_warning", path=str(resolved), warning=warning)
    return seed, warnings


def write_seed(seed: SeedData, path: str | Path) -> Path:
    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(json.dumps(seed.to_dict(), indent=2, ensure_ascii=False), encoding="utf-8")
    return out_path
