"""
Narration providers.

A provider turns a NarrationRequest into narration plus suggested choices.
Two variants exist and are chosen by configuration at construction time:

- LocalNarrator: deterministic, offline template narration. Never fails.
- RemoteNarrator: sends the assembled prompts to a chat-model backend and
  parses the JSON reply, salvaging embedded JSON when the reply is noisy.
  Failed attempts are retried with linearly growing delays; once the retry
  budget is spent it returns an empty fallback result instead of raising.
"""
from __future__ import annotations

import json
import re
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from .config import LoreforgeConfig
from .models import LoreforgeError, NarrationRequest, NarrationResult
from .observability import get_logger
from .prompts import DEFAULT_WORLD_TITLE, DEFAULT_WORLD_TONE, build_system_prompt, build_user_prompt

logger = get_logger(__name__)

LMSTUDIO_BASE_URL = "http://localhost:1234/v1"
JSON_RESPONSE_FORMAT = {"type": "json_object"}
_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
LOCAL_ACTIONS = ("look", "inventory", "say hello", "think", "north", "south", "east", "west")
LOCAL_CHOICE_COUNT = 4


class NarrationParseError(LoreforgeError):
    """Backend text held no parseable JSON object."""


# ==============================================================================
# BACKEND COLLABORATOR
# ==============================================================================
class NarrationBackend(Protocol):
    def complete(self, messages: Sequence[BaseMessage], *, temperature: float) -> str:
        ...


def _message_text(message: Any) -> str:
    content = getattr(message, "content", message)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(str(block.get("text", "")))
        return "".join(parts)
    return str(content or "")


class ChatModelBackend:
    """Adapts a LangChain chat model to the NarrationBackend protocol."""

    def __init__(self, chat_model: Any):
        self.chat_model = chat_model

    def _model_for(self, temperature: float):
        model_fields = getattr(type(self.chat_model), "model_fields", {}) or {}
        if "temperature" not in model_fields:
            return self.chat_model
        if getattr(self.chat_model, "temperature", None) == temperature:
            return self.chat_model
        return self.chat_model.model_copy(update={"temperature": temperature})

    def complete(self, messages: Sequence[BaseMessage], *, temperature: float) -> str:
        response = self._model_for(temperature).invoke(list(messages))
        return _message_text(response)


def build_chat_model(config: LoreforgeConfig):
    """Creates the JSON-mode chat model for the configured remote provider."""
    provider = str(config.provider or "").lower()
    if provider in {"openai", "lmstudio"}:
        from langchain_openai import ChatOpenAI

        client_kwargs: dict[str, Any] = {}
        base_url = config.base_url or (LMSTUDIO_BASE_URL if provider == "lmstudio" else None)
        api_key = config.api_key or ("lm-studio" if provider == "lmstudio" else None)
        if base_url:
            client_kwargs["base_url"] = base_url
        if api_key:
            client_kwargs["api_key"] = api_key
        return ChatOpenAI(
            model=config.model_name,
            temperature=config.temperature,
            model_kwargs={"response_format": JSON_RESPONSE_FORMAT},
            **client_kwargs,
        )
    if provider == "ollama":
        from langchain_ollama import ChatOllama

        client_kwargs = {"base_url": config.base_url} if config.base_url else {}
        return ChatOllama(
            model=config.model_name,
            temperature=config.temperature,
            format="json",
            **client_kwargs,
        )
    if provider == "groq":
        from langchain_groq import ChatGroq

        client_kwargs = {"api_key": config.api_key} if config.api_key else {}
        return ChatGroq(
            model=config.model_name,
            temperature=config.temperature,
            model_kwargs={"response_format": JSON_RESPONSE_FORMAT},
            **client_kwargs,
        )
    raise ValueError(f"Unsupported remote narration provider: {config.provider!r}")


# ==============================================================================
# JSON REPAIR
# ==============================================================================
def _result_from_payload(payload: Any) -> NarrationResult:
    if not isinstance(payload, dict):
        raise NarrationParseError(f"expected a JSON object, got {type(payload).__name__}")
    narration = payload.get("narration")
    choices = payload.get("choices")
    return NarrationResult(
        narration=narration if isinstance(narration, str) else "",
        choices=[str(choice) for choice in choices] if isinstance(choices, list) else [],
    )


def parse_narration_payload(text: str) -> NarrationResult:
    """
    Strict JSON parse first. When that fails or yields something other than an
    object, re-parse the outermost {...} region of the reply.
    """
    raw = str(text or "")
    try:
        strict = json.loads(raw)
    except json.JSONDecodeError as exc:
        strict, strict_error = None, str(exc)
    else:
        if isinstance(strict, dict):
            return _result_from_payload(strict)
        strict_error = f"expected a JSON object, got {type(strict).__name__}"

    # A quoted reply keeps its inner quotes escaped; salvage from the decoded string.
    source = strict if isinstance(strict, str) else raw
    match = _JSON_OBJECT_RE.search(source)
    if match is None:
        raise NarrationParseError(f"no JSON object in backend reply: {strict_error}")
    try:
        salvaged = json.loads(match.group(0))
    except json.JSONDecodeError as salvage_error:
        raise NarrationParseError(f"salvaged region is not valid JSON: {salvage_error}") from salvage_error
    return _result_from_payload(salvaged)


# ==============================================================================
# RETRY STATE MACHINE
# ==============================================================================
class GenerationPhase(Enum):
    ATTEMPTING = "attempting"
    SUCCESS = "success"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retries with delay = backoff_base_s * failures so far."""

    max_retries: int = 2
    backoff_base_s: float = 0.3

    def after_failure(self, failures: int) -> GenerationPhase:
        return GenerationPhase.ATTEMPTING if failures <= self.max_retries else GenerationPhase.FALLBACK

    def delay_for(self, failures: int) -> float:
        return max(0.0, float(self.backoff_base_s)) * max(0, int(failures))

    @property
    def max_attempts(self) -> int:
        return max(0, int(self.max_retries)) + 1


# ==============================================================================
# PROVIDERS
# ==============================================================================
class NarrationProvider(Protocol):
    name: str

    def generate(self, request: NarrationRequest) -> NarrationResult:
        ...


class LocalNarrator:
    """Offline narrator built from seed and player fields."""

    name = "local"

    def generate(self, request: NarrationRequest) -> NarrationResult:
        world = request.seed.world if request.seed is not None else None
        title = (world.title if world else None) or DEFAULT_WORLD_TITLE
        tone = (world.tone if world else None) or DEFAULT_WORLD_TONE
        room = request.room_id or "somewhere unfamiliar"
        cast = ", ".join(c.name for c in request.seed.characters[:3]) if request.seed is not None else ""
        preface = f'After the command "{request.last_command}", ' if request.last_command else ""

        sentences = [
            f"{preface}{request.player_name} stands in {room}.",
            f"In the {tone} world of {title}, the air is thick with possibility.",
            f"Nearby figures linger: {cast}." if cast else "",
        ]
        narration = " ".join(s for s in sentences if s)
        return NarrationResult(narration=narration, choices=self.choices_for(request.last_command))

    @staticmethod
    def choices_for(last_command: str | None) -> list[str]:
        if not last_command:
            return list(LOCAL_ACTIONS[:LOCAL_CHOICE_COUNT])
        return [action for action in LOCAL_ACTIONS if action != last_command][:LOCAL_CHOICE_COUNT]


class RemoteNarrator:
    """Backend-driven narrator with retry, backoff and JSON salvage."""

    def __init__(
        self,
        backend: NarrationBackend,
        *,
        temperature: float = 0.7,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        name: str = "remote",
    ):
        self.backend = backend
        self.temperature = float(temperature)
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self.name = name

    @staticmethod
    def build_messages(request: NarrationRequest) -> list[BaseMessage]:
        system = build_system_prompt(request.seed, request.canon_snippets)
        user = build_user_prompt(
            request.player_name,
            room_id=request.room_id,
            last_command=request.last_command,
            transcript_tail=request.transcript_tail,
        )
        return [SystemMessage(content=system), HumanMessage(content=user)]

    def generate(self, request: NarrationRequest) -> NarrationResult:
        messages = self.build_messages(request)
        failures = 0
        result: NarrationResult | None = None
        phase = GenerationPhase.ATTEMPTING
        while phase is GenerationPhase.ATTEMPTING:
            try:
                raw = self.backend.complete(messages, temperature=self.temperature)
                result = parse_narration_payload(raw)
            except Exception as exc:
                # Transport and parse failures are both recoverable here.
                failures += 1
                phase = self.policy.after_failure(failures)
                logger.warning(
                    "narration_attempt_failed",
                    provider=self.name,
                    attempt=failures,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                if phase is GenerationPhase.ATTEMPTING:
                    self._sleep(self.policy.delay_for(failures))
                continue
            phase = GenerationPhase.SUCCESS

        if phase is GenerationPhase.SUCCESS and result is not None:
            result.attempts = failures + 1
            return result

        logger.warning("narration_fallback", provider=self.name, attempts=failures)
        return NarrationResult.empty(attempts=failures)


def build_provider(config: LoreforgeConfig, *, backend: NarrationBackend | None = None) -> NarrationProvider:
    """Selects the provider variant named by config.provider."""
    provider = str(config.provider or "local").lower()
    if provider == "local":
        return LocalNarrator()
    if backend is None:
        backend = ChatModelBackend(build_chat_model(config))
    return RemoteNarrator(
        backend,
        temperature=config.temperature,
        policy=RetryPolicy(max_retries=config.max_retries, backoff_base_s=config.backoff_base_s),
        name=provider,
    )
