from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import Lock
from typing import Any, Literal, Protocol, Sequence

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

from .errors import ProviderError

logger = logging.getLogger(__name__)

TurnRole = Literal["sender", "assistant"]

DEFAULT_STUB_REPLY = "Thanks for reaching out! How can we help you today?"


@dataclass(frozen=True)
class ConversationTurn:
    role: TurnRole
    content: str


@dataclass(frozen=True)
class GenerationCall:
    system_instruction: str
    turns: tuple[ConversationTurn, ...]
    max_output_tokens: int
    model: str | None


class TextGenerationProvider(Protocol):
    @property
    def default_model(self) -> str: ...

    def generate(
        self,
        system_instruction: str,
        turns: Sequence[ConversationTurn],
        *,
        max_output_tokens: int,
        model: str | None = None,
    ) -> str: ...


class StubTextProvider:
    """Deterministic provider for local runs and tests.

    Replies are consumed in order and the last one repeats. An exception in
    ``replies`` is raised instead of returned.
    """

    def __init__(self, replies: Sequence[str | Exception] = (), *, default_model: str = "stub-model") -> None:
        self._replies = list(replies)
        self._default_model = default_model
        self._lock = Lock()
        self.calls: list[GenerationCall] = []

    @property
    def default_model(self) -> str:
        return self._default_model

    def generate(
        self,
        system_instruction: str,
        turns: Sequence[ConversationTurn],
        *,
        max_output_tokens: int,
        model: str | None = None,
    ) -> str:
        with self._lock:
            self.calls.append(
                GenerationCall(
                    system_instruction=system_instruction,
                    turns=tuple(turns),
                    max_output_tokens=max_output_tokens,
                    model=model,
                )
            )
            if not self._replies:
                reply: str | Exception = DEFAULT_STUB_REPLY
            elif len(self._replies) == 1:
                reply = self._replies[0]
            else:
                reply = self._replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class GeminiProvider:
    """Gemini text generation through the Google Gen AI SDK."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://generativelanguage.googleapis.com",
        default_model: str = "gemini-2.5-flash",
        allowed_models: Sequence[str] = ("gemini-2.5-flash", "gemini-3.0-pro"),
        timeout_seconds: float = 20.0,
        temperature: float = 0.7,
        client: genai.Client | None = None,
    ) -> None:
        stripped_key = api_key.strip()
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._allowed_models = frozenset(allowed_models) | {default_model}
        self._default_model = default_model
        self._temperature = temperature
        self._client = client or genai.Client(
            api_key=stripped_key,
            http_options=genai_types.HttpOptions(
                base_url=base_url.strip() or None,
                timeout=int(timeout_seconds * 1000),
            ),
        )

    @property
    def default_model(self) -> str:
        return self._default_model

    def generate(
        self,
        system_instruction: str,
        turns: Sequence[ConversationTurn],
        *,
        max_output_tokens: int,
        model: str | None = None,
    ) -> str:
        selected = model or self._default_model
        if selected not in self._allowed_models:
            raise ProviderError("unsupported_model", f"model {selected!r} is not enabled")
        if not turns:
            raise ProviderError("empty_prompt", "at least one conversation turn is required")

        config = genai_types.GenerateContentConfig(
            system_instruction=system_instruction if system_instruction.strip() else None,
            temperature=self._temperature,
            max_output_tokens=max_output_tokens,
        )
        try:
            response = self._client.models.generate_content(
                model=selected,
                contents=_to_contents(turns),
                config=config,
            )
        except genai_errors.APIError as exc:
            raise ProviderError(f"http_{exc.code}", f"HTTP {exc.code}: {exc.status or exc.message}") from exc
        except httpx.TimeoutException as exc:
            raise ProviderError("timeout", f"Request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise ProviderError("connection_error", f"Connection error: {exc}") from exc
        except (ValueError, TypeError) as exc:
            raise ProviderError("invalid_response", "provider returned an unreadable body") from exc
        return _extract_text(response)


def _to_contents(turns: Sequence[ConversationTurn]) -> list[genai_types.Content]:
    contents: list[genai_types.Content] = []
    for turn in turns:
        role = "model" if turn.role == "assistant" else "user"
        part = genai_types.Part(text=turn.content)
        if contents and contents[-1].role == role:
            contents[-1].parts.append(part)
            continue
        contents.append(genai_types.Content(role=role, parts=[part]))
    return contents


def _extract_text(response: Any) -> str:
    if not isinstance(response, genai_types.GenerateContentResponse):
        raise ProviderError("invalid_response", "provider returned an unexpected response type")
    block_reason = getattr(response.prompt_feedback, "block_reason", None)
    if block_reason:
        raise ProviderError("blocked", f"prompt blocked: {block_reason}")

    candidates = response.candidates or []
    if not isinstance(candidates, list):
        raise ProviderError("invalid_response", "candidates is not a list")
    if not candidates:
        raise ProviderError("empty_response", "provider returned no candidates")
    candidate = candidates[0]
    if not isinstance(candidate, genai_types.Candidate):
        raise ProviderError("invalid_response", "candidate is not an object")
    if candidate.content is None:
        raise ProviderError("empty_response", "provider returned empty text")
    if not isinstance(candidate.content, genai_types.Content):
        raise ProviderError("invalid_response", "candidate content is not an object")
    parts = candidate.content.parts or []
    if not isinstance(parts, list):
        raise ProviderError("invalid_response", "content parts is not a list")

    text = "".join(
        part.text for part in parts if isinstance(part, genai_types.Part) and isinstance(part.text, str)
    )
    if not text.strip():
        raise ProviderError("empty_response", "provider returned empty text")
    return text


def create_text_provider(settings) -> TextGenerationProvider:
    provider = settings.generation_provider.strip().lower()
    if provider == "gemini":
        logger.info("text generation uses gemini default_model=%s", settings.generation_default_model)
        return GeminiProvider(
            api_key=settings.gemini_api_key,
            base_url=settings.gemini_api_base_url,
            default_model=settings.generation_default_model,
            allowed_models=settings.generation_allowed_models,
            timeout_seconds=settings.generation_timeout_seconds,
            temperature=settings.generation_temperature,
        )
    return StubTextProvider(default_model=settings.generation_default_model)
