from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Sequence

from .automation_settings import AutomationConfig
from .classifier import KEYWORD_CATEGORY, ClassificationResult, MessageClassifier
from .conversations import DirectMessageRecord
from .errors import ParseError, ProviderError, ValidationError
from .generation import ConversationTurn, TextGenerationProvider
from .models import ReplySource
from .operating_hours import is_open
from .output_parsing import decode_json_object, read_string_list
from .persistence import now_utc
from .reply_rules import (
    apology_reply,
    clean_generated_text,
    find_blacklisted_phrase,
    generic_fallback,
    match_keyword_rule,
    strip_blacklisted_sentences,
    truncate_reply,
)

logger = logging.getLogger(__name__)

BLOCKED_CATEGORY = "blocked"
OUT_OF_OFFICE_CATEGORY = "out_of_office"
UNSAFE_CATEGORY = "unsafe_output"
MAX_SUGGESTIONS = 5

LANGUAGE_INSTRUCTIONS = {
    "de": "Antworte auf Deutsch.",
    "en": "Respond in English.",
    "tr": "Türkçe cevap ver.",
}

TONE_INSTRUCTIONS = {
    "friendly": "Be friendly, warm and welcoming. An occasional emoji is fine.",
    "professional": "Stay professional and respectful. Use formal but approachable language.",
    "casual": "Be relaxed, as if chatting with a friend. Emojis are welcome.",
}

SUGGESTION_STYLES = (
    "short and friendly",
    "more detailed and helpful",
    "asks clarifying questions",
)


@dataclass(frozen=True)
class ComposedReply:
    text: str | None
    confidence: float
    category: str
    used_fallback: bool
    source: ReplySource
    model: str | None = None


def turns_from_messages(messages: Iterable[DirectMessageRecord]) -> list[ConversationTurn]:
    return [
        ConversationTurn(role="sender" if item.direction == "INBOUND" else "assistant", content=item.content)
        for item in messages
    ]


def build_system_instruction(
    config: AutomationConfig,
    *,
    classification: ClassificationResult | None = None,
    outside_hours: bool = False,
    participant_name: str | None = None,
) -> str:
    lines = ["You are a helpful assistant answering direct messages on a social platform."]
    if config.brand_name:
        lines.append(f'You reply on behalf of "{config.brand_name}".')
    if config.system_prompt:
        lines.append(config.system_prompt)
    lines.append(TONE_INSTRUCTIONS.get(config.tone, TONE_INSTRUCTIONS["friendly"]))
    lines.append(LANGUAGE_INSTRUCTIONS.get(config.language, LANGUAGE_INSTRUCTIONS["en"]))
    lines.append(f"Keep the reply under {config.max_response_length} characters.")
    lines.append("Answer directly. If you do not have the information, say so honestly.")
    lines.append("Do not add signatures or formal sign-offs.")
    if config.blacklisted_phrases:
        lines.append("Never use these phrases: " + "; ".join(config.blacklisted_phrases) + ".")
    if config.category_responses:
        templates = "\n".join(f"- {category}: {text}" for category, text in config.category_responses.items())
        lines.append(
            "Reply templates for specific topics:\n"
            f"{templates}\n"
            "If the message matches one of these topics, follow its template."
        )
    if classification is not None and classification.source == "model":
        lines.append(f"The message was classified as {classification.category} ({classification.sentiment}).")
    if participant_name:
        lines.append(f"The sender is called {participant_name}.")
    if outside_hours:
        lines.append(
            "The team is currently outside its operating hours. "
            "Let the sender know that a detailed answer may take a little while."
        )
    lines.append("Reply with the message text only, without explanations or formatting.")
    return "\n".join(lines)


def _heuristic_confidence(text: str, *, truncated: bool, dropped_sentences: bool) -> float:
    confidence = 0.7 if len(text) >= 40 else 0.5
    if truncated:
        confidence -= 0.15
    if dropped_sentences:
        confidence -= 0.15
    return round(max(0.1, confidence), 2)


class ResponseComposer:
    def __init__(self, *, provider: TextGenerationProvider, classifier: MessageClassifier) -> None:
        self._provider = provider
        self._classifier = classifier

    def compose(
        self,
        message_text: str,
        history: Sequence[ConversationTurn],
        config: AutomationConfig,
        *,
        classification: ClassificationResult | None = None,
        now: datetime | None = None,
        model: str | None = None,
        participant_name: str | None = None,
    ) -> ComposedReply:
        """Pick or generate a reply for ``message_text``.

        ``history`` holds the turns before the message, oldest first.
        Precedence: blacklist, out-of-office, keyword rule, category reply,
        generated text.
        """
        if find_blacklisted_phrase(message_text, config.blacklisted_phrases) is not None:
            return ComposedReply(
                text=None,
                confidence=1.0,
                category=BLOCKED_CATEGORY,
                used_fallback=False,
                source="blacklist",
            )

        outside_hours = not is_open(config.operating_hours, now or now_utc())
        if outside_hours and config.out_of_office_message:
            return ComposedReply(
                text=config.out_of_office_message,
                confidence=1.0,
                category=OUT_OF_OFFICE_CATEGORY,
                used_fallback=False,
                source="out_of_office",
            )

        keyword = match_keyword_rule(message_text, config.keyword_rules)
        if keyword is not None:
            return ComposedReply(
                text=keyword.reply,
                confidence=1.0,
                category=KEYWORD_CATEGORY,
                used_fallback=False,
                source="keyword",
            )

        if classification is None:
            classification = self._classifier.classify(message_text, config)
        canned = config.category_responses.get(classification.category)
        if canned:
            return ComposedReply(
                text=canned,
                confidence=1.0,
                category=classification.category,
                used_fallback=False,
                source="category",
            )

        return self._generate(
            message_text,
            history,
            config,
            classification=classification,
            outside_hours=outside_hours,
            model=model,
            participant_name=participant_name,
        )

    def _generate(
        self,
        message_text: str,
        history: Sequence[ConversationTurn],
        config: AutomationConfig,
        *,
        classification: ClassificationResult,
        outside_hours: bool,
        model: str | None,
        participant_name: str | None,
    ) -> ComposedReply:
        prior = list(history)[-(config.context_window - 1) :] if config.context_window > 1 else []
        turns = [*prior, ConversationTurn(role="sender", content=message_text)]
        selected_model = model or self._provider.default_model
        instruction = build_system_instruction(
            config,
            classification=classification,
            outside_hours=outside_hours,
            participant_name=participant_name,
        )

        try:
            raw = self._provider.generate(
                instruction,
                turns,
                max_output_tokens=max(64, config.max_response_length // 2),
                model=model,
            )
        except ProviderError as exc:
            logger.warning("reply generation failed, using canned fallback error=%s", exc.error_code)
            return self._safe_fallback(
                generic_fallback(config.language),
                config,
                category=classification.category,
                model=selected_model,
            )

        cleaned = clean_generated_text(raw)
        filtered = strip_blacklisted_sentences(cleaned, config.blacklisted_phrases)
        text, truncated = truncate_reply(filtered, config.max_response_length)
        if text and find_blacklisted_phrase(text, config.blacklisted_phrases) is not None:
            text = ""
        if not text:
            logger.warning("generated reply had no safe content, using apology template")
            return self._safe_fallback(
                apology_reply(config.language),
                config,
                category=classification.category,
                model=selected_model,
            )

        return ComposedReply(
            text=text,
            confidence=_heuristic_confidence(text, truncated=truncated, dropped_sentences=filtered != cleaned),
            category=classification.category,
            used_fallback=False,
            source="generated",
            model=selected_model,
        )

    @staticmethod
    def _safe_fallback(text: str, config: AutomationConfig, *, category: str, model: str | None) -> ComposedReply:
        if find_blacklisted_phrase(text, config.blacklisted_phrases) is not None:
            return ComposedReply(
                text=None,
                confidence=0.0,
                category=UNSAFE_CATEGORY,
                used_fallback=True,
                source="suppressed",
                model=model,
            )
        return ComposedReply(
            text=text,
            confidence=0.3,
            category=category,
            used_fallback=True,
            source="fallback",
            model=model,
        )

    def suggest(
        self,
        message_text: str,
        config: AutomationConfig,
        *,
        n: int = 3,
        model: str | None = None,
    ) -> list[str]:
        """Draft up to ``n`` alternative replies for a human operator. Never persists anything."""
        if n < 1 or n > MAX_SUGGESTIONS:
            raise ValidationError("n", f"must be between 1 and {MAX_SUGGESTIONS}")
        if find_blacklisted_phrase(message_text, config.blacklisted_phrases) is not None:
            return []

        styles = [SUGGESTION_STYLES[index % len(SUGGESTION_STYLES)] for index in range(n)]
        instruction = "\n".join(
            [
                build_system_instruction(config),
                f"Write {n} different reply variants for the message. Styles, in order: {'; '.join(styles)}.",
                'Respond only with JSON of the form {"suggestions": ["...", "..."]}.',
            ]
        )
        try:
            raw = self._provider.generate(
                instruction,
                [ConversationTurn(role="sender", content=message_text)],
                max_output_tokens=max(256, n * config.max_response_length // 2),
                model=model,
            )
            candidates = read_string_list(decode_json_object(raw), "suggestions")
        except (ProviderError, ParseError) as exc:
            logger.warning("suggestion generation failed error=%s", getattr(exc, "error_code", exc.code))
            return []

        suggestions: list[str] = []
        for candidate in candidates:
            filtered = strip_blacklisted_sentences(clean_generated_text(candidate), config.blacklisted_phrases)
            text, _ = truncate_reply(filtered, config.max_response_length)
            if text and find_blacklisted_phrase(text, config.blacklisted_phrases) is None:
                suggestions.append(text)
            if len(suggestions) == n:
                break
        return suggestions
