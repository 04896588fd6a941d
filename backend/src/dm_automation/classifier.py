from __future__ import annotations

import logging
from dataclasses import dataclass

from .automation_settings import AutomationConfig
from .errors import ParseError, ProviderError
from .generation import ConversationTurn, TextGenerationProvider
from .models import ClassificationSource, Priority, Sentiment
from .output_parsing import decode_json_object, read_bool, read_choice, read_probability, read_text
from .reply_rules import match_keyword_rule

logger = logging.getLogger(__name__)

KEYWORD_CATEGORY = "keyword_match"
DEFAULT_CATEGORY = "general"
BASE_CATEGORIES = ("faq", "pricing", "product", "support", "feedback", "other")

_SENTIMENTS = frozenset({"positive", "neutral", "negative"})
_PRIORITIES = frozenset({"high", "medium", "low"})

_CLASSIFIER_INSTRUCTION = (
    "You label direct messages sent to a business on a social platform. "
    "Reply with one JSON object and nothing else, using these keys: "
    '"intent" (short label such as question, complaint, praise, order, support, small_talk), '
    '"sentiment" (positive, neutral or negative), '
    '"category" (one of: {categories}), '
    '"confidence" (0 to 1), '
    '"needs_human_review" (true for sensitive topics, complaints or complex requests), '
    '"priority" (high, medium or low).'
)


@dataclass(frozen=True)
class ClassificationResult:
    category: str
    sentiment: Sentiment
    confidence: float
    intent: str = "unknown"
    needs_human_review: bool = False
    priority: Priority = "medium"
    matched_keyword: str | None = None
    source: ClassificationSource = "model"


def default_classification() -> ClassificationResult:
    return ClassificationResult(
        category=DEFAULT_CATEGORY,
        sentiment="neutral",
        confidence=0.0,
        intent="unknown",
        needs_human_review=True,
        priority="medium",
        source="default",
    )


class MessageClassifier:
    def __init__(self, *, provider: TextGenerationProvider, model: str | None = None) -> None:
        self._provider = provider
        self._model = model

    def classify(self, text: str, config: AutomationConfig) -> ClassificationResult:
        match = match_keyword_rule(text, config.keyword_rules)
        if match is not None:
            return ClassificationResult(
                category=KEYWORD_CATEGORY,
                sentiment="neutral",
                confidence=1.0,
                intent="keyword",
                needs_human_review=False,
                priority="medium",
                matched_keyword=match.keyword,
                source="keyword",
            )

        categories = list(BASE_CATEGORIES)
        categories.extend(key for key in config.category_responses if key not in categories)
        try:
            raw = self._provider.generate(
                _CLASSIFIER_INSTRUCTION.format(categories=", ".join(categories)),
                [ConversationTurn(role="sender", content=text)],
                max_output_tokens=256,
                model=self._model,
            )
            payload = decode_json_object(raw)
        except (ProviderError, ParseError) as exc:
            logger.warning("classification degraded to default error=%s", getattr(exc, "error_code", exc.code))
            return default_classification()

        return ClassificationResult(
            category=read_text(payload, "category", DEFAULT_CATEGORY),
            sentiment=read_choice(payload, "sentiment", _SENTIMENTS, "neutral"),  # type: ignore[arg-type]
            confidence=read_probability(payload, "confidence", 0.0),
            intent=read_text(payload, "intent", "unknown"),
            needs_human_review=read_bool(payload, "needs_human_review", False),
            priority=read_choice(payload, "priority", _PRIORITIES, "medium"),  # type: ignore[arg-type]
            source="model",
        )
