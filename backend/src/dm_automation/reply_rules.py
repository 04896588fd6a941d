from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Mapping

# Short, safe replies used when the generative path fails or yields nothing usable.
GENERIC_FALLBACKS = {
    "de": "Danke für deine Nachricht! Wir melden uns bald.",
    "en": "Thanks for your message! We'll reply soon.",
    "tr": "Mesajın için teşekkürler! Yakında yanıtlarız.",
}

APOLOGY_REPLIES = {
    "de": "Entschuldige, wir melden uns gleich persönlich.",
    "en": "Sorry, a team member will reply shortly.",
    "tr": "Üzgünüz, ekibimiz kısa sürede yanıt verecek.",
}

_ANSWER_PREFIX_RE = re.compile(r"^(antwort|response|reply|cevap)\s*:\s*", re.IGNORECASE)
_WRAPPING_QUOTES = "\"'“”„«»"
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?…])\s+")


@dataclass(frozen=True)
class KeywordMatch:
    keyword: str
    reply: str


def generic_fallback(language: str) -> str:
    return GENERIC_FALLBACKS.get(language, GENERIC_FALLBACKS["en"])


def apology_reply(language: str) -> str:
    return APOLOGY_REPLIES.get(language, APOLOGY_REPLIES["en"])


def match_keyword_rule(text: str, rules: Mapping[str, str]) -> KeywordMatch | None:
    """First rule, in insertion order, whose keyword occurs in ``text`` (case-insensitive)."""
    normalized = text.lower()
    for keyword, reply in rules.items():
        if keyword and keyword.lower() in normalized:
            return KeywordMatch(keyword=keyword, reply=reply)
    return None


def find_blacklisted_phrase(text: str, phrases: Iterable[str]) -> str | None:
    normalized = text.lower()
    for phrase in phrases:
        if phrase and phrase.lower() in normalized:
            return phrase
    return None


def clean_generated_text(text: str) -> str:
    cleaned = text.strip()
    cleaned = _ANSWER_PREFIX_RE.sub("", cleaned).strip()
    if len(cleaned) >= 2 and cleaned[0] in _WRAPPING_QUOTES and cleaned[-1] in _WRAPPING_QUOTES:
        cleaned = cleaned[1:-1].strip()
    return _ANSWER_PREFIX_RE.sub("", cleaned).strip()


def strip_blacklisted_sentences(text: str, phrases: Iterable[str]) -> str:
    blocked = [phrase for phrase in phrases if phrase]
    if not blocked:
        return text.strip()
    kept = [
        sentence
        for sentence in _SENTENCE_SPLIT_RE.split(text.strip())
        if sentence and find_blacklisted_phrase(sentence, blocked) is None
    ]
    return " ".join(kept).strip()


def truncate_reply(text: str, max_length: int) -> tuple[str, bool]:
    """Shorten ``text`` to at most ``max_length`` characters.

    Prefers a sentence boundary in the second half of the budget, then a word
    boundary with an ellipsis. Returns the text and whether it was cut.
    """
    if len(text) <= max_length:
        return text, False

    window = text[:max_length]
    boundary = max(window.rfind(". "), window.rfind("! "), window.rfind("? "))
    if boundary >= max_length // 2:
        return window[: boundary + 1].strip(), True

    window = text[: max_length - 1]
    space = window.rfind(" ")
    if space >= max_length // 2:
        window = window[:space]
    return window.rstrip(" ,;:-") + "…", True
