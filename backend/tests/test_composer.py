from __future__ import annotations

from datetime import datetime, time, timezone

import pytest

from dm_automation.automation_settings import AutomationConfig
from dm_automation.classifier import ClassificationResult, MessageClassifier
from dm_automation.composer import ResponseComposer
from dm_automation.errors import ProviderError, ValidationError
from dm_automation.generation import ConversationTurn, StubTextProvider
from dm_automation.operating_hours import DayWindow, OperatingHours
from dm_automation.reply_rules import APOLOGY_REPLIES, GENERIC_FALLBACKS

# A Wednesday.
NOW = datetime(2026, 10, 14, 12, 0, tzinfo=timezone.utc)


def _composer(provider: StubTextProvider) -> ResponseComposer:
    return ResponseComposer(provider=provider, classifier=MessageClassifier(provider=provider))


def _general() -> ClassificationResult:
    return ClassificationResult(category="general", sentiment="neutral", confidence=0.6)


def test_keyword_rule_returns_canned_text_without_provider_call() -> None:
    provider = StubTextProvider()
    config = AutomationConfig(channel_id="channel-1", keyword_rules={"preis": "Unser Preis ist 29€"})

    reply = _composer(provider).compose("Was ist der preis?", [], config, now=NOW)

    assert reply.text == "Unser Preis ist 29€"
    assert reply.confidence == 1.0
    assert reply.source == "keyword"
    assert reply.used_fallback is False
    assert provider.calls == []


def test_out_of_office_message_is_returned_verbatim_outside_hours() -> None:
    provider = StubTextProvider()
    config = AutomationConfig(
        channel_id="channel-1",
        operating_hours=OperatingHours(
            enabled=True,
            timezone="UTC",
            hours={"monday": DayWindow(start=time(9, 0), end=time(17, 0))},
        ),
        out_of_office_message="Wir antworten werktags 9-17 Uhr.",
    )

    reply = _composer(provider).compose("Hallo?", [], config, now=NOW)

    assert reply.text == "Wir antworten werktags 9-17 Uhr."
    assert reply.source == "out_of_office"
    assert provider.calls == []


def test_generated_reply_is_truncated_to_max_length() -> None:
    provider = StubTextProvider(["x" * 20 + " " + "y" * 179])
    config = AutomationConfig(channel_id="channel-1", max_response_length=50)

    reply = _composer(provider).compose("Erzähl mir alles.", [], config, now=NOW)

    assert reply.text is not None
    assert len(reply.text) <= 50
    assert reply.source == "generated"
    assert reply.used_fallback is False


def test_blacklist_beats_keyword_rule() -> None:
    provider = StubTextProvider()
    config = AutomationConfig(
        channel_id="channel-1",
        keyword_rules={"preis": "Unser Preis ist 29€"},
        blacklisted_phrases=("anwalt",),
    )

    reply = _composer(provider).compose("Mein Anwalt fragt nach dem Preis", [], config, now=NOW)

    assert reply.text is None
    assert reply.source == "blacklist"
    assert reply.category == "blocked"
    assert provider.calls == []


def test_category_response_is_used_for_classified_message() -> None:
    provider = StubTextProvider()
    config = AutomationConfig(channel_id="channel-1", category_responses={"pricing": "Preise findest du im Shop."})
    classification = ClassificationResult(category="pricing", sentiment="neutral", confidence=0.9)

    reply = _composer(provider).compose("Wie teuer?", [], config, classification=classification, now=NOW)

    assert reply.text == "Preise findest du im Shop."
    assert reply.source == "category"
    assert provider.calls == []


def test_provider_failure_uses_generic_fallback_in_channel_language() -> None:
    provider = StubTextProvider([ProviderError("http_503", "unavailable")])
    config = AutomationConfig(channel_id="channel-1", language="de")

    reply = _composer(provider).compose("Hallo", [], config, classification=_general(), now=NOW)

    assert reply.text == GENERIC_FALLBACKS["de"]
    assert reply.used_fallback is True
    assert reply.source == "fallback"
    assert reply.confidence == 0.3


def test_fallback_containing_blacklisted_phrase_is_suppressed() -> None:
    provider = StubTextProvider([ProviderError("timeout", "slow")])
    config = AutomationConfig(channel_id="channel-1", language="de", blacklisted_phrases=("melden",))

    reply = _composer(provider).compose("Hallo", [], config, classification=_general(), now=NOW)

    assert reply.text is None
    assert reply.source == "suppressed"
    assert reply.used_fallback is True


def test_fully_blacklisted_output_becomes_apology() -> None:
    provider = StubTextProvider(["Rabatt gibt es heute nicht."])
    config = AutomationConfig(channel_id="channel-1", language="en", blacklisted_phrases=("rabatt",))

    reply = _composer(provider).compose("Hi", [], config, classification=_general(), now=NOW)

    assert reply.text == APOLOGY_REPLIES["en"]
    assert reply.used_fallback is True


def test_blacklisted_sentences_are_removed_from_generated_text() -> None:
    provider = StubTextProvider(["Antwort: Danke dir! Ruf 0800 an. Bis bald!"])
    config = AutomationConfig(channel_id="channel-1", blacklisted_phrases=("0800",))

    reply = _composer(provider).compose("Hi", [], config, classification=_general(), now=NOW)

    assert reply.text == "Danke dir! Bis bald!"
    assert reply.source == "generated"
    assert reply.model == "stub-model"


def test_history_is_limited_to_context_window() -> None:
    provider = StubTextProvider(["Gern!"])
    config = AutomationConfig(channel_id="channel-1", context_window=3, brand_name="Studio Nord")
    history = [ConversationTurn(role="sender", content=f"alt {index}") for index in range(5)]

    _composer(provider).compose("neu", history, config, classification=_general(), now=NOW, participant_name="Lena")

    call = provider.calls[-1]
    assert [turn.content for turn in call.turns] == ["alt 3", "alt 4", "neu"]
    assert "Studio Nord" in call.system_instruction
    assert "Lena" in call.system_instruction
    assert "Antworte auf Deutsch." in call.system_instruction


def test_outside_hours_without_message_asks_for_delayed_answer() -> None:
    provider = StubTextProvider(["Wir melden uns morgen."])
    config = AutomationConfig(channel_id="channel-1", operating_hours=OperatingHours(enabled=True))

    reply = _composer(provider).compose("Hallo", [], config, classification=_general(), now=NOW)

    assert reply.source == "generated"
    assert "outside its operating hours" in provider.calls[-1].system_instruction


def test_suggestions_return_requested_number_of_variants() -> None:
    provider = StubTextProvider(['{"suggestions": ["Kurz!", "Etwas länger.", "Was genau meinst du?", "Extra"]}'])
    config = AutomationConfig(channel_id="channel-1")

    suggestions = _composer(provider).suggest("Hallo", config, n=3)

    assert suggestions == ["Kurz!", "Etwas länger.", "Was genau meinst du?"]


def test_suggestions_are_empty_for_blacklisted_or_failed_requests() -> None:
    provider = StubTextProvider(["not json"])
    config = AutomationConfig(channel_id="channel-1", blacklisted_phrases=("spam",))
    composer = _composer(provider)

    assert composer.suggest("Das ist Spam", config) == []
    assert provider.calls == []
    assert composer.suggest("Hallo", config) == []
    with pytest.raises(ValidationError):
        composer.suggest("Hallo", config, n=0)


def test_phrase_spanning_joined_sentences_becomes_apology() -> None:
    provider = StubTextProvider(["Get it free.\nClick here now to order."])
    config = AutomationConfig(channel_id="channel-1", language="en", blacklisted_phrases=("free. click",))

    reply = _composer(provider).compose("Hi", [], config, classification=_general(), now=NOW)

    assert reply.text == APOLOGY_REPLIES["en"]
    assert reply.used_fallback is True
    assert "free. click" not in reply.text.lower()


def test_suggestions_drop_variants_with_phrase_across_sentences() -> None:
    provider = StubTextProvider(['{"suggestions": ["Get it free.\\nClick here now to order.", "Happy to help!"]}'])
    config = AutomationConfig(channel_id="channel-1", language="en", blacklisted_phrases=("free. click",))

    suggestions = _composer(provider).suggest("Hi", config, n=2)

    assert suggestions == ["Happy to help!"]
