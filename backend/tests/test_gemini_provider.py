from __future__ import annotations

from typing import Any
from unittest.mock import MagicMock

import httpx
import pytest
from google.genai import errors as genai_errors
from google.genai import types as genai_types

from dm_automation.errors import ProviderError
from dm_automation.generation import ConversationTurn, GeminiProvider, StubTextProvider


def _make_provider(client: MagicMock | None = None, **overrides: Any) -> GeminiProvider:
    options: dict[str, Any] = {
        "api_key": "gemini-test-key",
        "default_model": "gemini-2.5-flash",
        "allowed_models": ("gemini-2.5-flash", "gemini-3.0-pro"),
        "client": client or MagicMock(),
    }
    options.update(overrides)
    return GeminiProvider(**options)


def _client_returning(response: Any) -> MagicMock:
    client = MagicMock()
    client.models.generate_content.return_value = response
    return client


def _client_raising(error: Exception) -> MagicMock:
    client = MagicMock()
    client.models.generate_content.side_effect = error
    return client


def _candidate(text: str) -> genai_types.GenerateContentResponse:
    return genai_types.GenerateContentResponse(
        candidates=[
            genai_types.Candidate(
                content=genai_types.Content(role="model", parts=[genai_types.Part(text=text)]),
            )
        ]
    )


TURNS = [
    ConversationTurn(role="sender", content="Hallo"),
    ConversationTurn(role="sender", content="Bist du da?"),
    ConversationTurn(role="assistant", content="Ja!"),
    ConversationTurn(role="sender", content="Was kostet das?"),
]


def test_generate_sends_contents_and_returns_text() -> None:
    client = _client_returning(_candidate("29 Euro."))

    text = _make_provider(client).generate("Be brief.", TURNS, max_output_tokens=128, model="gemini-3.0-pro")

    assert text == "29 Euro."
    kwargs = client.models.generate_content.call_args.kwargs
    assert kwargs["model"] == "gemini-3.0-pro"
    contents = kwargs["contents"]
    assert [item.role for item in contents] == ["user", "model", "user"]
    assert [part.text for part in contents[0].parts] == ["Hallo", "Bist du da?"]
    assert kwargs["config"].system_instruction == "Be brief."
    assert kwargs["config"].max_output_tokens == 128
    assert kwargs["config"].temperature == 0.7


def test_generate_uses_default_model() -> None:
    client = _client_returning(_candidate("Hi"))

    _make_provider(client).generate("", TURNS, max_output_tokens=64)

    kwargs = client.models.generate_content.call_args.kwargs
    assert kwargs["model"] == "gemini-2.5-flash"
    assert kwargs["config"].system_instruction is None


def test_generate_rejects_unlisted_model_without_request() -> None:
    client = MagicMock()

    with pytest.raises(ProviderError) as exc_info:
        _make_provider(client).generate("x", TURNS, max_output_tokens=64, model="gpt-4o")

    assert exc_info.value.error_code == "unsupported_model"
    client.models.generate_content.assert_not_called()


def test_generate_requires_turns() -> None:
    with pytest.raises(ProviderError) as exc_info:
        _make_provider().generate("x", [], max_output_tokens=64)

    assert exc_info.value.error_code == "empty_prompt"


@pytest.mark.parametrize(
    ("error", "expected_code"),
    [
        (
            genai_errors.ClientError(
                429,
                {"error": {"code": 429, "message": "Resource exhausted", "status": "RESOURCE_EXHAUSTED"}},
            ),
            "http_429",
        ),
        (
            genai_errors.ServerError(
                503,
                {"error": {"code": 503, "message": "Overloaded", "status": "UNAVAILABLE"}},
            ),
            "http_503",
        ),
        (httpx.ConnectError("Connection refused"), "connection_error"),
        (httpx.ReadTimeout("timed out"), "timeout"),
        (ValueError("bad payload"), "invalid_response"),
    ],
)
def test_sdk_failures_map_to_error_codes(error: Exception, expected_code: str) -> None:
    provider = _make_provider(_client_raising(error))

    with pytest.raises(ProviderError) as exc_info:
        provider.generate("x", TURNS, max_output_tokens=64)

    assert exc_info.value.error_code == expected_code


@pytest.mark.parametrize(
    ("response", "expected_code"),
    [
        ([], "invalid_response"),
        (genai_types.GenerateContentResponse.model_construct(candidates=["oops"]), "invalid_response"),
        (
            genai_types.GenerateContentResponse(
                prompt_feedback=genai_types.GenerateContentResponsePromptFeedback(
                    block_reason=genai_types.BlockedReason.SAFETY,
                )
            ),
            "blocked",
        ),
        (genai_types.GenerateContentResponse(candidates=[]), "empty_response"),
        (genai_types.GenerateContentResponse(candidates=[genai_types.Candidate()]), "empty_response"),
        (_candidate("   "), "empty_response"),
    ],
)
def test_unusable_responses_raise_provider_error(response: Any, expected_code: str) -> None:
    provider = _make_provider(_client_returning(response))

    with pytest.raises(ProviderError) as exc_info:
        provider.generate("x", TURNS, max_output_tokens=64)

    assert exc_info.value.error_code == expected_code


def test_malformed_response_degrades_classifier_and_composer() -> None:
    from dm_automation.automation_settings import AutomationConfig
    from dm_automation.classifier import MessageClassifier
    from dm_automation.composer import ResponseComposer

    provider = _make_provider(_client_returning([]))
    classifier = MessageClassifier(provider=provider)
    config = AutomationConfig(channel_id="channel-1", language="en")

    classification = classifier.classify("Hello", config)
    reply = ResponseComposer(provider=provider, classifier=classifier).compose("Hello", [], config)

    assert classification.source == "default"
    assert reply.used_fallback is True
    assert reply.source == "fallback"


def test_empty_api_key_is_rejected() -> None:
    with pytest.raises(ValueError, match="api_key must not be empty"):
        _make_provider(api_key="")


def test_stub_provider_replays_scripted_replies() -> None:
    provider = StubTextProvider(["eins", ProviderError("timeout", "slow"), "drei"])

    assert provider.generate("x", TURNS, max_output_tokens=64) == "eins"
    with pytest.raises(ProviderError):
        provider.generate("x", TURNS, max_output_tokens=64)
    assert provider.generate("x", TURNS, max_output_tokens=64, model="gemini-3.0-pro") == "drei"
    assert [call.model for call in provider.calls] == [None, None, "gemini-3.0-pro"]
