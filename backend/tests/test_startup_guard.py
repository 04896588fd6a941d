from __future__ import annotations

import logging
import os

import pytest

from dm_automation.main import create_app


def _set_env(overrides: dict[str, str | None]) -> dict[str, str | None]:
    previous: dict[str, str | None] = {}
    for key, value in overrides.items():
        previous[key] = os.environ.get(key)
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
    return previous


def _restore_env(previous: dict[str, str | None]) -> None:
    for key, value in previous.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


def _base_runtime_secret_env() -> dict[str, str | None]:
    return {
        "OPERATOR_SESSION_SECRET": "prod-operator-secret-001",
        "RUNTIME_SECRET_GUARD_MODE": "enforce",
        "GENERATION_PROVIDER": "stub",
        "GEMINI_API_KEY": None,
        "DELIVERY_SENDER_TYPE": "stub",
        "DELIVERY_API_BASE_URL": None,
        "DELIVERY_API_KEY": None,
        "AUTOMATION_STORE_BACKEND": "inmemory",
    }


def test_create_app_starts_with_configured_secrets() -> None:
    previous = _set_env(_base_runtime_secret_env())
    try:
        app = create_app()
        assert app.title == "DM Automation Engine"
    finally:
        _restore_env(previous)


def test_create_app_blocks_when_gemini_selected_without_key() -> None:
    previous = _set_env({**_base_runtime_secret_env(), "GENERATION_PROVIDER": "gemini"})
    try:
        with pytest.raises(RuntimeError) as exc_info:
            create_app()
        message = str(exc_info.value)
        assert "GEMINI_API_KEY is required" in message
        assert "Remediation" in message
    finally:
        _restore_env(previous)


def test_create_app_blocks_on_placeholder_operator_secret() -> None:
    previous = _set_env({**_base_runtime_secret_env(), "OPERATOR_SESSION_SECRET": "dev-operator-secret"})
    try:
        with pytest.raises(RuntimeError, match="OPERATOR_SESSION_SECRET"):
            create_app()
    finally:
        _restore_env(previous)


def test_create_app_warns_instead_of_blocking_in_warn_mode(caplog: pytest.LogCaptureFixture) -> None:
    previous = _set_env(
        {
            **_base_runtime_secret_env(),
            "RUNTIME_SECRET_GUARD_MODE": "warn",
            "OPERATOR_SESSION_SECRET": "change-me",
        }
    )
    try:
        with caplog.at_level(logging.WARNING, logger="dm_automation.main"):
            create_app()
        assert any("OPERATOR_SESSION_SECRET" in record.getMessage() for record in caplog.records)
    finally:
        _restore_env(previous)
