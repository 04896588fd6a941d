from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_csv_tuple(value: str | None, default: tuple[str, ...] = ()) -> tuple[str, ...]:
    if value is None:
        return default
    items = [item.strip() for item in value.split(",")]
    return tuple(item for item in items if item) or default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


DEFAULT_MODELS = ("gemini-2.5-flash", "gemini-3.0-pro")


@dataclass(frozen=True)
class Settings:
    app_name: str = "DM Automation Engine"
    api_prefix: str = "/api/v1"
    automation_store_backend: str = "inmemory"
    database_url: str = ""
    operator_session_secret: str = "dev-operator-secret"
    operator_token_ttl_minutes: int = 480
    runtime_secret_guard_mode: str = "warn"
    cors_allowed_origins: tuple[str, ...] = ("http://localhost:3000",)
    generation_provider: str = "stub"
    gemini_api_key: str = ""
    gemini_api_base_url: str = "https://generativelanguage.googleapis.com"
    generation_default_model: str = "gemini-2.5-flash"
    generation_allowed_models: tuple[str, ...] = DEFAULT_MODELS
    generation_timeout_seconds: float = 20.0
    generation_temperature: float = 0.7
    delivery_enabled: bool = False
    delivery_sender_type: str = "stub"
    delivery_api_base_url: str = ""
    delivery_api_key: str = ""
    delivery_timeout_seconds: float = 30.0
    delivery_scheduler: str = "timer"
    log_level: str = "INFO"
    log_json: bool = False


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("DM_APP_NAME", "DM Automation Engine"),
        api_prefix=os.getenv("DM_API_PREFIX", "/api/v1"),
        automation_store_backend=_normalize_mode(
            os.getenv("AUTOMATION_STORE_BACKEND"),
            default="inmemory",
            allowed={"inmemory", "postgres"},
        ),
        database_url=os.getenv("DATABASE_URL", ""),
        operator_session_secret=os.getenv("OPERATOR_SESSION_SECRET", "dev-operator-secret"),
        operator_token_ttl_minutes=_as_int(os.getenv("OPERATOR_TOKEN_TTL_MINUTES"), 480),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
        cors_allowed_origins=_as_csv_tuple(os.getenv("CORS_ALLOWED_ORIGINS"), ("http://localhost:3000",)),
        generation_provider=_normalize_mode(
            os.getenv("GENERATION_PROVIDER"),
            default="stub",
            allowed={"stub", "gemini"},
        ),
        gemini_api_key=os.getenv("GEMINI_API_KEY", ""),
        gemini_api_base_url=os.getenv("GEMINI_API_BASE_URL", "https://generativelanguage.googleapis.com"),
        generation_default_model=os.getenv("GENERATION_DEFAULT_MODEL", "gemini-2.5-flash"),
        generation_allowed_models=_as_csv_tuple(os.getenv("GENERATION_ALLOWED_MODELS"), DEFAULT_MODELS),
        generation_timeout_seconds=_as_float(os.getenv("GENERATION_TIMEOUT_SECONDS"), 20.0),
        generation_temperature=_as_float(os.getenv("GENERATION_TEMPERATURE"), 0.7),
        delivery_enabled=_as_bool(os.getenv("DELIVERY_ENABLED"), False),
        delivery_sender_type=_normalize_mode(
            os.getenv("DELIVERY_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        delivery_api_base_url=os.getenv("DELIVERY_API_BASE_URL", ""),
        delivery_api_key=os.getenv("DELIVERY_API_KEY", ""),
        delivery_timeout_seconds=_as_float(os.getenv("DELIVERY_TIMEOUT_SECONDS"), 30.0),
        delivery_scheduler=_normalize_mode(
            os.getenv("DELIVERY_SCHEDULER"),
            default="timer",
            allowed={"timer", "queued"},
        ),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        log_json=_as_bool(os.getenv("LOG_JSON"), False),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if _is_placeholder(
        settings.operator_session_secret,
        defaults={"dev-operator-secret", "change-me-in-production"},
    ):
        issues.append("OPERATOR_SESSION_SECRET is empty or uses a development placeholder")
    if settings.generation_provider == "gemini" and _is_placeholder(settings.gemini_api_key, defaults=set()):
        issues.append("GEMINI_API_KEY is required when GENERATION_PROVIDER=gemini")
    if settings.generation_default_model not in settings.generation_allowed_models:
        issues.append("GENERATION_DEFAULT_MODEL must be listed in GENERATION_ALLOWED_MODELS")
    if settings.delivery_sender_type == "http":
        if not settings.delivery_api_base_url.strip():
            issues.append("DELIVERY_API_BASE_URL is required when DELIVERY_SENDER_TYPE=http")
        if _is_placeholder(settings.delivery_api_key, defaults=set()):
            issues.append("DELIVERY_API_KEY is required when DELIVERY_SENDER_TYPE=http")
    if settings.automation_store_backend == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when AUTOMATION_STORE_BACKEND=postgres")
    return tuple(issues)
