from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from threading import Lock
from typing import Any, Callable, Mapping, Protocol

from sqlalchemy import Boolean, DateTime, Integer, String, Text, delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .errors import NotFoundError, StorageError, ValidationError
from .models import LANGUAGES, TONES
from .operating_hours import OperatingHours, operating_hours_to_dict, parse_operating_hours
from .persistence import build_session_factory, coerce_utc, now_utc, transaction

logger = logging.getLogger(__name__)

DEFAULT_LANGUAGE = "de"
DEFAULT_TONE = "friendly"
DEFAULT_CONTEXT_WINDOW = 5
DEFAULT_MAX_RESPONSE_LENGTH = 500

RESPONSE_DELAY_RANGE = (0, 3600)
CONTEXT_WINDOW_RANGE = (1, 20)
MAX_RESPONSE_LENGTH_RANGE = (50, 2000)
SYSTEM_PROMPT_MAX = 2000
BRAND_NAME_MAX = 128
OUT_OF_OFFICE_MAX = 500
CANNED_TEXT_MAX = 2000

COUNTER_FIELDS = frozenset({"total_processed", "total_auto_replied"})


@dataclass(frozen=True)
class QuickReply:
    id: str
    label: str
    text: str


@dataclass(frozen=True)
class AutomationConfig:
    channel_id: str
    enabled: bool = False
    auto_reply_enabled: bool = False
    language: str = DEFAULT_LANGUAGE
    tone: str = DEFAULT_TONE
    response_delay_seconds: int = 0
    system_prompt: str | None = None
    brand_name: str | None = None
    context_window: int = DEFAULT_CONTEXT_WINDOW
    max_response_length: int = DEFAULT_MAX_RESPONSE_LENGTH
    category_responses: Mapping[str, str] = field(default_factory=dict)
    keyword_rules: Mapping[str, str] = field(default_factory=dict)
    blacklisted_phrases: tuple[str, ...] = ()
    quick_replies: tuple[QuickReply, ...] = ()
    operating_hours: OperatingHours = field(default_factory=OperatingHours)
    out_of_office_message: str | None = None
    total_processed: int = 0
    total_auto_replied: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _require_bool(name: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValidationError(name, "expected a boolean")
    return value


def _require_int_in(name: str, value: Any, bounds: tuple[int, int]) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(name, "expected an integer")
    low, high = bounds
    if value < low or value > high:
        raise ValidationError(name, f"must be between {low} and {high}")
    return value


def _require_choice(name: str, value: Any, choices: frozenset[str]) -> str:
    normalized = str(value or "").strip().lower()
    if normalized not in choices:
        raise ValidationError(name, f"must be one of {', '.join(sorted(choices))}")
    return normalized


def _optional_text(name: str, value: Any, max_length: int) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(name, "expected a string")
    normalized = value.strip()
    if not normalized:
        return None
    if len(normalized) > max_length:
        raise ValidationError(name, f"must be at most {max_length} characters")
    return normalized


def _canned_mapping(name: str, value: Any, *, lowercase_keys: bool) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValidationError(name, "expected an object of text replies")
    result: dict[str, str] = {}
    seen: set[str] = set()
    for raw_key, raw_text in value.items():
        key = str(raw_key).strip()
        if not key:
            raise ValidationError(name, "keys cannot be blank")
        if lowercase_keys:
            key = key.lower()
        folded = key.lower()
        if folded in seen:
            raise ValidationError(name, f"duplicate key {key!r}")
        seen.add(folded)
        if not isinstance(raw_text, str) or not raw_text.strip():
            raise ValidationError(f"{name}.{key}", "reply text cannot be blank")
        if len(raw_text) > CANNED_TEXT_MAX:
            raise ValidationError(f"{name}.{key}", f"must be at most {CANNED_TEXT_MAX} characters")
        result[key] = raw_text.strip()
    return result


def _phrase_list(name: str, value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str) or not isinstance(value, (list, tuple)):
        raise ValidationError(name, "expected a list of phrases")
    phrases: list[str] = []
    seen: set[str] = set()
    for raw in value:
        if not isinstance(raw, str) or not raw.strip():
            raise ValidationError(name, "phrases cannot be blank")
        phrase = raw.strip()
        if phrase.lower() in seen:
            continue
        seen.add(phrase.lower())
        phrases.append(phrase)
    return tuple(phrases)


def _quick_replies(name: str, value: Any) -> tuple[QuickReply, ...]:
    if value is None:
        return ()
    if not isinstance(value, (list, tuple)):
        raise ValidationError(name, "expected a list of quick replies")
    replies: list[QuickReply] = []
    ids: set[str] = set()
    for raw in value:
        if isinstance(raw, QuickReply):
            item = raw
        elif isinstance(raw, Mapping):
            item = QuickReply(
                id=str(raw.get("id") or "").strip(),
                label=str(raw.get("label") or "").strip(),
                text=str(raw.get("text") or "").strip(),
            )
        else:
            raise ValidationError(name, "expected objects with id, label and text")
        if not item.id or not item.label or not item.text:
            raise ValidationError(name, "id, label and text are required")
        if item.id in ids:
            raise ValidationError(name, f"duplicate quick reply id {item.id!r}")
        ids.add(item.id)
        replies.append(item)
    return tuple(replies)


_FIELD_VALIDATORS: dict[str, Callable[[str, Any], Any]] = {
    "enabled": _require_bool,
    "auto_reply_enabled": _require_bool,
    "language": lambda name, value: _require_choice(name, value, LANGUAGES),
    "tone": lambda name, value: _require_choice(name, value, TONES),
    "response_delay_seconds": lambda name, value: _require_int_in(name, value, RESPONSE_DELAY_RANGE),
    "system_prompt": lambda name, value: _optional_text(name, value, SYSTEM_PROMPT_MAX),
    "brand_name": lambda name, value: _optional_text(name, value, BRAND_NAME_MAX),
    "context_window": lambda name, value: _require_int_in(name, value, CONTEXT_WINDOW_RANGE),
    "max_response_length": lambda name, value: _require_int_in(name, value, MAX_RESPONSE_LENGTH_RANGE),
    "category_responses": lambda name, value: _canned_mapping(name, value, lowercase_keys=True),
    "keyword_rules": lambda name, value: _canned_mapping(name, value, lowercase_keys=False),
    "blacklisted_phrases": _phrase_list,
    "quick_replies": _quick_replies,
    "operating_hours": lambda name, value: parse_operating_hours(value, field_name=name),
    "out_of_office_message": lambda name, value: _optional_text(name, value, OUT_OF_OFFICE_MAX),
}

SETTINGS_FIELDS = frozenset(_FIELD_VALIDATORS)


def validate_settings_patch(patch: Mapping[str, Any]) -> dict[str, Any]:
    """Normalize a partial settings update. Out-of-range values are rejected, never clamped."""
    normalized: dict[str, Any] = {}
    for name, value in patch.items():
        if name in COUNTER_FIELDS:
            raise ValidationError(name, "counters are maintained by the engine")
        validator = _FIELD_VALIDATORS.get(name)
        if validator is None:
            raise ValidationError(name, "unknown setting")
        normalized[name] = validator(name, value)
    return normalized


def validate_config(config: AutomationConfig) -> AutomationConfig:
    channel_id = str(config.channel_id or "").strip()
    if not channel_id or len(channel_id) > 128:
        raise ValidationError("channel_id", "must be 1 to 128 characters")
    values = validate_settings_patch({name: getattr(config, name) for name in SETTINGS_FIELDS})
    return replace(config, channel_id=channel_id, **values)


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


class AutomationSettingsRepository(Protocol):
    def reset(self) -> None: ...

    def find(self, channel_id: str) -> AutomationConfig | None: ...

    def apply_settings(
        self,
        channel_id: str,
        change: Callable[[AutomationConfig], AutomationConfig],
    ) -> AutomationConfig: ...

    def increment_counters(self, channel_id: str, *, processed: int, auto_replied: int) -> AutomationConfig | None: ...


class InMemoryAutomationSettingsRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._configs: dict[str, AutomationConfig] = {}

    def reset(self) -> None:
        with self._lock:
            self._configs.clear()

    def find(self, channel_id: str) -> AutomationConfig | None:
        with self._lock:
            return self._configs.get(channel_id)

    def apply_settings(
        self,
        channel_id: str,
        change: Callable[[AutomationConfig], AutomationConfig],
    ) -> AutomationConfig:
        with self._lock:
            now = now_utc()
            current = self._configs.get(channel_id) or AutomationConfig(channel_id=channel_id, created_at=now)
            changed = change(current)
            stored = replace(
                changed,
                channel_id=channel_id,
                total_processed=current.total_processed,
                total_auto_replied=current.total_auto_replied,
                created_at=current.created_at,
                updated_at=now,
            )
            self._configs[channel_id] = stored
            return stored

    def increment_counters(self, channel_id: str, *, processed: int, auto_replied: int) -> AutomationConfig | None:
        with self._lock:
            current = self._configs.get(channel_id)
            if current is None:
                return None
            stored = replace(
                current,
                total_processed=current.total_processed + processed,
                total_auto_replied=current.total_auto_replied + auto_replied,
            )
            self._configs[channel_id] = stored
            return stored


class AutomationSettingsBase(DeclarativeBase):
    pass


class _AutomationConfigRow(AutomationSettingsBase):
    __tablename__ = "automation_configs"

    channel_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    auto_reply_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    language: Mapped[str] = mapped_column(String(8), nullable=False, default=DEFAULT_LANGUAGE)
    tone: Mapped[str] = mapped_column(String(16), nullable=False, default=DEFAULT_TONE)
    response_delay_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    system_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    brand_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    context_window: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_CONTEXT_WINDOW)
    max_response_length: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_MAX_RESPONSE_LENGTH)
    category_responses_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    keyword_rules_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    blacklisted_phrases_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    quick_replies_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    operating_hours_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    out_of_office_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_auto_replied: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _dump_json(value: Any) -> str:
    # Keys keep insertion order: keyword rules are matched in that order.
    return json.dumps(value, separators=(",", ":"))


class SqlAlchemyAutomationSettingsRepository:
    def __init__(self, database_url: str) -> None:
        self._session_factory = build_session_factory(
            database_url,
            AutomationSettingsBase.metadata,
            backend_env="AUTOMATION_STORE_BACKEND",
        )

    def reset(self) -> None:
        with transaction(self._session_factory) as session:
            session.execute(delete(_AutomationConfigRow))

    def find(self, channel_id: str) -> AutomationConfig | None:
        with transaction(self._session_factory) as session:
            row = session.get(_AutomationConfigRow, channel_id)
            return self._record(row) if row is not None else None

    def apply_settings(
        self,
        channel_id: str,
        change: Callable[[AutomationConfig], AutomationConfig],
    ) -> AutomationConfig:
        try:
            return self._apply_settings_once(channel_id, change)
        except StorageError as exc:
            # A concurrent first write created the row; merge onto it instead.
            if not isinstance(exc.__cause__, IntegrityError):
                raise
            return self._apply_settings_once(channel_id, change)

    def _apply_settings_once(
        self,
        channel_id: str,
        change: Callable[[AutomationConfig], AutomationConfig],
    ) -> AutomationConfig:
        now = now_utc()
        with transaction(self._session_factory) as session:
            row = session.get(_AutomationConfigRow, channel_id, with_for_update=True)
            if row is None:
                current = AutomationConfig(channel_id=channel_id, created_at=now)
                row = _AutomationConfigRow(channel_id=channel_id, created_at=now, total_processed=0, total_auto_replied=0)
                session.add(row)
            else:
                current = self._record(row)
            changed = change(current)
            row.enabled = changed.enabled
            row.auto_reply_enabled = changed.auto_reply_enabled
            row.language = changed.language
            row.tone = changed.tone
            row.response_delay_seconds = changed.response_delay_seconds
            row.system_prompt = changed.system_prompt
            row.brand_name = changed.brand_name
            row.context_window = changed.context_window
            row.max_response_length = changed.max_response_length
            row.category_responses_json = _dump_json(dict(changed.category_responses))
            row.keyword_rules_json = _dump_json(dict(changed.keyword_rules))
            row.blacklisted_phrases_json = _dump_json(list(changed.blacklisted_phrases))
            row.quick_replies_json = _dump_json(
                [{"id": item.id, "label": item.label, "text": item.text} for item in changed.quick_replies]
            )
            row.operating_hours_json = _dump_json(operating_hours_to_dict(changed.operating_hours))
            row.out_of_office_message = changed.out_of_office_message
            row.updated_at = now
            session.flush()
            return self._record(row)

    def increment_counters(self, channel_id: str, *, processed: int, auto_replied: int) -> AutomationConfig | None:
        with transaction(self._session_factory) as session:
            result = session.execute(
                update(_AutomationConfigRow)
                .where(_AutomationConfigRow.channel_id == channel_id)
                .values(
                    total_processed=_AutomationConfigRow.total_processed + processed,
                    total_auto_replied=_AutomationConfigRow.total_auto_replied + auto_replied,
                )
            )
            if result.rowcount == 0:
                return None
            row = session.scalar(
                select(_AutomationConfigRow)
                .where(_AutomationConfigRow.channel_id == channel_id)
                .execution_options(populate_existing=True)
            )
            return self._record(row) if row is not None else None

    @staticmethod
    def _record(row: _AutomationConfigRow) -> AutomationConfig:
        quick_replies = tuple(
            QuickReply(id=item["id"], label=item["label"], text=item["text"])
            for item in json.loads(row.quick_replies_json or "[]")
        )
        return AutomationConfig(
            channel_id=row.channel_id,
            enabled=bool(row.enabled),
            auto_reply_enabled=bool(row.auto_reply_enabled),
            language=row.language,
            tone=row.tone,
            response_delay_seconds=row.response_delay_seconds,
            system_prompt=row.system_prompt,
            brand_name=row.brand_name,
            context_window=row.context_window,
            max_response_length=row.max_response_length,
            category_responses=json.loads(row.category_responses_json or "{}"),
            keyword_rules=json.loads(row.keyword_rules_json or "{}"),
            blacklisted_phrases=tuple(json.loads(row.blacklisted_phrases_json or "[]")),
            quick_replies=quick_replies,
            operating_hours=parse_operating_hours(json.loads(row.operating_hours_json or "{}")),
            out_of_office_message=row.out_of_office_message,
            total_processed=row.total_processed,
            total_auto_replied=row.total_auto_replied,
            created_at=coerce_utc(row.created_at),
            updated_at=coerce_utc(row.updated_at),
        )


def create_automation_settings_repository(*, backend: str, database_url: str) -> AutomationSettingsRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyAutomationSettingsRepository(database_url)
    return InMemoryAutomationSettingsRepository()


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class AutomationSettingsService:
    def __init__(self, *, repository: AutomationSettingsRepository) -> None:
        self._repository = repository

    def reset(self) -> None:
        self._repository.reset()

    def get(self, channel_id: str) -> AutomationConfig:
        stored = self._repository.find(channel_id)
        if stored is not None:
            return stored
        return AutomationConfig(channel_id=channel_id)

    def find(self, channel_id: str) -> AutomationConfig | None:
        return self._repository.find(channel_id)

    def upsert(self, channel_id: str, partial: Mapping[str, Any]) -> AutomationConfig:
        values = validate_settings_patch(partial)
        validate_config(AutomationConfig(channel_id=channel_id))

        def _merge(current: AutomationConfig) -> AutomationConfig:
            return validate_config(replace(current, **values))

        stored = self._repository.apply_settings(channel_id, _merge)
        logger.info("automation settings saved channel_id=%s fields=%s", channel_id, ",".join(sorted(values)))
        return stored

    def set_enabled(
        self,
        channel_id: str,
        *,
        enabled: bool | None = None,
        auto_reply_enabled: bool | None = None,
    ) -> AutomationConfig:
        if enabled is None and auto_reply_enabled is None:
            raise ValidationError("enabled", "at least one of enabled or auto_reply_enabled is required")
        flags: dict[str, bool] = {}
        if enabled is not None:
            flags["enabled"] = _require_bool("enabled", enabled)
        if auto_reply_enabled is not None:
            flags["auto_reply_enabled"] = _require_bool("auto_reply_enabled", auto_reply_enabled)

        stored = self._repository.apply_settings(channel_id, lambda current: replace(current, **flags))
        logger.info(
            "automation toggled channel_id=%s enabled=%s auto_reply_enabled=%s",
            channel_id,
            stored.enabled,
            stored.auto_reply_enabled,
        )
        return stored

    def increment_counters(self, channel_id: str, *, processed: int = 0, auto_replied: int = 0) -> AutomationConfig:
        if processed < 0 or auto_replied < 0:
            raise ValidationError("counters", "increments cannot be negative")
        stored = self._repository.increment_counters(channel_id, processed=processed, auto_replied=auto_replied)
        if stored is None:
            raise NotFoundError(f"no automation settings for channel {channel_id}")
        return stored
