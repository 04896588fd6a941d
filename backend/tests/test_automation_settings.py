from __future__ import annotations

import threading
from datetime import datetime, time, timezone
from pathlib import Path

import pytest

from dm_automation.automation_settings import (
    AutomationSettingsService,
    InMemoryAutomationSettingsRepository,
    SqlAlchemyAutomationSettingsRepository,
    validate_settings_patch,
)
from dm_automation.errors import NotFoundError, ValidationError
from dm_automation.operating_hours import is_open, operating_hours_to_dict, parse_operating_hours


def _service() -> AutomationSettingsService:
    return AutomationSettingsService(repository=InMemoryAutomationSettingsRepository())


def test_get_returns_defaults_without_persisting() -> None:
    service = _service()

    config = service.get("channel-1")

    assert config.enabled is False
    assert config.auto_reply_enabled is False
    assert config.language == "de"
    assert config.tone == "friendly"
    assert config.context_window == 5
    assert config.max_response_length == 500
    assert service.find("channel-1") is None


def test_upsert_merges_partial_updates() -> None:
    service = _service()
    service.upsert("channel-1", {"enabled": True, "tone": "Professional", "keyword_rules": {"Preis": "Ab 20 EUR"}})

    updated = service.upsert("channel-1", {"max_response_length": 300})

    assert updated.enabled is True
    assert updated.tone == "professional"
    assert dict(updated.keyword_rules) == {"Preis": "Ab 20 EUR"}
    assert updated.max_response_length == 300
    assert updated.created_at is not None
    assert updated.updated_at is not None


@pytest.mark.parametrize(
    ("patch", "field"),
    [
        ({"max_response_length": 10}, "max_response_length"),
        ({"max_response_length": 5000}, "max_response_length"),
        ({"context_window": 0}, "context_window"),
        ({"context_window": 21}, "context_window"),
        ({"response_delay_seconds": -1}, "response_delay_seconds"),
        ({"language": "fr"}, "language"),
        ({"tone": "sarcastic"}, "tone"),
        ({"enabled": "yes"}, "enabled"),
        ({"total_processed": 5}, "total_processed"),
        ({"favourite_colour": "blue"}, "favourite_colour"),
    ],
)
def test_out_of_range_or_unknown_settings_are_rejected(patch: dict, field: str) -> None:
    service = _service()

    with pytest.raises(ValidationError) as exc_info:
        service.upsert("channel-1", patch)

    assert exc_info.value.field == field
    assert service.find("channel-1") is None


def test_operating_hours_are_validated() -> None:
    with pytest.raises(ValidationError, match="start must be before end"):
        validate_settings_patch(
            {"operating_hours": {"enabled": True, "timezone": "UTC", "hours": {"mon": {"start": "18:00", "end": "09:00"}}}}
        )
    with pytest.raises(ValidationError, match="unknown timezone"):
        validate_settings_patch({"operating_hours": {"enabled": True, "timezone": "Mars/Olympus"}})

    values = validate_settings_patch(
        {"operating_hours": {"enabled": True, "timezone": "Europe/Berlin", "hours": {"Mon": {"start": "09:00", "end": "17:30"}}}}
    )
    hours = values["operating_hours"]
    assert hours.enabled is True
    assert hours.hours["monday"].start == time(9, 0)
    assert hours.hours["monday"].end == time(17, 30)


def test_window_may_end_at_midnight() -> None:
    hours = parse_operating_hours(
        {"enabled": True, "timezone": "UTC", "hours": {"wed": {"start": "18:00", "end": "24:00"}}}
    )

    assert is_open(hours, datetime(2026, 10, 14, 23, 59, tzinfo=timezone.utc)) is True
    assert is_open(hours, datetime(2026, 10, 14, 17, 59, tzinfo=timezone.utc)) is False
    assert operating_hours_to_dict(hours)["hours"]["wednesday"] == {"start": "18:00", "end": "24:00"}
    with pytest.raises(ValidationError, match="expected HH:MM"):
        parse_operating_hours({"enabled": True, "hours": {"wed": {"start": "24:00", "end": "24:00"}}})


def test_duplicate_keyword_rules_ignoring_case_are_rejected() -> None:
    with pytest.raises(ValidationError, match="duplicate key"):
        validate_settings_patch({"keyword_rules": {"Preis": "a", "preis": "b"}})


def test_set_enabled_toggles_flags_only() -> None:
    service = _service()
    service.upsert("channel-1", {"tone": "casual"})

    toggled = service.set_enabled("channel-1", auto_reply_enabled=True)

    assert toggled.auto_reply_enabled is True
    assert toggled.enabled is False
    assert toggled.tone == "casual"
    with pytest.raises(ValidationError):
        service.set_enabled("channel-1")


def test_counters_cannot_be_written_through_settings_and_survive_updates() -> None:
    service = _service()
    service.upsert("channel-1", {"enabled": True})
    service.increment_counters("channel-1", processed=2, auto_replied=1)

    updated = service.upsert("channel-1", {"tone": "casual"})

    assert updated.total_processed == 2
    assert updated.total_auto_replied == 1


def test_increment_counters_requires_existing_settings() -> None:
    service = _service()
    with pytest.raises(NotFoundError):
        service.increment_counters("missing", processed=1)


def test_concurrent_counter_increments_are_exact() -> None:
    service = _service()
    service.upsert("channel-1", {"enabled": True})
    barrier = threading.Barrier(8)

    def worker() -> None:
        barrier.wait()
        for _ in range(50):
            service.increment_counters("channel-1", processed=1, auto_replied=1)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    config = service.get("channel-1")
    assert config.total_processed == 400
    assert config.total_auto_replied == 400


def test_sqlite_repository_round_trips_settings(tmp_path: Path) -> None:
    repository = SqlAlchemyAutomationSettingsRepository(f"sqlite:///{tmp_path / 'settings.db'}")
    service = AutomationSettingsService(repository=repository)

    service.upsert(
        "channel-1",
        {
            "enabled": True,
            "auto_reply_enabled": True,
            "keyword_rules": {"zeta": "Z", "alpha": "A"},
            "blacklisted_phrases": ["Kündigung"],
            "quick_replies": [{"id": "thanks", "label": "Danke", "text": "Vielen Dank!"}],
            "operating_hours": {"enabled": True, "timezone": "Europe/Berlin", "hours": {"fri": {"start": "10:00", "end": "14:00"}}},
        },
    )
    service.increment_counters("channel-1", processed=3, auto_replied=2)

    stored = service.get("channel-1")
    assert stored.enabled is True
    assert list(stored.keyword_rules) == ["zeta", "alpha"]
    assert stored.blacklisted_phrases == ("Kündigung",)
    assert stored.quick_replies[0].text == "Vielen Dank!"
    assert stored.operating_hours.hours["friday"].start == time(10, 0)
    assert stored.total_processed == 3
    assert stored.total_auto_replied == 2
    assert stored.updated_at is not None and stored.updated_at.tzinfo is not None
    assert repository.increment_counters("missing", processed=1, auto_replied=0) is None
