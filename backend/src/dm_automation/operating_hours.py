from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, time, timezone
from typing import Any, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import ValidationError

WEEKDAYS: tuple[str, ...] = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)
_WEEKDAY_ALIASES = {name[:3]: name for name in WEEKDAYS}
_CLOCK_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")
# "24:00" closes a window at midnight and is only valid as an end.
END_OF_DAY = "24:00"


@dataclass(frozen=True)
class DayWindow:
    start: time
    end: time

    def contains(self, moment: time) -> bool:
        return self.start <= moment < self.end


@dataclass(frozen=True)
class OperatingHours:
    enabled: bool = False
    timezone: str = "UTC"
    hours: Mapping[str, DayWindow] = field(default_factory=dict)


def _parse_clock(value: Any, *, field_name: str, allow_end_of_day: bool = False) -> time:
    text = str(value or "").strip()
    if allow_end_of_day and text == END_OF_DAY:
        return time.max
    match = _CLOCK_RE.match(text)
    if match is None:
        raise ValidationError(field_name, f"expected HH:MM, got {text!r}")
    return time(int(match.group(1)), int(match.group(2)))


def _normalize_weekday(value: Any, *, field_name: str) -> str:
    key = str(value or "").strip().lower()
    key = _WEEKDAY_ALIASES.get(key, key)
    if key not in WEEKDAYS:
        raise ValidationError(field_name, f"unknown weekday {value!r}")
    return key


def _validate_timezone(value: Any, *, field_name: str) -> str:
    name = str(value or "UTC").strip() or "UTC"
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(field_name, f"unknown timezone {name!r}") from exc
    return name


def parse_operating_hours(value: Any, *, field_name: str = "operating_hours") -> OperatingHours:
    """Build an :class:`OperatingHours` from its JSON-shaped form."""
    if value is None:
        return OperatingHours()
    if isinstance(value, OperatingHours):
        return value
    if not isinstance(value, Mapping):
        raise ValidationError(field_name, "expected an object with enabled, timezone and hours")

    unknown = set(value) - {"enabled", "timezone", "hours"}
    if unknown:
        raise ValidationError(field_name, f"unknown keys: {', '.join(sorted(unknown))}")

    enabled = value.get("enabled", False)
    if not isinstance(enabled, bool):
        raise ValidationError(f"{field_name}.enabled", "expected a boolean")

    zone = _validate_timezone(value.get("timezone"), field_name=f"{field_name}.timezone")

    raw_hours = value.get("hours") or {}
    if not isinstance(raw_hours, Mapping):
        raise ValidationError(f"{field_name}.hours", "expected a weekday mapping")

    windows: dict[str, DayWindow] = {}
    for raw_day, raw_window in raw_hours.items():
        day = _normalize_weekday(raw_day, field_name=f"{field_name}.hours")
        day_field = f"{field_name}.hours.{day}"
        if day in windows:
            raise ValidationError(day_field, "weekday given twice")
        if isinstance(raw_window, DayWindow):
            window = raw_window
        elif isinstance(raw_window, Mapping):
            window = DayWindow(
                start=_parse_clock(raw_window.get("start"), field_name=f"{day_field}.start"),
                end=_parse_clock(raw_window.get("end"), field_name=f"{day_field}.end", allow_end_of_day=True),
            )
        else:
            raise ValidationError(day_field, "expected an object with start and end")
        if window.start >= window.end:
            raise ValidationError(day_field, "start must be before end")
        windows[day] = window

    return OperatingHours(enabled=enabled, timezone=zone, hours=windows)


def _format_clock(value: time) -> str:
    return END_OF_DAY if value == time.max else value.strftime("%H:%M")


def operating_hours_to_dict(hours: OperatingHours) -> dict[str, Any]:
    return {
        "enabled": hours.enabled,
        "timezone": hours.timezone,
        "hours": {
            day: {"start": _format_clock(window.start), "end": _format_clock(window.end)}
            for day, window in hours.hours.items()
        },
    }


def is_open(hours: OperatingHours, now: datetime) -> bool:
    """Return True when the channel is staffed at ``now``.

    Disabled schedules are always open. A weekday without a window is closed.
    Naive datetimes are read as UTC.
    """
    if not hours.enabled:
        return True
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(ZoneInfo(hours.timezone))
    window = hours.hours.get(WEEKDAYS[local.weekday()])
    if window is None:
        return False
    return window.contains(local.time().replace(second=0, microsecond=0))
