"""Slot grid, date key and countdown helpers."""

from __future__ import annotations

import math
import re
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Protocol
from zoneinfo import ZoneInfo

from .errors import InvalidDate
from .models import BASE_HOUR, SLOT_COUNT, HourSlot

_YMD = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock pinned to one timezone."""

    def __init__(self, tz: tzinfo | str = timezone.utc) -> None:
        self.tz = ZoneInfo(tz) if isinstance(tz, str) else tz

    def now(self) -> datetime:
        return datetime.now(self.tz)


def ymd(d: date | datetime) -> str:
    """YYYY-MM-DD for a date, or for the local date of a datetime."""
    if isinstance(d, datetime):
        d = d.date()
    return d.isoformat()


def is_ymd(value: object) -> bool:
    if not isinstance(value, str) or not _YMD.match(value):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def parse_ymd(value: object) -> date:
    if not is_ymd(value):
        raise InvalidDate(value)
    return date.fromisoformat(value)  # type: ignore[arg-type]


def canonical_start_hours(start_hour: int = BASE_HOUR, slots: int = SLOT_COUNT) -> list[int]:
    return [(start_hour + i) % 24 for i in range(slots)]


def default_hours(start_hour: int = BASE_HOUR, slots: int = SLOT_COUNT) -> list[HourSlot]:
    """Empty skeleton for one day: 08:00 through 24:00, last slot is 23-24."""
    return [HourSlot(start_hour=h) for h in canonical_start_hours(start_hour, slots)]


def end_hour_of(start_hour: int) -> int:
    return 24 if start_hour == 23 else start_hour + 1


def slot_range(date_iso: str, start_hour: int, tz: tzinfo | None = None) -> tuple[datetime, datetime]:
    """Start and end instants of a slot on the given date."""
    day = parse_ymd(date_iso)
    start = datetime.combine(day, time(start_hour % 24), tzinfo=tz)
    end = start + timedelta(hours=end_hour_of(start_hour) - start_hour)
    return start, end


def minutes_until(target: datetime, now: datetime) -> int:
    """Whole minutes (rounded up, never negative) from ``now`` until ``target``."""
    seconds = (target - now).total_seconds()
    return max(0, math.ceil(seconds / 60))


def format_hour(hour: int) -> tuple[int, str]:
    hour12 = ((hour + 11) % 12) + 1
    meridiem = "AM" if hour < 12 else "PM"
    return hour12, meridiem


def range_label(start_hour: int) -> str:
    """Label like ``8–9AM`` or ``11AM–12PM``."""
    start_h, start_m = format_hour(start_hour)
    end_h, end_m = format_hour(end_hour_of(start_hour) % 24)
    if start_m == end_m:
        return f"{start_h}–{end_h}{end_m}"
    return f"{start_h}{start_m}–{end_h}{end_m}"


__all__ = [
    "Clock",
    "SystemClock",
    "ymd",
    "is_ymd",
    "parse_ymd",
    "canonical_start_hours",
    "default_hours",
    "end_hour_of",
    "slot_range",
    "minutes_until",
    "format_hour",
    "range_label",
]
