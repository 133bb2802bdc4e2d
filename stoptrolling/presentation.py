"""Read-only projections of today's ledger against the wall clock.

Everything here is a pure function of ``(record, today_key, now)``; the
:class:`ClockTicker` feeds fresh ``now`` values on a fixed interval.
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional, Union

from .models import BASE_HOUR, SLOT_COUNT, DayRecord, HourSlot
from .timeutil import Clock, format_hour, minutes_until, slot_range, ymd

QUIET_UNTIL_HOUR = BASE_HOUR


@dataclass(slots=True)
class Countdown:
    hours: int = 0
    minutes: int = 0


@dataclass(slots=True)
class TodayView:
    is_quiet_hours: bool
    current_index: Optional[int]
    current_entry: Optional[HourSlot]
    has_current_log: bool
    should_show_input: bool
    slot_label: str
    countdown: Countdown
    status_text: str


def is_quiet_hours(now: datetime) -> bool:
    return now.hour < QUIET_UNTIL_HOUR


def current_index(record: Optional[DayRecord], today_key: str, now: datetime) -> Optional[int]:
    if record is None or not record.hours:
        return None
    if ymd(now) != today_key:
        return None
    index = now.hour - record.hours[0].start_hour
    return index if 0 <= index < SLOT_COUNT else None


def current_entry(record: Optional[DayRecord], today_key: str, now: datetime) -> Optional[HourSlot]:
    index = current_index(record, today_key, now)
    if record is None or index is None or index >= len(record.hours):
        return None
    return record.hours[index]


def countdown(now: datetime) -> Countdown:
    """Time left until quiet hours end; zero outside quiet hours."""
    if not is_quiet_hours(now):
        return Countdown()
    wake = now.replace(hour=QUIET_UNTIL_HOUR, minute=0, second=0, microsecond=0)
    remaining = max(0.0, (wake - now).total_seconds())
    total_minutes = math.ceil(remaining / 60)
    return Countdown(hours=total_minutes // 60, minutes=total_minutes % 60)


def _plural(n: int, unit: str) -> str:
    return f"{n} {unit}{'' if n == 1 else 's'}"


def slot_label(entry: Optional[HourSlot], today_key: str, show_input: bool) -> str:
    if entry is None or not show_input:
        return ""
    start, end = slot_range(today_key, entry.start_hour)
    start_h, start_m = format_hour(start.hour)
    end_h, end_m = format_hour(end.hour)
    return f"{start_h} {start_m}–{end_h} {end_m}"


def status_text(entry: Optional[HourSlot], today_key: str, now: datetime) -> str:
    if is_quiet_hours(now):
        left = countdown(now)
        parts = []
        if left.hours:
            parts.append(_plural(left.hours, "hour"))
        if left.minutes:
            parts.append(_plural(left.minutes, "minute"))
        suffix = f"Come back in {' and '.join(parts)}." if parts else "Come back soon."
        return f"Goodnight. {suffix}"
    if entry is None:
        return ""

    start, end = slot_range(today_key, entry.start_hour, now.tzinfo)

    def label(minutes: int) -> str:
        if minutes <= 0:
            return "Almost time…"
        return f"Come back in {_plural(minutes, 'minute')}..."

    if now < start:
        return label(minutes_until(start, now))
    if now >= end:
        return "This hour has passed"
    return label(minutes_until(end, now))


def derive_today(record: Optional[DayRecord], today_key: str, now: datetime) -> TodayView:
    quiet = is_quiet_hours(now)
    index = current_index(record, today_key, now)
    entry = current_entry(record, today_key, now)
    has_log = bool(entry and entry.body.strip())
    show_input = not quiet and entry is not None and not has_log
    return TodayView(
        is_quiet_hours=quiet,
        current_index=index,
        current_entry=entry,
        has_current_log=has_log,
        should_show_input=show_input,
        slot_label=slot_label(entry, today_key, show_input),
        countdown=countdown(now),
        status_text=status_text(entry, today_key, now),
    )


Tick = Callable[[datetime], Union[None, Awaitable[None]]]


class ClockTicker:
    """Pushes ``clock.now()`` to a callback immediately and then every ``interval`` seconds."""

    def __init__(self, clock: Clock, callback: Tick, interval: float = 60.0) -> None:
        self.clock = clock
        self.callback = callback
        self.interval = interval
        self._task: Optional[asyncio.Task[None]] = None

    async def _run(self) -> None:
        while True:
            result = self.callback(self.clock.now())
            if asyncio.iscoroutine(result):
                await result
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        self.stop()
        self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None


__all__ = [
    "Countdown",
    "TodayView",
    "ClockTicker",
    "is_quiet_hours",
    "current_index",
    "current_entry",
    "countdown",
    "slot_label",
    "status_text",
    "derive_today",
]
