"""Daily digest: score and glyph line for a user's previous local day.

One periodic trigger serves every timezone: without an explicit date
override a user is only processed during the first minutes after their
local midnight.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import sqlite3
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .day_service import DayService
from .db import Database
from .errors import (
    RefreshFailed,
    RefreshUnavailable,
    RemoteReadFailed,
    TokensMissing,
    XApiError,
)
from .models import SLOT_COUNT, DailyDigest, DigestResult, HourSlot
from .timeutil import Clock
from .tokens import TokenManager
from .x_client import XClient

logger = logging.getLogger("stoptrolling.digest")

ALIGNED_GLYPH = "\U0001F7E2"
MISALIGNED_GLYPH = "\U0001F534"
NEUTRAL_GLYPH = "⚪"
SIGNATURE = "stoptrolling[dot]app"
DEFAULT_WINDOW = timedelta(minutes=15)


# region Composition
def build_dots(hours: Sequence[HourSlot]) -> List[Optional[bool]]:
    dots = [slot.aligned for slot in hours[:SLOT_COUNT]]
    return dots + [None] * (SLOT_COUNT - len(dots))


def compute_score(dots: Sequence[Optional[bool]]) -> int:
    good = sum(1 for d in dots if d is True)
    bad = sum(1 for d in dots if d is False)
    raw = ((good + bad) / SLOT_COUNT) * 100 + good - bad
    # half-up rounding, so 12.5 scores 13
    return max(0, min(100, math.floor(raw + 0.5)))


def render_line(dots: Sequence[Optional[bool]]) -> str:
    glyphs = {True: ALIGNED_GLYPH, False: MISALIGNED_GLYPH, None: NEUTRAL_GLYPH}
    return "".join(glyphs[d] for d in dots)


def format_header(day: date) -> str:
    return f"{day:%a} {day:%b} {day.day}, {day.year}"


def compose_digest(day: date, hours: Sequence[HourSlot], signature: str = SIGNATURE) -> DailyDigest:
    dots = build_dots(hours)
    score = compute_score(dots)
    text = f"{format_header(day)} | Score: {score} | {signature}\n{render_line(dots)}"
    return DailyDigest(date=day, dots=dots, score=score, text=text)


# endregion


# region Local-midnight gating
def local_target_date(now: datetime, tz: ZoneInfo, override: Optional[date] = None) -> date:
    """The day to summarise: the override if given, else the user's local yesterday."""
    if override is not None:
        return override
    return now.astimezone(tz).date() - timedelta(days=1)


def in_midnight_window(now: datetime, tz: ZoneInfo, window: timedelta = DEFAULT_WINDOW) -> bool:
    local_now = now.astimezone(tz)
    midnight = datetime.combine(local_now.date(), time.min, tzinfo=tz)
    elapsed = local_now - midnight
    return timedelta(0) <= elapsed < window


# endregion


@dataclass(slots=True)
class DigestReport:
    ran_for: int
    dry_run: bool
    date_override: Optional[date] = None
    results: List[DigestResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ran_for": self.ran_for,
            "date_override": self.date_override.isoformat() if self.date_override else None,
            "dry_run": self.dry_run,
            "results": [r.to_dict() for r in self.results],
        }


class DigestScheduler:
    """Builds and posts each eligible user's digest; one user's failure never stops the batch."""

    def __init__(
        self,
        database: Database,
        day_service: DayService,
        token_manager: TokenManager,
        x_client: XClient,
        clock: Clock,
        window: timedelta = DEFAULT_WINDOW,
        signature: str = SIGNATURE,
    ) -> None:
        self.database = database
        self.day_service = day_service
        self.token_manager = token_manager
        self.x_client = x_client
        self.clock = clock
        self.window = window
        self.signature = signature

    async def preview(self, user_id: str, day: date) -> Optional[DailyDigest]:
        remote_day = await self.day_service.find_day(user_id, day)
        if remote_day is None:
            return None
        hours = await self.day_service.load_day_hours(remote_day.id)
        return compose_digest(day, hours, self.signature)

    async def run_for_user(
        self,
        user_id: str,
        timezone_name: str,
        now: datetime,
        dry_run: bool = False,
        date_override: Optional[date] = None,
    ) -> DigestResult:
        try:
            tz = ZoneInfo(timezone_name)
        except (ZoneInfoNotFoundError, ValueError):
            return DigestResult(user_id, False, f"unknown timezone {timezone_name}")

        if date_override is None and not in_midnight_window(now, tz, self.window):
            return DigestResult(user_id, False, "outside midnight window")
        target = local_target_date(now, tz, date_override)
        logger.info("[user %s] tz=%s now=%s target=%s", user_id, timezone_name, now.isoformat(), target)

        try:
            remote_day = await self.day_service.find_day(user_id, target)
        except RemoteReadFailed:
            remote_day = None
        if remote_day is None:
            return DigestResult(user_id, False, f"no day for {target.isoformat()}")

        try:
            hours = await self.day_service.load_day_hours(remote_day.id)
        except RemoteReadFailed:
            return DigestResult(user_id, False, "hours query failed")
        digest = compose_digest(target, hours, self.signature)

        try:
            tokens = self.token_manager.load(user_id)
        except (TokensMissing, RemoteReadFailed):
            return DigestResult(user_id, False, "no x tokens")

        try:
            tokens = await self.token_manager.ensure_fresh(user_id, tokens)
        except RefreshUnavailable:
            return DigestResult(user_id, False, "expired & no refresh token")
        except RefreshFailed:
            return DigestResult(user_id, False, "refresh_failed")

        if dry_run:
            return DigestResult(user_id, True, "dry_run")

        try:
            await self.x_client.create_tweet(tokens.access_token, digest.text)
        except XApiError as exc:
            return DigestResult(user_id, False, f"x post failed: {json.dumps(exc.detail)}")
        return DigestResult(user_id, True)

    async def run(
        self,
        now: Optional[datetime] = None,
        dry_run: bool = False,
        date_override: Optional[date] = None,
    ) -> DigestReport:
        now = now or self.clock.now()
        try:
            users = self.database.get_users_with_timezone()
        except sqlite3.Error as exc:
            raise RemoteReadFailed("list_users", exc) from exc

        logger.info("Digest run at %s for %d users (dry_run=%s)", now.isoformat(), len(users), dry_run)
        report = DigestReport(ran_for=len(users), dry_run=dry_run, date_override=date_override)
        for user in users:
            user_id = user["user_id"]
            try:
                result = await self.run_for_user(
                    user_id, user["timezone"], now, dry_run, date_override
                )
            except Exception as exc:  # noqa: BLE001
                logger.error("Digest failed for %s: %s", user_id, exc)
                result = DigestResult(user_id, False, str(exc) or "unknown")
            report.results.append(result)
        posted = sum(1 for r in report.results if r.ok)
        logger.info("Digest run complete: %d/%d ok", posted, len(report.results))
        return report

    async def run_periodically(self, interval_seconds: float) -> None:
        while True:
            try:
                await self.run()
            except RemoteReadFailed as exc:
                logger.error("Digest run failed: %s", exc)
            await asyncio.sleep(interval_seconds)


__all__ = [
    "DigestScheduler",
    "DigestReport",
    "build_dots",
    "compute_score",
    "render_line",
    "format_header",
    "compose_digest",
    "local_target_date",
    "in_midnight_window",
]
