"""MCP server exposing StopTrolling day and digest tools."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from mcp.server.fastmcp import FastMCP

from .config import load_settings
from .day_service import DayService
from .db import Database
from .digest import DigestScheduler
from .oauth import OAuthClient
from .timeutil import SystemClock, parse_ymd, range_label
from .tokens import TokenManager
from .x_client import XClient

mcp = FastMCP("stoptrolling")

_settings = load_settings()
_database = Database(_settings.database_path)
_clock = SystemClock(_settings.app_timezone)
_day_service = DayService(_database, _clock)
_token_manager = TokenManager(_database, OAuthClient(_settings), _clock)
_scheduler = DigestScheduler(
    _database,
    _day_service,
    _token_manager,
    XClient(_settings.post_timeout),
    _clock,
    window=timedelta(minutes=_settings.digest_window_minutes),
)
_run_lock = asyncio.Lock()


@mcp.tool()
async def get_day(user_id: str, date: Optional[str] = None) -> dict:
    """Return a user's goal and hourly log for the date (defaults to today)."""

    day = parse_ymd(date) if date else _day_service.today()
    remote_day = await _day_service.find_day(user_id, day)
    if remote_day is None:
        return {"date": day.isoformat(), "day": None}
    hours = await _day_service.load_day_hours(remote_day.id)
    return {
        "date": day.isoformat(),
        "day": {
            "goal": remote_day.goal,
            "hours": [
                {"label": range_label(h.start_hour), **h.to_dict()} for h in hours
            ],
        },
    }


@mcp.tool()
async def open_session(user_id: str, timezone: Optional[str] = None) -> dict:
    """Create a session token for a user, recording their timezone when given."""

    if timezone:
        ZoneInfo(timezone)
        _database.upsert_user(user_id, timezone)
    token = _database.create_session(user_id)
    return {"user_id": user_id, "session_token": token}


@mcp.tool()
async def preview_digest(user_id: str, date: str) -> dict:
    """Compose the digest text for a user's day without posting it."""

    day = parse_ymd(date)
    digest = await _scheduler.preview(user_id, day)
    if digest is None:
        return {"date": day.isoformat(), "digest": None}
    return {
        "date": day.isoformat(),
        "digest": {"score": digest.score, "text": digest.text},
    }


@mcp.tool()
async def post_dailies(dry_run: bool = True, date_override: Optional[str] = None) -> dict:
    """Run the daily digest for every eligible user."""

    override = parse_ymd(date_override) if date_override else None
    async with _run_lock:
        report = await _scheduler.run(dry_run=dry_run, date_override=override)
    return report.to_dict()


__all__ = ["mcp", "get_day", "open_session", "preview_digest", "post_dailies"]
