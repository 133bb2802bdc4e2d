"""Synchronises day records with the remote store."""

from __future__ import annotations

import sqlite3
from datetime import date
from typing import Dict, List, Optional, Tuple

from .db import Database
from .errors import RemoteReadFailed, RemoteWriteFailed
from .models import HourSlot, RemoteDay
from .timeutil import Clock, default_hours


class DayService:
    """Remote day/hour rows for one user, exposed as ledger-shaped values."""

    def __init__(self, database: Database, clock: Clock) -> None:
        self.database = database
        self.clock = clock

    def today(self) -> date:
        return self.clock.now().date()

    async def ensure_today(self, user_id: str) -> RemoteDay:
        return await self.ensure_day(user_id, self.today())

    async def ensure_day(self, user_id: str, day: date) -> RemoteDay:
        try:
            row = self.database.ensure_day(user_id, day)
        except sqlite3.Error as exc:
            raise RemoteWriteFailed("ensure_day", exc) from exc
        return RemoteDay(id=row["id"], date=day, goal=row["goal"] or "")

    async def find_day(self, user_id: str, day: date) -> Optional[RemoteDay]:
        try:
            row = self.database.get_day(user_id, day)
        except sqlite3.Error as exc:
            raise RemoteReadFailed("find_day", exc) from exc
        if row is None:
            return None
        return RemoteDay(id=row["id"], date=day, goal=row["goal"] or "")

    async def load_day_hours(self, day_id: str) -> List[HourSlot]:
        """Always 16 slots in canonical order; missing rows become empty, unrated slots."""
        try:
            rows = self.database.get_day_hours(day_id)
        except sqlite3.Error as exc:
            raise RemoteReadFailed("load_day_hours", exc) from exc

        by_hour: Dict[int, Tuple[Optional[str], Optional[int]]] = {}
        for row in rows:
            try:
                start_hour = int(row["start_hour"])
            except (TypeError, ValueError):
                continue
            by_hour[start_hour] = (row["body"], row["aligned"])

        hours: List[HourSlot] = []
        for slot in default_hours():
            remote = by_hour.get(slot.start_hour)
            if remote is None:
                hours.append(slot)
                continue
            body, aligned = remote
            hours.append(
                HourSlot(
                    start_hour=slot.start_hour,
                    body=body or "",
                    aligned=None if aligned is None else bool(aligned),
                )
            )
        return hours

    async def upsert_goal(self, day_id: str, goal: str) -> None:
        try:
            self.database.update_goal(day_id, goal)
        except sqlite3.Error as exc:
            raise RemoteWriteFailed("upsert_goal", exc) from exc

    async def upsert_hour(self, day_id: str, start_hour: int, body: str) -> None:
        try:
            self.database.upsert_hour_body(day_id, start_hour, body)
        except sqlite3.Error as exc:
            raise RemoteWriteFailed("upsert_hour", exc) from exc

    async def upsert_rating(self, day_id: str, start_hour: int, body: str, aligned: bool) -> None:
        try:
            self.database.upsert_hour_rating(day_id, start_hour, body, aligned)
        except sqlite3.Error as exc:
            raise RemoteWriteFailed("upsert_rating", exc) from exc

    async def clear_hour(self, day_id: str, start_hour: int) -> None:
        try:
            self.database.clear_hour(day_id, start_hour)
        except sqlite3.Error as exc:
            raise RemoteWriteFailed("clear_hour", exc) from exc


__all__ = ["DayService"]
