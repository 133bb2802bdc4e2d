"""Per-slot rating workflow and today's session bootstrap."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .day_service import DayService
from .ledger import DayLedger
from .models import RatingStatus, RemoteDay, User
from .rating import RatingService
from .session import SessionService
from .timeutil import Clock, ymd

logger = logging.getLogger("stoptrolling.controllers")

StatusListener = Callable[[int, RatingStatus], None]


class RatingController:
    """Drives ``idle -> pending -> settling -> idle`` for each slot, keyed by start hour.

    Statuses are ephemeral and never persisted; an absent entry means idle.
    Concurrent ratings of one slot are last-write-wins on the ledger.
    """

    def __init__(
        self,
        ledger: DayLedger,
        rating_service: RatingService,
        settle_ms: int = 600,
        on_status: Optional[StatusListener] = None,
    ) -> None:
        self.ledger = ledger
        self.rating_service = rating_service
        self.settle_ms = settle_ms
        self._on_status = on_status
        self._statuses: Dict[int, RatingStatus] = {}
        self._timers: Dict[int, asyncio.TimerHandle] = {}

    def status(self, start_hour: int) -> RatingStatus:
        return self._statuses.get(start_hour, RatingStatus.IDLE)

    def statuses(self) -> Dict[int, RatingStatus]:
        return dict(self._statuses)

    def _set(self, start_hour: int, status: RatingStatus) -> None:
        self._statuses[start_hour] = status
        if self._on_status:
            self._on_status(start_hour, status)

    def _clear(self, start_hour: int) -> None:
        if self._statuses.pop(start_hour, None) is not None and self._on_status:
            self._on_status(start_hour, RatingStatus.IDLE)

    def _cancel_timer(self, start_hour: int) -> None:
        timer = self._timers.pop(start_hour, None)
        if timer is not None:
            timer.cancel()

    def _settle_done(self, start_hour: int) -> None:
        self._timers.pop(start_hour, None)
        self._clear(start_hour)

    def _schedule_settle_cleanup(self, start_hour: int) -> None:
        # cancel and re-arm without yielding so only one timer can ever fire per slot
        self._cancel_timer(start_hour)
        loop = asyncio.get_running_loop()
        self._timers[start_hour] = loop.call_later(
            self.settle_ms / 1000, self._settle_done, start_hour
        )

    async def rate_and_patch(
        self, day_id: str, day_key: str, start_hour: int, body: str, goal: str = ""
    ) -> bool:
        self._cancel_timer(start_hour)
        self._set(start_hour, RatingStatus.PENDING)
        try:
            aligned = await self.rating_service.rate_and_persist(day_id, start_hour, body, goal)
            record = self.ledger.ensure(day_key)
            index = record.index_of(start_hour)
            if index != -1:
                self.ledger.patch_hour(day_key, index, aligned=aligned)
        except BaseException:
            self._clear(start_hour)
            raise
        self._set(start_hour, RatingStatus.SETTLING)
        self._schedule_settle_cleanup(start_hour)
        return aligned

    def cancel_all(self) -> None:
        for start_hour in list(self._timers):
            self._cancel_timer(start_hour)
        self._statuses.clear()


@dataclass(slots=True)
class TodaySession:
    user: User
    day: RemoteDay


class TodayController:
    """Bootstraps today's ledger record from the remote store and forwards edits."""

    def __init__(
        self,
        ledger: DayLedger,
        day_service: DayService,
        session_service: SessionService,
        clock: Clock,
    ) -> None:
        self.ledger = ledger
        self.day_service = day_service
        self.session_service = session_service
        self.today_key = ymd(clock.now())

    async def init(self) -> Optional[TodaySession]:
        self.ledger.ensure(self.today_key)
        user = await self.session_service.get_authed_user()
        if user is None:
            logger.info("No authenticated user; keeping the local ledger only")
            return None

        day = await self.day_service.ensure_today(user.id)
        hours = await self.day_service.load_day_hours(day.id)
        self.ledger.replace_hours(self.today_key, hours)
        self.ledger.set_goal(self.today_key, day.goal)
        return TodaySession(user=user, day=day)

    async def save_goal(self, day_id: str, goal: str) -> None:
        await self.day_service.upsert_goal(day_id, goal)
        self.ledger.set_goal(self.today_key, goal)

    async def save_hour(self, day_id: str, start_hour: int, body: str) -> None:
        await self.day_service.upsert_hour(day_id, start_hour, body)
        record = self.ledger.ensure(self.today_key)
        index = record.index_of(start_hour)
        if index != -1:
            self.ledger.patch_hour(self.today_key, index, body=body)

    async def clear_hour(self, day_id: str, start_hour: int) -> None:
        await self.day_service.clear_hour(day_id, start_hour)
        record = self.ledger.ensure(self.today_key)
        index = record.index_of(start_hour)
        if index != -1:
            self.ledger.patch_hour(self.today_key, index, body="", aligned=None)


__all__ = ["RatingController", "TodayController", "TodaySession"]
