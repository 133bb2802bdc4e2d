"""Tests for stoptrolling/day_service.py."""

import asyncio
import sqlite3
from datetime import date
from unittest.mock import patch

import pytest

from stoptrolling.day_service import DayService
from stoptrolling.errors import RemoteReadFailed, RemoteWriteFailed

DAY = date(2025, 3, 4)


def test_ensure_day_is_idempotent(database, clock):
    service = DayService(database, clock)

    async def scenario():
        first = await service.ensure_day("u1", DAY)
        second = await service.ensure_day("u1", DAY)
        today = await service.ensure_today("u1")
        return first, second, today

    first, second, today = asyncio.run(scenario())
    assert first.id == second.id == today.id
    assert first.goal == ""


def test_load_day_hours_fills_the_canonical_grid(database, clock):
    service = DayService(database, clock)

    async def scenario():
        day = await service.ensure_day("u1", DAY)
        await service.upsert_hour(day.id, 9, "wrote tests")
        await service.upsert_rating(day.id, 10, "scrolled", False)
        return await service.load_day_hours(day.id)

    hours = asyncio.run(scenario())
    assert [h.start_hour for h in hours] == list(range(8, 24))
    assert hours[0].body == "" and hours[0].aligned is None
    assert hours[1].body == "wrote tests" and hours[1].aligned is None
    assert hours[2].body == "scrolled" and hours[2].aligned is False


def test_body_upsert_keeps_existing_rating(database, clock):
    service = DayService(database, clock)

    async def scenario():
        day = await service.ensure_day("u1", DAY)
        await service.upsert_rating(day.id, 9, "draft", True)
        await service.upsert_hour(day.id, 9, "final")
        return await service.load_day_hours(day.id)

    hours = asyncio.run(scenario())
    assert hours[1].body == "final"
    assert hours[1].aligned is True


def test_clear_hour_resets_body_and_rating(database, clock):
    service = DayService(database, clock)

    async def scenario():
        day = await service.ensure_day("u1", DAY)
        await service.upsert_rating(day.id, 9, "draft", True)
        await service.clear_hour(day.id, 9)
        return await service.load_day_hours(day.id)

    hours = asyncio.run(scenario())
    assert hours[1].body == ""
    assert hours[1].aligned is None


def test_goal_round_trips_through_find_day(database, clock):
    service = DayService(database, clock)

    async def scenario():
        day = await service.ensure_day("u1", DAY)
        await service.upsert_goal(day.id, "ship it")
        return await service.find_day("u1", DAY), await service.find_day("u1", date(2025, 3, 5))

    found, missing = asyncio.run(scenario())
    assert found.goal == "ship it"
    assert missing is None


def test_store_errors_are_wrapped(database, clock):
    service = DayService(database, clock)
    boom = sqlite3.OperationalError("disk I/O error")

    with patch.object(database, "get_day_hours", side_effect=boom):
        with pytest.raises(RemoteReadFailed) as excinfo:
            asyncio.run(service.load_day_hours("missing"))
    assert excinfo.value.__cause__ is boom

    with patch.object(database, "update_goal", side_effect=boom):
        with pytest.raises(RemoteWriteFailed):
            asyncio.run(service.upsert_goal("missing", "goal"))
