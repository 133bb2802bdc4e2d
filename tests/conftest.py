"""Shared test fixtures for StopTrolling tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from stoptrolling.config import Settings
from stoptrolling.db import Database, LocalStorage


class ManualClock:
    """Clock whose ``now`` only moves when a test says so."""

    def __init__(self, current: datetime) -> None:
        self.current = current

    def now(self) -> datetime:
        return self.current

    def advance(self, **delta: float) -> None:
        self.current += timedelta(**delta)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(datetime(2025, 3, 4, 10, 15, tzinfo=timezone.utc))


@pytest.fixture
def database(tmp_path: Path) -> Database:
    return Database(tmp_path / "remote.db")


@pytest.fixture
def local(tmp_path: Path) -> LocalStorage:
    return LocalStorage(tmp_path / "local.db")


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        cron_secret="cron-secret",
        x_client_id="client-id",
        x_client_secret="client-secret",
        database_path=tmp_path / "remote.db",
        local_store_path=tmp_path / "local.db",
        classifier_url="http://classifier.test/api/openai/rate-log",
    )
