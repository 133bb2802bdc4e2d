"""In-memory day ledger backed by durable local storage.

Every mutation writes the whole record for its date straight through to the
local store. Durable write failures are logged and swallowed; the in-memory
copy stays authoritative for the rest of the session.
"""

from __future__ import annotations

import copy
import json
import logging
import sqlite3
from dataclasses import replace
from typing import Any, Dict, List, Optional

from .db import LocalStorage
from .models import BASE_HOUR, SLOT_COUNT, DayRecord, HourSlot
from .timeutil import canonical_start_hours, default_hours, is_ymd, parse_ymd

logger = logging.getLogger("stoptrolling.ledger")

PREFIX = "stoptrolling:day:"


def key_for(date_key: str, prefix: str = PREFIX) -> str:
    return f"{prefix}{date_key}"


def user_prefix(user_id: str) -> str:
    return f"stoptrolling:user:{user_id}:day:"


def _on_grid(record: DayRecord) -> DayRecord:
    """Merge stored slots onto the canonical grid by start hour; off-grid slots are dropped."""
    by_hour = {slot.start_hour: slot for slot in record.hours}
    return DayRecord(
        goal=record.goal,
        hours=[by_hour.get(slot.start_hour, slot) for slot in default_hours()],
    )


class DayLedger:
    """Date-keyed cache of :class:`DayRecord` objects with create-on-read semantics."""

    def __init__(self, storage: Optional[LocalStorage] = None, prefix: str = PREFIX) -> None:
        self._storage = storage
        self._prefix = prefix
        self._records: Dict[str, DayRecord] = {}

    # region Durable storage
    def _load(self, date_key: str) -> Optional[DayRecord]:
        if self._storage is None:
            return None
        try:
            raw = self._storage.get(key_for(date_key, self._prefix))
            return _on_grid(DayRecord.from_dict(json.loads(raw))) if raw else None
        except (sqlite3.Error, ValueError, TypeError, AttributeError) as exc:
            logger.warning("Could not read stored day %s: %s", date_key, exc)
            return None

    def _save(self, date_key: str, record: DayRecord) -> None:
        if self._storage is None:
            return
        try:
            self._storage.set(key_for(date_key, self._prefix), json.dumps(record.to_dict()))
        except (sqlite3.Error, OSError) as exc:
            logger.warning("Could not persist day %s: %s", date_key, exc)

    def _remove(self, date_key: str) -> None:
        if self._storage is None:
            return
        try:
            self._storage.delete(key_for(date_key, self._prefix))
        except (sqlite3.Error, OSError) as exc:
            logger.warning("Could not remove stored day %s: %s", date_key, exc)

    # endregion

    def _current(self, date_key: str) -> DayRecord:
        parse_ymd(date_key)
        return self._records.get(date_key) or DayRecord(goal="", hours=default_hours())

    def _commit(self, date_key: str, record: DayRecord) -> None:
        self._records[date_key] = record
        self._save(date_key, record)

    def get(self, date_key: str) -> Optional[DayRecord]:
        """Return a copy of the in-memory record, without loading or creating one."""
        if not is_ymd(date_key):
            return None
        record = self._records.get(date_key)
        return copy.deepcopy(record) if record else None

    def ensure(self, date_key: str, start_hour: int = BASE_HOUR, slots: int = SLOT_COUNT) -> DayRecord:
        parse_ymd(date_key)
        record = self._records.get(date_key)
        if record is None:
            record = self._load(date_key) or DayRecord(
                goal="", hours=default_hours(start_hour, slots)
            )
            self._commit(date_key, record)
        return copy.deepcopy(record)

    def replace_hours(self, date_key: str, hours: List[HourSlot]) -> None:
        expected = canonical_start_hours()
        if [h.start_hour for h in hours] != expected:
            raise ValueError("hours must cover the canonical 16-slot grid in order")
        record = self._current(date_key)
        self._commit(date_key, replace(record, hours=[copy.copy(h) for h in hours]))

    def set_hour(self, date_key: str, index: int, slot: HourSlot) -> None:
        record = self._current(date_key)
        current = record.hours[index]
        if slot.start_hour != current.start_hour:
            raise ValueError(
                f"slot {index} starts at {current.start_hour}, not {slot.start_hour}"
            )
        hours = list(record.hours)
        hours[index] = copy.copy(slot)
        self._commit(date_key, replace(record, hours=hours))

    def patch_hour(self, date_key: str, index: int, **patch: Any) -> None:
        """Update selected fields (``body``, ``aligned``) of one slot."""
        unknown = set(patch) - {"body", "aligned"}
        if unknown:
            raise TypeError(f"cannot patch slot fields: {sorted(unknown)}")
        record = self._current(date_key)
        hours = list(record.hours)
        hours[index] = replace(hours[index], **patch)
        self._commit(date_key, replace(record, hours=hours))

    def set_goal(self, date_key: str, goal: str) -> None:
        record = self._current(date_key)
        self._commit(date_key, replace(record, goal=goal))

    def reset(self, date_key: str) -> None:
        """Drop one date from memory and from durable storage."""
        parse_ymd(date_key)
        self._records.pop(date_key, None)
        self._remove(date_key)

    def load_all(self) -> List[str]:
        """Pull every stored date into memory without overwriting loaded records."""
        loaded = set(self._records)
        if self._storage is None:
            return sorted(loaded)
        try:
            keys = self._storage.keys(self._prefix)
        except sqlite3.Error as exc:
            logger.warning("Could not scan stored days: %s", exc)
            return sorted(loaded)
        for key in keys:
            date_key = key[len(self._prefix):]
            if not is_ymd(date_key):
                continue
            loaded.add(date_key)
            if date_key in self._records:
                continue
            self._records[date_key] = self._load(date_key) or DayRecord(
                goal="", hours=default_hours()
            )
        return sorted(loaded)

    def clear_all(self) -> None:
        """Remove every record from memory and every day key from durable storage."""
        if self._storage is not None:
            try:
                for key in self._storage.keys(self._prefix):
                    self._storage.delete(key)
            except sqlite3.Error as exc:
                logger.warning("Could not clear stored days: %s", exc)
        self._records.clear()


__all__ = ["DayLedger", "PREFIX", "key_for", "user_prefix"]
