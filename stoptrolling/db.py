"""SQLite persistence layer for StopTrolling."""

from __future__ import annotations

import secrets
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

Connection = sqlite3.Connection
Row = sqlite3.Row


class Database:
    """Authoritative row store for days, hour slots, users and posting tokens."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize()

    @contextmanager
    def connect(self) -> Iterator[Connection]:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _initialize(self) -> None:
        with self.connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT PRIMARY KEY,
                    timezone TEXT
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS days (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    date TEXT NOT NULL,
                    goal TEXT NOT NULL DEFAULT '',
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE(user_id, date)
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS day_hours (
                    day_id TEXT NOT NULL,
                    start_hour INTEGER NOT NULL,
                    body TEXT NOT NULL DEFAULT '',
                    aligned INTEGER,
                    PRIMARY KEY(day_id, start_hour),
                    FOREIGN KEY(day_id) REFERENCES days(id)
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS x_tokens (
                    user_id TEXT PRIMARY KEY,
                    access_token TEXT NOT NULL,
                    refresh_token TEXT,
                    expires_at TEXT,
                    scope TEXT,
                    token_type TEXT,
                    updated_at TEXT
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    token TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            conn.commit()

    # region Users
    def upsert_user(self, user_id: str, timezone_name: str | None) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO users (user_id, timezone)
                VALUES (?, ?)
                ON CONFLICT(user_id) DO UPDATE SET timezone=excluded.timezone
                """,
                (user_id, timezone_name),
            )
            conn.commit()

    def get_users_with_timezone(self) -> List[Row]:
        with self.connect() as conn:
            cursor = conn.execute(
                "SELECT * FROM users WHERE timezone IS NOT NULL ORDER BY user_id"
            )
            return cursor.fetchall()

    # endregion

    # region Days
    def ensure_day(self, user_id: str, day: date) -> Row:
        """Insert the (user, date) row if missing and return it; the UNIQUE key guards races."""
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO days (id, user_id, date)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id, date) DO NOTHING
                """,
                (uuid.uuid4().hex, user_id, day.isoformat()),
            )
            conn.commit()
            cursor = conn.execute(
                "SELECT id, date, goal FROM days WHERE user_id = ? AND date = ?",
                (user_id, day.isoformat()),
            )
            return cursor.fetchone()

    def get_day(self, user_id: str, day: date) -> Optional[Row]:
        with self.connect() as conn:
            cursor = conn.execute(
                "SELECT id, date, goal FROM days WHERE user_id = ? AND date = ?",
                (user_id, day.isoformat()),
            )
            return cursor.fetchone()

    def update_goal(self, day_id: str, goal: str) -> None:
        with self.connect() as conn:
            conn.execute("UPDATE days SET goal = ? WHERE id = ?", (goal, day_id))
            conn.commit()

    # endregion

    # region Hours
    def get_day_hours(self, day_id: str) -> List[Row]:
        with self.connect() as conn:
            cursor = conn.execute(
                """
                SELECT start_hour, body, aligned
                FROM day_hours
                WHERE day_id = ?
                ORDER BY start_hour
                """,
                (day_id,),
            )
            return cursor.fetchall()

    def upsert_hour_body(self, day_id: str, start_hour: int, body: str) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO day_hours (day_id, start_hour, body)
                VALUES (?, ?, ?)
                ON CONFLICT(day_id, start_hour) DO UPDATE SET body=excluded.body
                """,
                (day_id, start_hour, body),
            )
            conn.commit()

    def upsert_hour_rating(self, day_id: str, start_hour: int, body: str, aligned: bool) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO day_hours (day_id, start_hour, body, aligned)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(day_id, start_hour) DO UPDATE SET
                    body=excluded.body,
                    aligned=excluded.aligned
                """,
                (day_id, start_hour, body, int(aligned)),
            )
            conn.commit()

    def clear_hour(self, day_id: str, start_hour: int) -> None:
        with self.connect() as conn:
            conn.execute(
                "UPDATE day_hours SET body = '', aligned = NULL WHERE day_id = ? AND start_hour = ?",
                (day_id, start_hour),
            )
            conn.commit()

    # endregion

    # region Tokens
    def upsert_tokens(self, record: Dict[str, Any]) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO x_tokens (user_id, access_token, refresh_token, expires_at,
                                      scope, token_type, updated_at)
                VALUES (:user_id, :access_token, :refresh_token, :expires_at,
                        :scope, :token_type, :updated_at)
                ON CONFLICT(user_id) DO UPDATE SET
                    access_token=excluded.access_token,
                    refresh_token=excluded.refresh_token,
                    expires_at=excluded.expires_at,
                    scope=excluded.scope,
                    token_type=excluded.token_type,
                    updated_at=excluded.updated_at
                """,
                {**record, "updated_at": datetime.now(timezone.utc).isoformat()},
            )
            conn.commit()

    def get_tokens(self, user_id: str) -> Optional[Row]:
        with self.connect() as conn:
            cursor = conn.execute(
                """
                SELECT access_token, refresh_token, expires_at, scope, token_type
                FROM x_tokens WHERE user_id = ?
                """,
                (user_id,),
            )
            return cursor.fetchone()

    # endregion

    # region Sessions
    def create_session(self, user_id: str) -> str:
        token = secrets.token_urlsafe(32)
        with self.connect() as conn:
            conn.execute(
                "INSERT INTO sessions (token, user_id) VALUES (?, ?)", (token, user_id)
            )
            conn.commit()
        return token

    def get_session_user(self, token: str) -> Optional[str]:
        with self.connect() as conn:
            cursor = conn.execute("SELECT user_id FROM sessions WHERE token = ?", (token,))
            row = cursor.fetchone()
            return row["user_id"] if row else None

    # endregion


class LocalStorage:
    """Durable key/value store standing in for the client's local storage."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self.connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS local_storage (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )
            conn.commit()

    @contextmanager
    def connect(self) -> Iterator[Connection]:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def get(self, key: str) -> Optional[str]:
        with self.connect() as conn:
            cursor = conn.execute("SELECT value FROM local_storage WHERE key = ?", (key,))
            row = cursor.fetchone()
            return row["value"] if row else None

    def set(self, key: str, value: str) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO local_storage (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (key, value),
            )
            conn.commit()

    def delete(self, key: str) -> None:
        with self.connect() as conn:
            conn.execute("DELETE FROM local_storage WHERE key = ?", (key,))
            conn.commit()

    def keys(self, prefix: str = "") -> List[str]:
        with self.connect() as conn:
            cursor = conn.execute(
                "SELECT key FROM local_storage WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(prefix), prefix),
            )
            return [row["key"] for row in cursor.fetchall()]


__all__ = ["Database", "LocalStorage"]
