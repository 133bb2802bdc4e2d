"""Resolves the signed-in user from a session token."""

from __future__ import annotations

import sqlite3
from typing import Optional

from .db import Database
from .errors import RemoteReadFailed
from .models import User

SESSION_COOKIE = "st_session"


class SessionService:
    def __init__(self, database: Database, token: Optional[str] = None) -> None:
        self.database = database
        self.token = token

    async def get_authed_user(self) -> Optional[User]:
        if not self.token:
            return None
        try:
            user_id = self.database.get_session_user(self.token)
        except sqlite3.Error as exc:
            raise RemoteReadFailed("get_authed_user", exc) from exc
        return User(id=user_id) if user_id else None


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip() or None
    return None


__all__ = ["SessionService", "SESSION_COOKIE", "bearer_token"]
