"""Silent refresh of stored posting tokens."""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Optional

import httpx

from .db import Database
from .errors import RefreshFailed, RefreshUnavailable, RemoteReadFailed, TokensMissing
from .models import TokenRecord
from .oauth import OAuthClient, compute_expires_at
from .timeutil import Clock

logger = logging.getLogger("stoptrolling.tokens")

REFRESH_SKEW = timedelta(seconds=60)


def needs_refresh(expires_at: Optional[datetime], now: datetime, skew: timedelta = REFRESH_SKEW) -> bool:
    return expires_at is None or expires_at - skew <= now


class TokenManager:
    def __init__(
        self,
        database: Database,
        oauth_client: OAuthClient,
        clock: Clock,
        skew: timedelta = REFRESH_SKEW,
    ) -> None:
        self.database = database
        self.oauth_client = oauth_client
        self.clock = clock
        self.skew = skew

    def load(self, user_id: str) -> TokenRecord:
        try:
            row = self.database.get_tokens(user_id)
        except sqlite3.Error as exc:
            raise RemoteReadFailed("load_tokens", exc) from exc
        if row is None or not row["access_token"]:
            raise TokensMissing("no posting tokens stored for user")
        return TokenRecord.from_row(row)

    async def refresh(self, refresh_token: str) -> TokenRecord:
        try:
            ok, payload = await self.oauth_client.refresh(refresh_token)
        except httpx.HTTPError as exc:
            raise RefreshFailed(f"token endpoint unreachable: {exc}") from exc
        if not ok:
            logger.warning("X OAuth refresh failed: %s", payload.get("error", "unknown_error"))
            raise RefreshFailed("refresh grant rejected", payload)
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise RefreshFailed("refresh response carried no access token")
        expires_at = compute_expires_at(
            payload.get("expires_at"), payload.get("expires_in"), self.clock.now()
        )
        if expires_at is None:
            raise RefreshFailed("refresh response carried no expiry")
        return TokenRecord(
            access_token=access_token,
            refresh_token=payload.get("refresh_token") or refresh_token,
            expires_at=expires_at,
            scope=payload.get("scope"),
            token_type=payload.get("token_type") or "bearer",
        )

    async def ensure_fresh(self, user_id: str, record: TokenRecord) -> TokenRecord:
        """Return a usable record, refreshing and re-storing it when close to expiry."""
        if not needs_refresh(record.expires_at, self.clock.now(), self.skew):
            return record
        if not record.refresh_token:
            raise RefreshUnavailable("token expired and no refresh token is stored")

        refreshed = await self.refresh(record.refresh_token)
        try:
            self.database.upsert_tokens(refreshed.to_row(user_id))
        except sqlite3.Error as exc:
            logger.warning("Failed to persist refreshed X tokens for %s: %s", user_id, exc)
        return refreshed

    async def get_valid(self, user_id: str) -> TokenRecord:
        return await self.ensure_fresh(user_id, self.load(user_id))


__all__ = ["TokenManager", "needs_refresh", "REFRESH_SKEW"]
