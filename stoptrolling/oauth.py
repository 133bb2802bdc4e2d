"""OAuth2 token endpoint client and the authorization-code callback pipeline.

The callback runs as a chain of hard gates. Each failure raises an
:class:`~stoptrolling.errors.OAuthCallbackError` whose ``marker`` is echoed
back to the browser as ``/?x=<marker>``.
"""

from __future__ import annotations

import logging
import math
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

import httpx

from .config import Settings
from .db import Database
from .errors import (
    LoginRequired,
    MissingExpiry,
    OAuthExchangeError,
    TokenStoreFailed,
    UnexpectedState,
)
from .models import PkceState, TokenRecord
from .session import SessionService
from .timeutil import Clock

logger = logging.getLogger("stoptrolling.oauth")

TOKEN_URL = "https://api.x.com/2/oauth2/token"


def redact(token: Optional[str]) -> str:
    if not token:
        return ""
    if len(token) <= 12:
        return "…"
    return f"{token[:8]}…{token[-4:]}"


def compute_expires_at(expires_at: Any, expires_in: Any, now: datetime) -> Optional[datetime]:
    """Absolute expiry: a literal instant wins, else ``now + expires_in`` seconds."""
    if isinstance(expires_at, str) and expires_at:
        try:
            parsed = datetime.fromisoformat(expires_at)
        except ValueError:
            parsed = None
        if parsed is not None:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=now.tzinfo)
    seconds: Optional[float] = None
    if isinstance(expires_in, bool):
        seconds = None
    elif isinstance(expires_in, (int, float)):
        try:
            seconds = float(expires_in)
        except OverflowError:
            seconds = None
    elif isinstance(expires_in, str):
        try:
            seconds = float(int(expires_in.strip()))
        except (ValueError, OverflowError):
            seconds = None
    if seconds is None or not math.isfinite(seconds):
        return None
    try:
        return now + timedelta(seconds=seconds)
    except OverflowError:
        return None


class OAuthClient:
    """Token endpoint calls authenticated with HTTP Basic client credentials."""

    def __init__(
        self,
        settings: Settings,
        client: Optional[httpx.AsyncClient] = None,
        token_url: str = TOKEN_URL,
    ) -> None:
        self.settings = settings
        self.token_url = token_url
        self._client = client or httpx.AsyncClient(timeout=settings.oauth_timeout)

    async def close(self) -> None:
        await self._client.aclose()

    async def token_request(self, data: Dict[str, str]) -> Tuple[bool, Dict[str, Any]]:
        response = await self._client.post(
            self.token_url,
            data=data,
            auth=httpx.BasicAuth(self.settings.x_client_id, self.settings.x_client_secret),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        return response.is_success, payload

    async def exchange_code(self, code: str, verifier: str) -> Dict[str, Any]:
        try:
            ok, tokens = await self.token_request(
                {
                    "grant_type": "authorization_code",
                    "redirect_uri": self.settings.x_redirect_uri,
                    "code": code,
                    "code_verifier": verifier,
                }
            )
        except httpx.HTTPError as exc:
            raise OAuthExchangeError(f"token endpoint unreachable: {exc}") from exc
        if not ok:
            logger.warning("X OAuth exchange failed: %s", tokens.get("error", "unknown_error"))
            raise OAuthExchangeError("token exchange rejected")
        if not isinstance(tokens.get("access_token"), str):
            raise OAuthExchangeError("missing access token in OAuth response")
        return tokens

    async def refresh(self, refresh_token: str) -> Tuple[bool, Dict[str, Any]]:
        return await self.token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token}
        )


class CallbackHandler:
    def __init__(self, database: Database, oauth_client: OAuthClient, clock: Clock) -> None:
        self.database = database
        self.oauth_client = oauth_client
        self.clock = clock

    async def _resolve_user_id(
        self, session_user_id: Optional[str], session_service: Optional[SessionService]
    ) -> Optional[str]:
        if session_user_id:
            return session_user_id
        if session_service is None:
            return None
        user = await session_service.get_authed_user()
        return user.id if user else None

    async def handle(
        self,
        code: Optional[str],
        state: Optional[str],
        consume_pkce: Callable[[], PkceState],
        session_user_id: Optional[str] = None,
        session_service: Optional[SessionService] = None,
    ) -> Optional[TokenRecord]:
        """Run the callback; ``None`` means no callback was in progress."""
        if not code or not state:
            return None

        stored = consume_pkce()
        if state != stored.oauth_state or not stored.code_verifier:
            raise UnexpectedState("returned state does not match the stored state")

        tokens = await self.oauth_client.exchange_code(code, stored.code_verifier)
        logger.debug(
            "X OAuth exchange ok: access=%s refresh=%s",
            redact(tokens.get("access_token")),
            redact(tokens.get("refresh_token")),
        )

        user_id = await self._resolve_user_id(session_user_id, session_service)
        if not user_id:
            raise LoginRequired("no signed-in user to attach tokens to")

        expires_at = compute_expires_at(
            tokens.get("expires_at"), tokens.get("expires_in"), self.clock.now()
        )
        if expires_at is None:
            raise MissingExpiry("OAuth response carried neither expires_at nor expires_in")

        record = TokenRecord(
            access_token=tokens["access_token"],
            refresh_token=tokens.get("refresh_token"),
            expires_at=expires_at,
            scope=tokens.get("scope"),
            token_type=tokens.get("token_type") or "bearer",
        )
        try:
            self.database.upsert_tokens(record.to_row(user_id))
        except sqlite3.Error as exc:
            logger.error("Failed to persist X tokens for %s: %s", user_id, exc)
            raise TokenStoreFailed(str(exc)) from exc
        return record


__all__ = ["OAuthClient", "CallbackHandler", "compute_expires_at", "redact", "TOKEN_URL"]
