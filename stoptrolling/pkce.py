"""PKCE verifier/challenge/state generation and round-trip persistence."""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import secrets
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional
from urllib.parse import urlencode

from fastapi import Response

from .config import Settings
from .db import LocalStorage
from .errors import EnvironmentUnsupported
from .models import PkceState
from .timeutil import Clock, SystemClock

logger = logging.getLogger("stoptrolling.pkce")

AUTHORIZE_URL = "https://x.com/i/oauth2/authorize"
PKCE_CHARSET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~"
VERIFIER_LENGTH = 64
STATE_LENGTH = 32
PKCE_MAX_AGE = 600

VERIFIER_COOKIE = "x_pkce_verifier"
STATE_COOKIE = "x_oauth_state"
LOCAL_PREFIX = "stoptrolling:x:pkce:"


def build_random_string(length: int, alphabet: str = PKCE_CHARSET) -> str:
    try:
        return "".join(secrets.choice(alphabet) for _ in range(length))
    except NotImplementedError as exc:
        raise EnvironmentUnsupported("no secure random source available") from exc


def create_pkce_challenge(verifier: str) -> str:
    """S256 challenge: base64url(sha256(verifier)) without padding."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def build_authorize_url(settings: Settings, state: str, challenge: str) -> str:
    params = {
        "response_type": "code",
        "client_id": settings.x_client_id,
        "redirect_uri": settings.x_redirect_uri,
        "scope": settings.x_scopes,
        "state": state,
        "code_challenge": challenge,
        "code_challenge_method": "S256",
    }
    return f"{AUTHORIZE_URL}?{urlencode(params)}"


class PkceStore:
    """Keeps verifier and state in a cookie pair and mirrors the verifier in local storage.

    Values are read once: :meth:`consume` deletes both copies before returning.
    Mirrored entries older than ``PKCE_MAX_AGE`` seconds are ignored and pruned.
    """

    def __init__(
        self,
        local: Optional[LocalStorage] = None,
        secure: bool = False,
        clock: Optional[Clock] = None,
    ) -> None:
        self.local = local
        self.secure = secure
        self.clock = clock or SystemClock()

    def _is_fresh(self, created_at: Any) -> bool:
        try:
            age = self.clock.now() - datetime.fromisoformat(created_at)
        except (TypeError, ValueError):
            return False
        return age < timedelta(seconds=PKCE_MAX_AGE)

    def _read_mirror(self, raw: Optional[str]) -> Optional[str]:
        try:
            entry = json.loads(raw) if raw else None
        except ValueError:
            return None
        if not isinstance(entry, dict) or not self._is_fresh(entry.get("created_at")):
            return None
        verifier = entry.get("verifier")
        return verifier if isinstance(verifier, str) else None

    def prune(self) -> int:
        """Delete mirrored verifiers from abandoned authorizations."""
        if self.local is None:
            return 0
        removed = 0
        for key in self.local.keys(LOCAL_PREFIX):
            if self._read_mirror(self.local.get(key)) is None:
                self.local.delete(key)
                removed += 1
        return removed

    def persist(self, verifier: str, state: str, response: Response) -> None:
        if self.local is not None:
            try:
                self.prune()
                self.local.set(
                    f"{LOCAL_PREFIX}{state}",
                    json.dumps({"verifier": verifier, "created_at": self.clock.now().isoformat()}),
                )
            except sqlite3.Error as exc:
                logger.warning("Could not mirror PKCE verifier: %s", exc)
        for name, value in ((VERIFIER_COOKIE, verifier), (STATE_COOKIE, state)):
            response.set_cookie(
                name,
                value,
                max_age=PKCE_MAX_AGE,
                path="/",
                samesite="lax",
                secure=self.secure,
                httponly=True,
            )

    def consume(
        self,
        cookies: Mapping[str, str],
        response: Response,
        returned_state: Optional[str] = None,
    ) -> PkceState:
        """Read and delete the stored pair.

        Without cookies the mirror is looked up by ``returned_state``; a fresh
        hit stands in for the lost state cookie.
        """
        state = cookies.get(STATE_COOKIE, "")
        verifier = cookies.get(VERIFIER_COOKIE, "")
        response.delete_cookie(STATE_COOKIE, path="/")
        response.delete_cookie(VERIFIER_COOKIE, path="/")

        lookup = state or returned_state
        if self.local is not None and lookup:
            key = f"{LOCAL_PREFIX}{lookup}"
            try:
                stored = self._read_mirror(self.local.get(key))
                self.local.delete(key)
            except sqlite3.Error as exc:
                logger.warning("Could not read mirrored PKCE verifier: %s", exc)
                stored = None
            if stored and not state:
                state = lookup
            verifier = verifier or (stored or "")
        return PkceState(code_verifier=verifier, oauth_state=state)


def begin_authorization(settings: Settings, store: PkceStore, response: Response) -> str:
    """Create and persist fresh PKCE values; return the provider authorize URL."""
    verifier = build_random_string(VERIFIER_LENGTH)
    state = build_random_string(STATE_LENGTH)
    store.persist(verifier, state, response)
    return build_authorize_url(settings, state, create_pkce_challenge(verifier))


__all__ = [
    "PkceStore",
    "build_random_string",
    "create_pkce_challenge",
    "build_authorize_url",
    "begin_authorization",
    "PKCE_CHARSET",
]
