"""Tests for stoptrolling/oauth.py."""

import asyncio
import sqlite3
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from stoptrolling.errors import (
    LoginRequired,
    MissingExpiry,
    OAuthExchangeError,
    TokenStoreFailed,
    UnexpectedState,
)
from stoptrolling.db import Database
from stoptrolling.models import PkceState
from stoptrolling.oauth import CallbackHandler, OAuthClient, compute_expires_at, redact
from stoptrolling.session import SessionService

NOW = datetime(2025, 3, 4, 10, 15, tzinfo=timezone.utc)


class TokenEndpoint:
    def __init__(self, status: int = 200, payload: dict | None = None) -> None:
        self.status = status
        self.payload = payload if payload is not None else {
            "access_token": "access-token-value",
            "refresh_token": "refresh-token-value",
            "expires_in": 7200,
            "scope": "tweet.write",
            "token_type": "bearer",
        }
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status, json=self.payload)


def _handler(settings, database, clock, endpoint):
    client = httpx.AsyncClient(transport=httpx.MockTransport(endpoint))
    return CallbackHandler(database, OAuthClient(settings, client=client), clock)


def _consumer(state="state-abc", verifier="verifier-123"):
    calls = []

    def consume():
        calls.append(1)
        return PkceState(code_verifier=verifier, oauth_state=state)

    return consume, calls


def test_compute_expires_at():
    assert compute_expires_at(None, 3600, NOW) == NOW + timedelta(hours=1)
    assert compute_expires_at(None, "120", NOW) == NOW + timedelta(minutes=2)
    literal = "2025-03-04T12:00:00+00:00"
    assert compute_expires_at(literal, 3600, NOW) == datetime(2025, 3, 4, 12, tzinfo=timezone.utc)
    assert compute_expires_at(None, None, NOW) is None
    assert compute_expires_at(None, "soon", NOW) is None


def test_redact_hides_the_middle():
    assert redact("abcdefgh12345678wxyz") == "abcdefgh…wxyz"
    assert redact("short") == "…"
    assert redact(None) == ""


def test_no_callback_in_progress(settings, database, clock):
    endpoint = TokenEndpoint()
    consume, calls = _consumer()
    handler = _handler(settings, database, clock, endpoint)
    assert asyncio.run(handler.handle(None, None, consume)) is None
    assert calls == []
    assert endpoint.requests == []


def test_state_mismatch_never_reaches_token_endpoint(settings, database, clock):
    endpoint = TokenEndpoint()
    consume, calls = _consumer(state="stored-state")
    handler = _handler(settings, database, clock, endpoint)
    with pytest.raises(UnexpectedState):
        asyncio.run(handler.handle("code", "attacker-state", consume, session_user_id="u1"))
    assert calls == [1]
    assert endpoint.requests == []


def test_successful_exchange_stores_tokens(settings, database, clock):
    endpoint = TokenEndpoint()
    consume, _ = _consumer()
    handler = _handler(settings, database, clock, endpoint)
    token = database.create_session("u1")

    record = asyncio.run(
        handler.handle("the-code", "state-abc", consume, session_service=SessionService(database, token))
    )
    assert record.expires_at == clock.now() + timedelta(hours=2)

    sent = parse_qs(endpoint.requests[0].content.decode())
    assert sent["grant_type"] == ["authorization_code"]
    assert sent["code_verifier"] == ["verifier-123"]
    assert endpoint.requests[0].headers["authorization"].startswith("Basic ")

    row = database.get_tokens("u1")
    assert row["access_token"] == "access-token-value"
    assert row["refresh_token"] == "refresh-token-value"
    assert datetime.fromisoformat(row["expires_at"]) == clock.now() + timedelta(hours=2)


def test_rejected_exchange(settings, database, clock):
    endpoint = TokenEndpoint(status=400, payload={"error": "invalid_grant"})
    consume, _ = _consumer()
    handler = _handler(settings, database, clock, endpoint)
    with pytest.raises(OAuthExchangeError) as excinfo:
        asyncio.run(handler.handle("code", "state-abc", consume, session_user_id="u1"))
    assert excinfo.value.marker == "oauth_error"


def test_anonymous_callback_requires_login(settings, database, clock):
    consume, _ = _consumer()
    handler = _handler(settings, database, clock, TokenEndpoint())
    with pytest.raises(LoginRequired):
        asyncio.run(handler.handle("code", "state-abc", consume, session_service=SessionService(database)))
    assert database.get_tokens("u1") is None


def test_missing_expiry_is_not_stored(settings, database, clock):
    endpoint = TokenEndpoint(payload={"access_token": "a", "refresh_token": "r"})
    consume, _ = _consumer()
    handler = _handler(settings, database, clock, endpoint)
    with pytest.raises(MissingExpiry):
        asyncio.run(handler.handle("code", "state-abc", consume, session_user_id="u1"))
    assert database.get_tokens("u1") is None


class FailingTokenStore(Database):
    def upsert_tokens(self, record):
        raise sqlite3.OperationalError("database is locked")


@pytest.mark.parametrize("expires_in", [1e20, float("inf"), float("nan"), 10**400, "9" * 30])
def test_compute_expires_at_out_of_range(expires_in):
    assert compute_expires_at(None, expires_in, NOW) is None


def test_huge_expiry_is_treated_as_missing(settings, database, clock):
    endpoint = TokenEndpoint(payload={"access_token": "a", "refresh_token": "r", "expires_in": 1e20})
    consume, _ = _consumer()
    handler = _handler(settings, database, clock, endpoint)
    with pytest.raises(MissingExpiry):
        asyncio.run(handler.handle("code", "state-abc", consume, session_user_id="u1"))
    assert database.get_tokens("u1") is None


def test_store_failure_raises_token_store_failed(settings, tmp_path, clock):
    handler = _handler(settings, FailingTokenStore(tmp_path / "locked.db"), clock, TokenEndpoint())
    consume, _ = _consumer()
    with pytest.raises(TokenStoreFailed) as excinfo:
        asyncio.run(handler.handle("code", "state-abc", consume, session_user_id="u1"))
    assert excinfo.value.marker == "token_store_failed"
