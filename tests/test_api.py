"""Tests for stoptrolling/api.py."""

import json
import sqlite3
from dataclasses import replace
from datetime import date, timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

from stoptrolling.api import create_app
from stoptrolling.classifier import LogClassifier
from stoptrolling.db import Database
from stoptrolling.models import TokenRecord
from stoptrolling.oauth import OAuthClient
from stoptrolling.x_client import XClient


def _token_endpoint(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        200,
        json={"access_token": "access-token-value", "refresh_token": "refresh", "expires_in": 7200},
    )


def _x_api(request: httpx.Request) -> httpx.Response:
    if request.url.host == "upload.twitter.com":
        return httpx.Response(200, json={"media_id_string": "777"})
    return httpx.Response(201, json={"data": {"id": "1", "text": "posted"}})


class Classifier:
    def __init__(self, status: int = 200, payload: object = None) -> None:
        self.status = status
        self.payload = payload if payload is not None else {"ok": False, "reason": "scrolling"}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status, json=self.payload)


@pytest.fixture
def classifier_endpoint():
    return Classifier()


@pytest.fixture
def app(settings, database, local, clock, classifier_endpoint):
    return create_app(
        settings,
        database=database,
        local=local,
        classifier=LogClassifier(api_key=None),
        oauth_client=OAuthClient(
            settings, client=httpx.AsyncClient(transport=httpx.MockTransport(_token_endpoint))
        ),
        x_client=XClient(client=httpx.AsyncClient(transport=httpx.MockTransport(_x_api))),
        rating_client=httpx.AsyncClient(transport=httpx.MockTransport(classifier_endpoint)),
        clock=clock,
    )


@pytest.fixture
def client(app):
    return TestClient(app)


def test_healthcheck(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_rate_log_always_answers_ok_without_a_key(client):
    response = client.post("/api/openai/rate-log", json={"log": "coding", "goal": "ship"})
    assert response.status_code == 200
    assert response.json()["ok"] is True


def test_session_sync(client, database):
    assert client.post("/api/auth/session", json={}).status_code == 400
    assert client.post("/api/auth/session", json={"access_token": "nope"}).status_code == 401

    token = database.create_session("u1")
    response = client.post(
        "/api/auth/session", json={"access_token": token, "timezone": "Europe/Berlin"}
    )
    assert response.status_code == 200
    assert response.json() == {"ok": True, "user_id": "u1"}
    assert client.cookies.get("st_session") == token
    assert [dict(r) for r in database.get_users_with_timezone()] == [
        {"user_id": "u1", "timezone": "Europe/Berlin"}
    ]


def test_authorize_then_callback_stores_tokens(client, database):
    token = database.create_session("u1")
    response = client.get("/api/x/authorize", follow_redirects=False)
    assert response.status_code == 307
    location = urlparse(response.headers["location"])
    assert location.netloc == "x.com"
    state = parse_qs(location.query)["state"][0]
    assert client.cookies.get("x_oauth_state") == state

    response = client.get(
        "/api/x/callback",
        params={"code": "the-code", "state": state},
        headers={"Authorization": f"Bearer {token}"},
        follow_redirects=False,
    )
    assert response.status_code == 307
    assert response.headers["location"] == "/"
    assert database.get_tokens("u1")["access_token"] == "access-token-value"
    assert client.cookies.get("x_oauth_state") is None
    assert client.cookies.get("x_pkce_verifier") is None


def test_callback_state_mismatch_redirects_with_marker(client, database):
    client.get("/api/x/authorize", follow_redirects=False)
    response = client.get(
        "/api/x/callback",
        params={"code": "the-code", "state": "forged"},
        follow_redirects=False,
    )
    assert response.headers["location"] == "/?x=unexpected_state"
    assert client.cookies.get("x_pkce_verifier") is None


def test_callback_without_session_requires_login(client, database):
    response = client.get("/api/x/authorize", follow_redirects=False)
    state = parse_qs(urlparse(response.headers["location"]).query)["state"][0]
    response = client.get(
        "/api/x/callback", params={"code": "c", "state": state}, follow_redirects=False
    )
    assert response.headers["location"] == "/?x=login_required"


def test_callback_without_params_is_a_noop(client):
    response = client.get("/api/x/callback")
    assert response.status_code == 200
    assert response.json() == {}


def test_tweet_requires_session_and_tokens(client, database):
    response = client.post("/api/x/tweet", json={"image": "aGVsbG8="})
    assert response.status_code == 401
    assert response.json()["error"] == "auth_required"

    token = database.create_session("u1")
    headers = {"Authorization": f"Bearer {token}"}
    response = client.post("/api/x/tweet", json={"image": "aGVsbG8="}, headers=headers)
    assert response.status_code == 409
    assert response.json()["error"] == "tokens_missing"

    response = client.post("/api/x/tweet", json={}, headers=headers)
    assert response.status_code == 400
    assert response.json()["error"] == "image_required"


def test_tweet_uploads_media_then_posts(client, database, clock):
    token = database.create_session("u1")
    database.upsert_tokens(
        TokenRecord("access", clock.now() + timedelta(hours=1), "refresh").to_row("u1")
    )
    response = client.post(
        "/api/x/tweet",
        json={"image": "data:image/png;base64,aGVsbG8=", "text": "  day 12  "},
        headers={"Authorization": f"Bearer {token}"},
    )
    assert response.status_code == 200
    assert response.json() == {"success": True, "tweet": {"id": "1", "text": "posted"}}


def test_cron_requires_secret(client):
    assert client.post("/api/cron/post-dailies", json={}).status_code == 401
    response = client.post(
        "/api/cron/post-dailies", json={}, headers={"x-cron-secret": "wrong"}
    )
    assert response.status_code == 401


def test_cron_rejects_bad_override(client):
    response = client.post(
        "/api/cron/post-dailies",
        json={"date_override": "yesterday"},
        headers={"Authorization": "Bearer cron-secret"},
    )
    assert response.status_code == 400


def test_cron_dry_run_report(client, database):
    database.upsert_user("u1", "UTC")
    response = client.post(
        "/api/cron/post-dailies",
        json={"dry_run": True, "date_override": "2025-03-03"},
        headers={"x-cron-secret": "cron-secret"},
    )
    assert response.status_code == 200
    assert response.json() == {
        "ran_for": 1,
        "date_override": "2025-03-03",
        "dry_run": True,
        "results": [{"user_id": "u1", "ok": False, "reason": "no day for 2025-03-03"}],
    }


def test_cron_unconfigured_secret(settings, database, local, clock):
    app = create_app(
        replace(settings, cron_secret=""),
        database=database,
        local=local,
        classifier=LogClassifier(api_key=None),
        clock=clock,
    )
    response = TestClient(app).post("/api/cron/post-dailies", headers={"x-cron-secret": ""})
    assert response.status_code == 503


class LockedTokenStore(Database):
    def upsert_tokens(self, record):
        raise sqlite3.OperationalError("database is locked")


def _signed_in(database):
    return {"Authorization": f"Bearer {database.create_session('u1')}"}


def test_today_requires_session(client):
    response = client.get("/api/today")
    assert response.status_code == 401
    assert response.json()["error"] == "auth_required"


def test_today_bootstraps_the_grid(client, database):
    response = client.get("/api/today", headers=_signed_in(database))
    assert response.status_code == 200
    data = response.json()
    assert data["date"] == "2025-03-04"
    assert data["goal"] == ""
    assert [h["startHour"] for h in data["hours"]] == list(range(8, 24))
    assert data["hours"][0]["label"] == "8–9AM"
    assert {h["status"] for h in data["hours"]} == {"idle"}
    assert data["view"]["current_index"] == 2
    assert data["view"]["should_show_input"] is True
    assert data["view"]["is_quiet_hours"] is False


def test_save_goal_and_hours(client, database, local):
    headers = _signed_in(database)
    response = client.put("/api/today/goal", json={"goal": "  ship it "}, headers=headers)
    assert response.status_code == 200
    assert response.json()["goal"] == "ship it"

    response = client.put("/api/today/hours/10", json={"body": "wrote tests"}, headers=headers)
    assert response.json()["hours"][2]["body"] == "wrote tests"
    assert response.json()["view"]["has_current_log"] is True

    day = database.get_day("u1", date(2025, 3, 4))
    assert day["goal"] == "ship it"
    stored = json.loads(local.get("stoptrolling:user:u1:day:2025-03-04"))
    assert stored["hours"][2]["body"] == "wrote tests"

    response = client.delete("/api/today/hours/10", headers=headers)
    assert response.json()["hours"][2]["body"] == ""
    assert client.get("/api/today", headers=headers).json()["hours"][2]["body"] == ""


def test_hour_routes_reject_unknown_slots(client, database):
    headers = _signed_in(database)
    assert client.put("/api/today/hours/7", json={"body": "x"}, headers=headers).status_code == 404
    assert client.put("/api/today/hours/9", json={}, headers=headers).status_code == 400
    assert client.post("/api/today/hours/9/rate", json={}, headers=headers).status_code == 400


def test_rate_hour_calls_classifier_and_patches(
    client, database, settings, classifier_endpoint
):
    headers = _signed_in(database)
    client.put("/api/today/goal", json={"goal": "finish thesis"}, headers=headers)
    response = client.post(
        "/api/today/hours/9/rate", json={"body": "scrolled twitter"}, headers=headers
    )
    assert response.status_code == 200
    assert response.json() == {"start_hour": 9, "aligned": False, "status": "settling"}

    sent = classifier_endpoint.requests[0]
    assert str(sent.url) == settings.classifier_url
    assert json.loads(sent.content) == {"log": "scrolled twitter", "goal": "finish thesis"}

    hours = client.get("/api/today", headers=headers).json()["hours"]
    assert hours[1]["aligned"] is False
    assert hours[1]["body"] == "scrolled twitter"


def test_rate_hour_classifier_failure_is_502(client, database, classifier_endpoint):
    classifier_endpoint.status = 500
    headers = _signed_in(database)
    response = client.post("/api/today/hours/9/rate", json={"body": "x"}, headers=headers)
    assert response.status_code == 502
    assert response.json()["error"] == "classification_failed"
    hours = client.get("/api/today", headers=headers).json()["hours"]
    assert "aligned" not in hours[1]
    assert hours[1]["status"] == "idle"


def test_tweet_transport_failure_is_502(settings, database, local, clock):
    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    app = create_app(
        settings,
        database=database,
        local=local,
        classifier=LogClassifier(api_key=None),
        x_client=XClient(client=httpx.AsyncClient(transport=httpx.MockTransport(unreachable))),
        clock=clock,
    )
    database.upsert_tokens(
        TokenRecord("access", clock.now() + timedelta(hours=1), "refresh").to_row("u1")
    )
    response = TestClient(app).post(
        "/api/x/tweet", json={"image": "aGVsbG8="}, headers=_signed_in(database)
    )
    assert response.status_code == 502
    assert response.json()["error"] == "media_upload_failed"


def test_callback_store_failure_redirects_with_marker(settings, tmp_path, local, clock):
    database = LockedTokenStore(tmp_path / "locked.db")
    app = create_app(
        settings,
        database=database,
        local=local,
        classifier=LogClassifier(api_key=None),
        oauth_client=OAuthClient(
            settings, client=httpx.AsyncClient(transport=httpx.MockTransport(_token_endpoint))
        ),
        clock=clock,
    )
    client = TestClient(app)
    response = client.get("/api/x/authorize", follow_redirects=False)
    state = parse_qs(urlparse(response.headers["location"]).query)["state"][0]
    response = client.get(
        "/api/x/callback",
        params={"code": "the-code", "state": state},
        headers=_signed_in(database),
        follow_redirects=False,
    )
    assert response.headers["location"] == "/?x=token_store_failed"
