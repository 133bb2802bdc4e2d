"""Configuration helpers for StopTrolling."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

DEFAULT_SCOPES = "tweet.read tweet.write users.read offline.access"


@dataclass(slots=True)
class Settings:
    """Runtime configuration values loaded from environment variables."""

    cron_secret: str
    x_client_id: str
    x_client_secret: str
    database_path: Path
    local_store_path: Path
    x_redirect_uri: str = "http://127.0.0.1:8000/api/x/callback"
    x_scopes: str = DEFAULT_SCOPES
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    classifier_url: str = "http://127.0.0.1:8000/api/openai/rate-log"
    classify_timeout: float = 15.0
    oauth_timeout: float = 10.0
    post_timeout: float = 20.0
    digest_window_minutes: int = 15
    digest_interval_seconds: int = 0
    settle_ms: int = 600
    app_timezone: str = "UTC"


def load_settings(env_file: str | None = None) -> Settings:
    """Load settings from the environment, optionally from a specific file."""

    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()

    db_path = Path(os.getenv("DATABASE_PATH", "stoptrolling.db")).expanduser()
    local_path = Path(
        os.getenv("LOCAL_STORE_PATH", "stoptrolling-local.db")
    ).expanduser()

    cron_secret = os.getenv("CRON_SECRET")
    client_id = os.getenv("X_CLIENT_ID")
    client_secret = os.getenv("X_CLIENT_SECRET")

    if not cron_secret:
        raise RuntimeError("CRON_SECRET must be configured")
    if not client_id:
        raise RuntimeError("X_CLIENT_ID must be configured")
    if not client_secret:
        raise RuntimeError("X_CLIENT_SECRET must be configured")

    return Settings(
        cron_secret=cron_secret,
        x_client_id=client_id,
        x_client_secret=client_secret,
        database_path=db_path,
        local_store_path=local_path,
        x_redirect_uri=os.getenv("X_REDIRECT_URI", "http://127.0.0.1:8000/api/x/callback"),
        x_scopes=os.getenv("X_SCOPES", DEFAULT_SCOPES),
        openai_api_key=os.getenv("OPENAI_API_KEY") or None,
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        classifier_url=os.getenv(
            "CLASSIFIER_URL", "http://127.0.0.1:8000/api/openai/rate-log"
        ),
        classify_timeout=float(os.getenv("CLASSIFY_TIMEOUT", "15")),
        oauth_timeout=float(os.getenv("OAUTH_TIMEOUT", "10")),
        post_timeout=float(os.getenv("POST_TIMEOUT", "20")),
        digest_window_minutes=int(os.getenv("DIGEST_WINDOW_MINUTES", "15")),
        digest_interval_seconds=int(os.getenv("DIGEST_INTERVAL_SECONDS", "0")),
        settle_ms=int(os.getenv("SETTLE_MS", "600")),
        app_timezone=os.getenv("APP_TIMEZONE", "UTC"),
    )


__all__ = ["Settings", "load_settings"]
