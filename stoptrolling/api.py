"""FastAPI application exposing the StopTrolling REST API."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx
from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse, RedirectResponse, Response

from .classifier import LogClassifier
from .config import Settings, load_settings
from .controllers import RatingController, TodayController, TodaySession
from .day_service import DayService
from .db import Database, LocalStorage
from .digest import DigestScheduler
from .errors import (
    AuthRequired,
    ClassificationTransportError,
    InvalidDate,
    OAuthCallbackError,
    PostingError,
    RemoteReadFailed,
    RemoteWriteFailed,
)
from .ledger import DayLedger, user_prefix
from .oauth import CallbackHandler, OAuthClient
from .pkce import PkceStore, begin_authorization
from .posting import PostingService
from .presentation import derive_today
from .rating import RatingService
from .session import SESSION_COOKIE, SessionService, bearer_token
from .timeutil import Clock, SystemClock, canonical_start_hours, parse_ymd, range_label
from .tokens import TokenManager
from .x_client import XClient

logger = logging.getLogger("stoptrolling.api")


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def create_app(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    local: Optional[LocalStorage] = None,
    classifier: Optional[LogClassifier] = None,
    oauth_client: Optional[OAuthClient] = None,
    x_client: Optional[XClient] = None,
    rating_client: Optional[httpx.AsyncClient] = None,
    clock: Optional[Clock] = None,
) -> FastAPI:
    settings = settings or load_settings()
    database = database or Database(settings.database_path)
    local = local or LocalStorage(settings.local_store_path)
    clock = clock or SystemClock(settings.app_timezone)
    classifier = classifier or LogClassifier(
        settings.openai_api_key, settings.openai_model, settings.classify_timeout
    )
    oauth_client = oauth_client or OAuthClient(settings)
    x_client = x_client or XClient(settings.post_timeout)

    secure_cookies = settings.x_redirect_uri.startswith("https://")
    pkce_store = PkceStore(local, secure=secure_cookies, clock=clock)
    day_service = DayService(database, clock)
    rating_service = RatingService(
        day_service, settings.classifier_url, settings.classify_timeout, client=rating_client
    )
    token_manager = TokenManager(database, oauth_client, clock)
    callback_handler = CallbackHandler(database, oauth_client, clock)
    posting_service = PostingService(token_manager, x_client)
    scheduler = DigestScheduler(
        database,
        day_service,
        token_manager,
        x_client,
        clock,
        window=timedelta(minutes=settings.digest_window_minutes),
    )
    background: list[asyncio.Task] = []
    ledgers: Dict[str, DayLedger] = {}
    raters: Dict[str, RatingController] = {}

    def ledger_for(user_id: str) -> DayLedger:
        if user_id not in ledgers:
            ledgers[user_id] = DayLedger(local, prefix=user_prefix(user_id))
        return ledgers[user_id]

    def rater_for(user_id: str) -> RatingController:
        if user_id not in raters:
            raters[user_id] = RatingController(
                ledger_for(user_id), rating_service, settle_ms=settings.settle_ms
            )
        return raters[user_id]

    def session_dependency(
        request: Request, authorization: Optional[str] = Header(None)
    ) -> SessionService:
        token = bearer_token(authorization) or request.cookies.get(SESSION_COOKIE)
        return SessionService(database, token)

    async def verify_cron_secret(
        x_cron_secret: Optional[str] = Header(None, alias="x-cron-secret"),
        authorization: Optional[str] = Header(None),
    ) -> None:
        if not settings.cron_secret:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="cron secret not configured",
            )
        provided = x_cron_secret or bearer_token(authorization)
        if provided != settings.cron_secret:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthorized")

    async def today_dependency(
        session: SessionService = Depends(session_dependency),
    ) -> Tuple[TodayController, TodaySession]:
        user = await session.get_authed_user()
        if user is None:
            raise AuthRequired("sign in first")
        controller = TodayController(ledger_for(user.id), day_service, session, clock)
        today = await controller.init()
        if today is None:
            raise AuthRequired("sign in first")
        return controller, today

    def require_slot(start_hour: int) -> int:
        if start_hour not in canonical_start_hours():
            raise HTTPException(status_code=404, detail="unknown slot")
        return start_hour

    def today_payload(controller: TodayController, today: TodaySession) -> dict[str, object]:
        record = controller.ledger.ensure(controller.today_key)
        view = derive_today(record, controller.today_key, clock.now())
        rater = rater_for(today.user.id)
        return {
            "date": controller.today_key,
            "day_id": today.day.id,
            "goal": record.goal,
            "hours": [
                {
                    "label": range_label(h.start_hour),
                    "status": rater.status(h.start_hour).value,
                    **h.to_dict(),
                }
                for h in record.hours
            ],
            "view": {
                "is_quiet_hours": view.is_quiet_hours,
                "current_index": view.current_index,
                "has_current_log": view.has_current_log,
                "should_show_input": view.should_show_input,
                "slot_label": view.slot_label,
                "countdown": {"hours": view.countdown.hours, "minutes": view.countdown.minutes},
                "status_text": view.status_text,
            },
        }

    app = FastAPI(title="StopTrolling API", version="1.0.0")

    @app.on_event("startup")
    async def startup_event() -> None:  # pragma: no cover - io bound
        if settings.digest_interval_seconds > 0:
            logger.info("Starting digest loop every %ss", settings.digest_interval_seconds)
            background.append(
                asyncio.create_task(scheduler.run_periodically(settings.digest_interval_seconds))
            )

    @app.on_event("shutdown")
    async def shutdown_event() -> None:  # pragma: no cover - io bound
        for task in background:
            task.cancel()
        for rater in raters.values():
            rater.cancel_all()
        await rating_service.close()
        await oauth_client.close()
        await x_client.close()

    @app.exception_handler(PostingError)
    async def posting_error_handler(_: Request, exc: PostingError) -> JSONResponse:
        logger.warning("Posting failed: %s", exc)
        return JSONResponse(
            {"error": exc.error, "detail": exc.detail}, status_code=exc.status_code
        )

    @app.exception_handler(RemoteWriteFailed)
    @app.exception_handler(RemoteReadFailed)
    async def remote_error_handler(_: Request, exc: Exception) -> JSONResponse:
        logger.error("Remote store failure: %s", exc)
        return JSONResponse({"error": "remote_store_failed"}, status_code=503)

    @app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/api/openai/rate-log")
    async def rate_log(request: Request) -> dict[str, object]:
        body = await _json_body(request)
        verdict = await classifier.classify(body.get("log"), body.get("goal"))
        return {"ok": verdict.ok, "reason": verdict.reason}

    @app.post("/api/auth/session")
    async def sync_session(request: Request) -> Response:
        body = await _json_body(request)
        token = body.get("access_token")
        if not isinstance(token, str) or not token:
            return JSONResponse({"error": "missing_tokens"}, status_code=400)
        user_id = database.get_session_user(token)
        if not user_id:
            return JSONResponse({"error": "invalid_session"}, status_code=401)

        tz_name = body.get("timezone")
        if isinstance(tz_name, str) and tz_name:
            try:
                ZoneInfo(tz_name)
            except (ZoneInfoNotFoundError, ValueError):
                logger.warning("Ignoring unknown timezone %r for %s", tz_name, user_id)
            else:
                database.upsert_user(user_id, tz_name)

        response = JSONResponse({"ok": True, "user_id": user_id})
        response.set_cookie(
            SESSION_COOKIE,
            token,
            path="/",
            samesite="lax",
            secure=secure_cookies,
            httponly=True,
        )
        return response

    @app.get("/api/x/authorize")
    async def authorize() -> RedirectResponse:
        response = RedirectResponse("/", status_code=status.HTTP_307_TEMPORARY_REDIRECT)
        response.headers["location"] = begin_authorization(settings, pkce_store, response)
        return response

    @app.get("/api/x/callback")
    async def callback(
        request: Request,
        code: Optional[str] = None,
        state: Optional[str] = None,
        session: SessionService = Depends(session_dependency),
    ) -> Response:
        # cookie deletions are collected here and copied onto whichever redirect is sent
        pending = Response()

        def consume():
            return pkce_store.consume(request.cookies, pending, state)

        try:
            record = await callback_handler.handle(
                code, state, consume, session_service=session
            )
        except OAuthCallbackError as exc:
            logger.warning("X OAuth callback failed (%s): %s", exc.marker, exc)
            target = f"/?x={exc.marker}"
        else:
            if record is None:
                return JSONResponse({})
            target = "/"

        response = RedirectResponse(target, status_code=status.HTTP_307_TEMPORARY_REDIRECT)
        for value in pending.headers.getlist("set-cookie"):
            response.headers.append("set-cookie", value)
        return response

    @app.post("/api/x/tweet")
    async def tweet(
        request: Request, session: SessionService = Depends(session_dependency)
    ) -> dict[str, object]:
        user = await session.get_authed_user()
        if user is None:
            raise AuthRequired("sign in before posting")
        body = await _json_body(request)
        data = await posting_service.post_image(user.id, body.get("image"), body.get("text"))
        return {"success": True, "tweet": data}

    @app.get("/api/today")
    async def get_today(
        today: Tuple[TodayController, TodaySession] = Depends(today_dependency),
    ) -> dict[str, object]:
        return today_payload(*today)

    @app.put("/api/today/goal")
    async def save_goal(
        request: Request,
        today: Tuple[TodayController, TodaySession] = Depends(today_dependency),
    ) -> dict[str, object]:
        controller, current = today
        goal = (await _json_body(request)).get("goal")
        if not isinstance(goal, str):
            raise HTTPException(status_code=400, detail="goal must be a string")
        await controller.save_goal(current.day.id, goal.strip())
        return today_payload(controller, current)

    @app.put("/api/today/hours/{start_hour}")
    async def save_hour(
        request: Request,
        start_hour: int = Depends(require_slot),
        today: Tuple[TodayController, TodaySession] = Depends(today_dependency),
    ) -> dict[str, object]:
        controller, current = today
        body = (await _json_body(request)).get("body")
        if not isinstance(body, str):
            raise HTTPException(status_code=400, detail="body must be a string")
        await controller.save_hour(current.day.id, start_hour, body)
        return today_payload(controller, current)

    @app.delete("/api/today/hours/{start_hour}")
    async def clear_hour(
        start_hour: int = Depends(require_slot),
        today: Tuple[TodayController, TodaySession] = Depends(today_dependency),
    ) -> dict[str, object]:
        controller, current = today
        await controller.clear_hour(current.day.id, start_hour)
        return today_payload(controller, current)

    @app.post("/api/today/hours/{start_hour}/rate")
    async def rate_hour(
        request: Request,
        start_hour: int = Depends(require_slot),
        today: Tuple[TodayController, TodaySession] = Depends(today_dependency),
    ) -> Response:
        controller, current = today
        body = (await _json_body(request)).get("body")
        if isinstance(body, str) and body.strip():
            await controller.save_hour(current.day.id, start_hour, body)
        else:
            record = controller.ledger.ensure(controller.today_key)
            body = record.hours[record.index_of(start_hour)].body
        if not body.strip():
            raise HTTPException(status_code=400, detail="nothing to rate")

        rater = rater_for(current.user.id)
        try:
            aligned = await rater.rate_and_patch(
                current.day.id, controller.today_key, start_hour, body, current.day.goal
            )
        except ClassificationTransportError as exc:
            logger.warning("Rating slot %s failed: %s", start_hour, exc)
            return JSONResponse(
                {"error": "classification_failed", "detail": exc.detail}, status_code=502
            )
        return JSONResponse(
            {
                "start_hour": start_hour,
                "aligned": aligned,
                "status": rater.status(start_hour).value,
            }
        )

    @app.post("/api/cron/post-dailies")
    async def post_dailies(
        request: Request, _: None = Depends(verify_cron_secret)
    ) -> dict[str, object]:
        body = await _json_body(request)
        dry_run = bool(body.get("dry_run", False))
        raw_override = body.get("date_override")
        try:
            override = parse_ymd(raw_override) if raw_override else None
        except InvalidDate as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        try:
            report = await scheduler.run(dry_run=dry_run, date_override=override)
        except RemoteReadFailed as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return report.to_dict()

    app.state.scheduler = scheduler
    app.state.database = database
    return app


__all__ = ["create_app"]
