from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.concurrency import run_in_threadpool
from starlette.middleware.trustedhost import TrustedHostMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from sitelog.auth import SessionRegistry, bearer_token
from sitelog.config import Settings, load_settings
from sitelog.dispatcher import Dispatcher, failure
from sitelog.lock import RequestLock
from sitelog.notifiers import build_notifier
from sitelog.reports import ReportAggregator
from sitelog.store import SiteLogStore
from sitelog.tbm import TbmGenerator
from sitelog.workdays import WorkCalendar


log = logging.getLogger("sitelog")

API_MODE_NOTICE = "施工日誌系統 API：請以 POST 呼叫，或在 GET 請求加上 api=true（或 type=json）與 action 參數。"


def build_dispatcher(settings: Settings) -> Dispatcher:
    store = SiteLogStore.from_settings(settings)
    calendar = WorkCalendar(store, country=settings.holiday_country, non_working_weekdays=settings.non_working_weekdays)
    return Dispatcher(
        settings=settings,
        store=store,
        calendar=calendar,
        reports=ReportAggregator(store, calendar),
        tbm=TbmGenerator(store, settings.tbm_dir),
        sessions=SessionRegistry(settings.session_ttl_seconds),
        lock=RequestLock(settings.lock_timeout_seconds, settings.lock_file),
        notifier=build_notifier(settings),
    )


def _security_headers(response) -> None:
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "same-origin"
    response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
    response.headers["Cache-Control"] = "no-store"


def _wants_api(params: dict[str, Any]) -> bool:
    api = str(params.get("api") or "").strip().lower()
    kind = str(params.get("type") or "").strip().lower()
    return api == "true" or kind == "json"


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or load_settings()
    dispatcher = build_dispatcher(settings)

    app = FastAPI(title="Site Daily Log")
    app.state.settings = settings
    app.state.dispatcher = dispatcher
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=["127.0.0.1"])
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=list(settings.allowed_hosts))

    @app.on_event("startup")
    def _startup() -> None:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
        if settings.storage == "google_sheets" and not settings.spreadsheet_id:
            log.warning("SITELOG_SPREADSHEET_ID is not set. Data is kept in memory only.")
        if settings.bootstrap_admin_password == Settings.bootstrap_admin_password:
            log.warning("Bootstrap admin password is the default. Change it after first login.")
        if settings.expose_stack:
            log.warning("Error stack traces are returned to callers. Disable SITELOG_EXPOSE_STACK in production.")

    @app.middleware("http")
    async def _headers_middleware(request: Request, call_next):  # type: ignore
        resp = await call_next(request)
        _security_headers(resp)
        return resp

    async def _run(request: Request, params: dict[str, Any]) -> JSONResponse:
        action = str(params.pop("action", "") or "")
        token = bearer_token(request.headers.get("authorization")) or str(params.pop("sessionToken", "") or "")
        result = await run_in_threadpool(dispatcher.dispatch, action, params, session_token=token)
        return JSONResponse(content=result)

    @app.get("/health", response_class=PlainTextResponse)
    def health() -> str:
        return "ok"

    @app.get("/")
    @app.get("/api")
    async def api_get(request: Request):
        params: dict[str, Any] = dict(request.query_params)
        if not _wants_api(params):
            return PlainTextResponse(API_MODE_NOTICE)
        return await _run(request, params)

    @app.post("/")
    @app.post("/api")
    async def api_post(request: Request):
        params: dict[str, Any] = dict(request.query_params)
        raw = await request.body()
        if raw.strip():
            # Browser clients post JSON as text/plain, so the content type is not consulted.
            try:
                body = json.loads(raw.decode("utf-8"))
            except ValueError:
                body = None
            if not isinstance(body, dict):
                if settings.reject_malformed_body:
                    return JSONResponse(content=failure("malformed_body"))
                log.info("Ignored malformed request body")
                body = {}
            params.update(body)
        return await _run(request, params)

    return app


app = create_app()
