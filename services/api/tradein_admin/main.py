# services/api/tradein_admin/main.py

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .audit import AuditLog
from .config import Settings, get_settings
from .db import build_engine, build_session_factory
from .logging_mw import RequestLoggingMiddleware, configure_logging
from .mailer import LoggingMailer, Mailer
from .rate_limit import MemoryRateLimitStore, RateLimiter, RedisRateLimitStore
from .routes_admin_auth import router as admin_auth_router
from .security import RateLimitMiddleware
from .store import AuthStore, SqlAuthStore, StoreUnavailable

LOG = logging.getLogger("tradein_admin")


def _error_body(settings: Settings, exc: Exception) -> dict:
    body = {"detail": "Internal server error"}
    if settings.DEBUG:
        body["debug"] = f"{type(exc).__name__}: {exc}"
    return body


def create_app(
    settings: Settings | None = None,
    *,
    store: AuthStore | None = None,
    limiter: RateLimiter | None = None,
    mailer: Mailer | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL)

    if store is None:
        engine = build_engine(settings.DATABASE_URL, timeout_s=settings.STORE_TIMEOUT_SECONDS)
        store = SqlAuthStore(build_session_factory(engine))
    if limiter is None:
        if settings.REDIS_URL:
            rl_store = RedisRateLimitStore.from_url(settings.REDIS_URL, timeout_s=settings.STORE_TIMEOUT_SECONDS)
        else:
            rl_store = MemoryRateLimitStore()
        limiter = RateLimiter(rl_store, fail_open=settings.RATE_LIMIT_FAIL_OPEN)

    app = FastAPI(title="Trade-in Admin API", version="1.0.0", debug=settings.DEBUG)
    app.state.settings = settings
    app.state.store = store
    app.state.audit = AuditLog(store)
    app.state.limiter = limiter
    app.state.mailer = mailer or LoggingMailer()

    # last added runs first: request logging wraps rate limiting
    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(RequestLoggingMiddleware)

    @app.exception_handler(StoreUnavailable)
    async def store_unavailable(request: Request, exc: StoreUnavailable):
        LOG.error("store_unavailable path=%s: %s", request.url.path, exc)
        return JSONResponse(_error_body(settings, exc), status_code=500, headers={"Retry-After": "5"})

    @app.exception_handler(Exception)
    async def unhandled(request: Request, exc: Exception):
        LOG.exception("unhandled_error path=%s", request.url.path)
        return JSONResponse(_error_body(settings, exc), status_code=500)

    app.include_router(admin_auth_router)

    @app.get("/health")
    def health():
        return {"ok": True}

    return app
