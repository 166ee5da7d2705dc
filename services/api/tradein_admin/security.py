# services/api/tradein_admin/security.py

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

from . import models
from .admin_auth import is_session_expired
from .audit import AuditLog
from .bot_protection import suspicion_score
from .config import Settings
from .context import RequestContext
from .csrf import validate_csrf
from .mailer import Mailer
from .rate_limit import RateLimiter, config_for, resolve_endpoint
from .store import AuthStore

# --------------------------
# App-scoped dependencies
# --------------------------

def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings

def get_store(request: Request) -> AuthStore:
    return request.app.state.store

def get_audit(request: Request) -> AuditLog:
    return request.app.state.audit

def get_limiter(request: Request) -> RateLimiter:
    return request.app.state.limiter

def get_mailer(request: Request) -> Mailer:
    return request.app.state.mailer

def get_context(request: Request) -> RequestContext:
    ctx = getattr(request.state, "ctx", None)
    if ctx is None:
        ctx = RequestContext.from_request(request)
        request.state.ctx = ctx
    return ctx

# --------------------------
# Admin session resolution
# --------------------------

@dataclass
class AdminAuth:
    session: models.AdminSession
    user: models.AdminUser
    token: str


def session_token(ctx: RequestContext, settings: Settings) -> str | None:
    return ctx.cookie(settings.ADMIN_COOKIE_NAME)


def load_session(store: AuthStore, token: str | None) -> tuple[models.AdminSession | None, str | None]:
    """
    Returns (session, None) for a live session, otherwise (None, reason) with
    reason one of "missing", "invalid", "expired".
    """
    if not token:
        return None, "missing"
    sess = store.get_session(token)
    if sess is None:
        return None, "invalid"
    if is_session_expired(sess):
        return None, "expired"
    return sess, None


SESSION_ERRORS = {
    "missing": "Not authenticated",
    "invalid": "Invalid session",
    "expired": "Session expired",
}


def require_session(
    ctx: RequestContext = Depends(get_context),
    settings: Settings = Depends(get_app_settings),
    store: AuthStore = Depends(get_store),
) -> AdminAuth:
    """Any live session, including one still waiting on its 2FA step."""
    token = session_token(ctx, settings)
    sess, reason = load_session(store, token)
    if sess is None:
        raise HTTPException(401, SESSION_ERRORS[reason])

    user = store.get_user(sess.user_id)
    if user is None:
        raise HTTPException(404, "User not found")
    return AdminAuth(session=sess, user=user, token=token)


def require_verified_session(auth: AdminAuth = Depends(require_session)) -> AdminAuth:
    if not auth.session.two_factor_verified:
        raise HTTPException(403, "2FA verification required")
    return auth


def require_csrf(ctx: RequestContext, settings: Settings) -> None:
    ok, error = validate_csrf(
        ctx,
        settings.SESSION_SECRET,
        cookie_name=settings.CSRF_COOKIE_NAME,
        max_age_s=settings.CSRF_TOKEN_TTL_HOURS * 3600,
    )
    if not ok:
        raise HTTPException(403, error)


def require_admin(
    auth: AdminAuth = Depends(require_verified_session),
    ctx: RequestContext = Depends(get_context),
    settings: Settings = Depends(get_app_settings),
) -> AdminAuth:
    """Fully verified session; mutating requests must also pass the CSRF check."""
    require_csrf(ctx, settings)
    return auth

# --------------------------
# Rate limiting
# --------------------------

# logout must always clear the cookie, so it is never throttled
RATE_LIMIT_EXEMPT_PATHS = frozenset({"/api/admin/auth/logout"})


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Applies the limiter to every /api/ request, keyed by endpoint and client fingerprint."""

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if not path.startswith("/api/") or path in RATE_LIMIT_EXEMPT_PATHS:
            return await call_next(request)

        settings: Settings = request.app.state.settings
        limiter: RateLimiter = request.app.state.limiter

        ctx = RequestContext.from_request(request)
        request.state.ctx = ctx
        endpoint = resolve_endpoint(path)
        score = suspicion_score(ctx) if settings.RATE_LIMIT_SUSPICION_ENABLED else 0

        decision = await run_in_threadpool(
            limiter.check, f"{endpoint}:{ctx.fingerprint}", config_for(endpoint), score
        )
        reset_s = str(decision.reset_time // 1000)

        if not decision.allowed:
            error = (
                "Too many requests. You have been temporarily blocked."
                if decision.blocked
                else "Rate limit exceeded. Please try again later."
            )
            return JSONResponse(
                status_code=429,
                content={"detail": {"error": error, "retryAfter": decision.retry_after}},
                headers={
                    "Retry-After": str(decision.retry_after or 60),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": reset_s,
                },
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        response.headers["X-RateLimit-Reset"] = reset_s
        return response
