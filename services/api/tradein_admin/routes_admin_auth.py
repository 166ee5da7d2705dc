# services/api/tradein_admin/routes_admin_auth.py

from __future__ import annotations

import base64
import hashlib
import logging
from datetime import datetime, timezone
from io import BytesIO

import qrcode
from email_validator import EmailNotValidError, validate_email
from fastapi import APIRouter, Depends, HTTPException, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from . import models
from .admin_auth import (
    create_logout_cookie,
    create_session_cookie,
    dummy_password_hash,
    generate_backup_codes,
    generate_reset_token,
    generate_session_token,
    generate_totp_secret,
    generate_totp_uri,
    get_lockout_expiry,
    get_reset_token_expiry,
    get_session_expiry,
    hash_backup_codes,
    hash_password,
    hash_reset_token,
    is_account_locked,
    is_reset_token_valid,
    looks_like_totp,
    mask_email,
    should_lock_account,
    validate_password,
    verify_backup_code,
    verify_password,
    verify_totp_code,
)
from .audit import AuditAction, AuditLog
from .bot_protection import detect_bot, generate_form_token
from .config import Settings
from .context import RequestContext
from .csrf import CSRF_HEADER_NAME, create_csrf_cookie, generate_csrf_token
from .mailer import Mailer
from .rate_limit import FORGOT_PASSWORD_EMAIL_CONFIG, RateLimiter
from .sanitize import sanitize_email
from .security import (
    SESSION_ERRORS,
    AdminAuth,
    get_app_settings,
    get_audit,
    get_context,
    get_limiter,
    get_mailer,
    get_store,
    load_session,
    require_admin,
    session_token,
)
from .store import AuthStore, StoreUnavailable, load_backup_hashes

LOG = logging.getLogger("tradein_admin.auth")

router = APIRouter(prefix="/api/admin/auth", tags=["admin-auth"])

FORGOT_PASSWORD_MESSAGE = "If an account exists with this email, you will receive a password reset link."
INVALID_RESET_LINK = "Invalid or expired reset link. Please request a new one."

# --------------------------
# Schemas
# --------------------------

# Fields are optional so missing input gets the contractual 400, not a 422.

class LoginReq(BaseModel):
    email: str | None = None
    password: str | None = None

class CodeReq(BaseModel):
    code: str | None = None

class ForgotPasswordReq(BaseModel):
    email: str | None = None
    # bot signals posted by the reset form
    website: str | None = None
    formToken: str | None = None
    mouseMovements: int | None = None
    keystrokes: int | None = None
    timeOnPage: int | None = None

class ResetPasswordReq(BaseModel):
    token: str | None = None
    password: str | None = None

# --------------------------
# Helpers
# --------------------------

def _iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.replace(tzinfo=timezone.utc).isoformat()

def _user_json(u: models.AdminUser) -> dict:
    return {"id": u.id, "email": u.email, "role": u.role}

def _set_session_cookie(response: Response, settings: Settings, token: str, expires_at: datetime) -> None:
    response.headers.append(
        "set-cookie",
        create_session_cookie(
            token,
            expires_at,
            name=settings.ADMIN_COOKIE_NAME,
            secure=settings.ADMIN_COOKIE_SECURE,
            samesite=settings.ADMIN_COOKIE_SAMESITE,
        ),
    )

def _qr_data_url(uri: str) -> str:
    img = qrcode.make(uri)
    buf = BytesIO()
    img.save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")

def _second_factor(
    store: AuthStore,
    user: models.AdminUser,
    code: str,
    settings: Settings,
) -> tuple[str | None, int | None]:
    """
    TOTP first when the input looks like one, backup code otherwise.
    Returns (method, remaining_backup_codes); method None means rejected.
    """
    cleaned = code.replace(" ", "").replace("-", "")
    if looks_like_totp(cleaned) and verify_totp_code(cleaned, user.two_factor_secret, window=settings.TOTP_WINDOW):
        return "totp", None

    hashes = load_backup_hashes(user)
    valid, index = verify_backup_code(code, hashes, settings.SESSION_SECRET)
    if valid:
        remaining = store.remove_backup_code(user.id, hashes[index])
        if remaining is not None:
            return "backup_code", remaining
    return None, None

# --------------------------
# Login / 2FA verification
# --------------------------

@router.post("/login")
def login(
    payload: LoginReq,
    response: Response,
    ctx: RequestContext = Depends(get_context),
    settings: Settings = Depends(get_app_settings),
    store: AuthStore = Depends(get_store),
    audit: AuditLog = Depends(get_audit),
):
    if not payload.email or not payload.password:
        raise HTTPException(400, "Email and password are required")

    email = sanitize_email(payload.email)
    user = store.get_user_by_email(email)
    if user is None:
        # same bcrypt cost as a real check
        verify_password(payload.password, dummy_password_hash(settings.BCRYPT_ROUNDS))
        audit.record(AuditAction.FAILED_LOGIN, ctx, details={"email": email, "reason": "user_not_found"})
        raise HTTPException(401, "Invalid email or password")

    if is_account_locked(user.locked_until):
        audit.record(AuditAction.FAILED_LOGIN, ctx, user_id=user.id, details={"reason": "account_locked"})
        raise HTTPException(
            423,
            {
                "error": "Account is temporarily locked. Please try again later.",
                "lockedUntil": _iso(user.locked_until),
            },
        )

    if user.locked_until is not None:
        # served lock: start counting again from zero
        store.reset_failed_attempts(user.id)
        audit.record(AuditAction.ACCOUNT_UNLOCKED, ctx, user_id=user.id, details={"reason": "lock_expired"})

    if not verify_password(payload.password, user.password_hash):
        attempts = store.increment_failed_attempts(user.id)
        if should_lock_account(attempts, max_attempts=settings.MAX_LOGIN_ATTEMPTS):
            until = get_lockout_expiry(settings.LOCKOUT_DURATION_MINUTES)
            store.lock_account(user.id, until)
            audit.record(AuditAction.ACCOUNT_LOCKED, ctx, user_id=user.id, details={"failed_attempts": attempts})
            raise HTTPException(
                423,
                {
                    "error": f"Too many failed attempts. Account locked for {settings.LOCKOUT_DURATION_MINUTES} minutes.",
                    "lockedUntil": _iso(until),
                },
            )
        audit.record(
            AuditAction.FAILED_LOGIN,
            ctx,
            user_id=user.id,
            details={"reason": "invalid_password", "failed_attempts": attempts},
        )
        raise HTTPException(401, "Invalid email or password")

    store.reset_failed_attempts(user.id)

    requires_2fa = bool(user.two_factor_enabled)
    token = generate_session_token()
    expires_at = get_session_expiry(settings.SESSION_DURATION_HOURS)
    try:
        store.create_session(
            user_id=user.id,
            token=token,
            expires_at=expires_at,
            two_factor_verified=not requires_2fa,
            ip_address=ctx.client_ip,
            user_agent=ctx.user_agent[:500] or None,
        )
    except StoreUnavailable:
        raise HTTPException(500, "Failed to create session")

    _set_session_cookie(response, settings, token, expires_at)

    if requires_2fa:
        # partial session; last login is stamped after the second factor
        return {"success": True, "requires2FA": True, "message": "Please enter your 2FA code"}

    store.record_login(user.id)
    audit.record(AuditAction.LOGIN, ctx, user_id=user.id, details={"method": "password"})
    return {"success": True, "requires2FA": False, "user": _user_json(user)}


@router.post("/verify-2fa")
def verify_2fa(
    payload: CodeReq,
    response: Response,
    ctx: RequestContext = Depends(get_context),
    settings: Settings = Depends(get_app_settings),
    store: AuthStore = Depends(get_store),
    audit: AuditLog = Depends(get_audit),
):
    if not payload.code or not payload.code.strip():
        raise HTTPException(400, "Verification code is required")

    token = session_token(ctx, settings)
    sess, reason = load_session(store, token)
    if sess is None:
        raise HTTPException(401, SESSION_ERRORS[reason])
    if sess.two_factor_verified:
        raise HTTPException(400, "Session already verified")

    user = store.get_user(sess.user_id)
    if user is None:
        raise HTTPException(404, "User not found")
    if not user.two_factor_enabled or not user.two_factor_secret:
        raise HTTPException(400, "2FA is not enabled for this account")

    method, remaining = _second_factor(store, user, payload.code.strip(), settings)
    if method is None:
        audit.record(AuditAction.TWO_FACTOR_FAILED, ctx, user_id=user.id, details={"stage": "login"})
        raise HTTPException(400, "Invalid verification code")

    expires_at = get_session_expiry(settings.SESSION_DURATION_HOURS)
    store.mark_session_verified(token, expires_at)
    store.record_login(user.id)

    audit.record(AuditAction.TWO_FACTOR_VERIFIED, ctx, user_id=user.id, details={"method": method})
    if method == "backup_code":
        audit.record(AuditAction.BACKUP_CODE_USED, ctx, user_id=user.id, details={"remaining_codes": remaining})
    audit.record(AuditAction.LOGIN, ctx, user_id=user.id, details={"method": "2fa"})

    _set_session_cookie(response, settings, token, expires_at)

    out = {"success": True, "usedBackupCode": method == "backup_code", "user": _user_json(user)}
    if method == "backup_code":
        out["remainingBackupCodes"] = remaining
    return out

# --------------------------
# 2FA management
# --------------------------

@router.post("/2fa/setup")
def two_factor_setup(
    auth: AdminAuth = Depends(require_admin),
    ctx: RequestContext = Depends(get_context),
    settings: Settings = Depends(get_app_settings),
    store: AuthStore = Depends(get_store),
    audit: AuditLog = Depends(get_audit),
):
    user = auth.user
    if user.two_factor_enabled:
        raise HTTPException(400, "2FA is already enabled")

    secret = generate_totp_secret()
    uri = generate_totp_uri(user.email, secret, issuer=settings.APP_NAME)
    codes = generate_backup_codes(settings.BACKUP_CODE_COUNT, length=settings.BACKUP_CODE_LENGTH)

    try:
        # re-running setup replaces an abandoned secret
        store.store_pending_two_factor(user.id, secret, hash_backup_codes(codes, settings.SESSION_SECRET))
    except StoreUnavailable:
        raise HTTPException(500, "Failed to initialize 2FA setup")

    audit.record(AuditAction.TWO_FACTOR_SETUP_STARTED, ctx, user_id=user.id)
    return {
        "success": True,
        "secret": secret,
        "otpauthUri": uri,
        "qrCodeUrl": _qr_data_url(uri),
        "backupCodes": codes,
        "message": "Scan the QR code with your authenticator app, then enter a code to enable 2FA.",
    }


@router.post("/2fa/enable")
def two_factor_enable(
    payload: CodeReq,
    auth: AdminAuth = Depends(require_admin),
    ctx: RequestContext = Depends(get_context),
    settings: Settings = Depends(get_app_settings),
    store: AuthStore = Depends(get_store),
    audit: AuditLog = Depends(get_audit),
):
    if not payload.code or not payload.code.strip():
        raise HTTPException(400, "Verification code is required")

    user = auth.user
    if user.two_factor_enabled:
        raise HTTPException(400, "2FA is already enabled")
    if not user.two_factor_secret:
        raise HTTPException(400, "No 2FA setup in progress. Please run setup first.")

    code = payload.code.replace(" ", "").replace("-", "")
    if not verify_totp_code(code, user.two_factor_secret, window=settings.TOTP_WINDOW):
        audit.record(AuditAction.TWO_FACTOR_FAILED, ctx, user_id=user.id, details={"stage": "enable"})
        raise HTTPException(400, "Invalid verification code")

    # fresh batch; codes shown during setup are superseded
    codes = generate_backup_codes(settings.BACKUP_CODE_COUNT, length=settings.BACKUP_CODE_LENGTH)
    try:
        store.enable_two_factor(user.id, hash_backup_codes(codes, settings.SESSION_SECRET))
    except StoreUnavailable:
        raise HTTPException(500, "Failed to enable 2FA")

    audit.record(AuditAction.TWO_FACTOR_ENABLED, ctx, user_id=user.id)
    return {"success": True, "message": "2FA enabled successfully", "backupCodes": codes}


@router.post("/2fa/disable")
def two_factor_disable(
    payload: CodeReq,
    auth: AdminAuth = Depends(require_admin),
    ctx: RequestContext = Depends(get_context),
    settings: Settings = Depends(get_app_settings),
    store: AuthStore = Depends(get_store),
    audit: AuditLog = Depends(get_audit),
):
    if not payload.code or not payload.code.strip():
        raise HTTPException(400, "Verification code is required to disable 2FA")

    user = auth.user
    if not user.two_factor_enabled:
        raise HTTPException(400, "2FA is not enabled")

    method, remaining = _second_factor(store, user, payload.code.strip(), settings)
    if method is None:
        audit.record(AuditAction.TWO_FACTOR_FAILED, ctx, user_id=user.id, details={"stage": "disable"})
        raise HTTPException(400, "Invalid verification code")
    if method == "backup_code":
        audit.record(AuditAction.BACKUP_CODE_USED, ctx, user_id=user.id, details={"remaining_codes": remaining})

    try:
        store.disable_two_factor(user.id)
    except StoreUnavailable:
        raise HTTPException(500, "Failed to disable 2FA")

    audit.record(AuditAction.TWO_FACTOR_DISABLED, ctx, user_id=user.id, details={"method": method})
    return {"success": True, "message": "2FA has been disabled"}

# --------------------------
# Form tokens
# --------------------------

@router.get("/csrf")
def csrf_token(response: Response, settings: Settings = Depends(get_app_settings)):
    """
    Issues the CSRF cookie plus the token the page echoes in x-csrf-token,
    and a bot-protection form token for the public forms.
    """
    tok = generate_csrf_token(settings.SESSION_SECRET)
    response.headers.append(
        "set-cookie",
        create_csrf_cookie(
            tok.cookie_value,
            name=settings.CSRF_COOKIE_NAME,
            secure=settings.ADMIN_COOKIE_SECURE,
            max_age_s=settings.CSRF_TOKEN_TTL_HOURS * 3600,
        ),
    )
    return {
        "token": tok.token,
        "headerName": CSRF_HEADER_NAME,
        "formToken": generate_form_token(settings.SESSION_SECRET),
    }

# --------------------------
# Logout / me
# --------------------------

@router.post("/logout")
def logout(
    ctx: RequestContext = Depends(get_context),
    settings: Settings = Depends(get_app_settings),
    store: AuthStore = Depends(get_store),
    audit: AuditLog = Depends(get_audit),
):
    body = {"success": True, "message": "Logged out successfully"}
    token = session_token(ctx, settings)
    try:
        if token:
            sess = store.get_session(token)
            if sess is not None:
                store.delete_session(token)
                audit.record(AuditAction.LOGOUT, ctx, user_id=sess.user_id)
    except Exception:
        # the client cookie is cleared regardless
        LOG.exception("logout_failed")
        body = {"success": True, "message": "Logged out"}

    resp = JSONResponse(body)
    resp.headers.append(
        "set-cookie",
        create_logout_cookie(
            name=settings.ADMIN_COOKIE_NAME,
            secure=settings.ADMIN_COOKIE_SECURE,
            samesite=settings.ADMIN_COOKIE_SAMESITE,
        ),
    )
    return resp


@router.get("/me")
def me(
    ctx: RequestContext = Depends(get_context),
    settings: Settings = Depends(get_app_settings),
    store: AuthStore = Depends(get_store),
):
    token = session_token(ctx, settings)
    if not token:
        return JSONResponse({"authenticated": False, "error": "No session"}, status_code=401)

    try:
        sess, reason = load_session(store, token)
        if sess is None:
            return JSONResponse({"authenticated": False, "error": SESSION_ERRORS[reason]}, status_code=401)
        user = store.get_user(sess.user_id)
    except StoreUnavailable:
        return JSONResponse({"authenticated": False, "error": "Internal server error"}, status_code=500)

    if user is None:
        return JSONResponse({"authenticated": False, "error": "User not found"}, status_code=401)

    return {
        "authenticated": True,
        "twoFactorVerified": bool(sess.two_factor_verified),
        "twoFactorRequired": bool(user.two_factor_enabled) and not sess.two_factor_verified,
        "user": {
            "id": user.id,
            "email": user.email,
            "role": user.role,
            "twoFactorEnabled": bool(user.two_factor_enabled),
            "lastLoginAt": _iso(user.last_login_at),
        },
        "session": {"expiresAt": _iso(sess.expires_at)},
    }

# --------------------------
# Password reset
# --------------------------

@router.post("/forgot-password")
def forgot_password(
    payload: ForgotPasswordReq,
    ctx: RequestContext = Depends(get_context),
    settings: Settings = Depends(get_app_settings),
    store: AuthStore = Depends(get_store),
    audit: AuditLog = Depends(get_audit),
    limiter: RateLimiter = Depends(get_limiter),
    mailer: Mailer = Depends(get_mailer),
):
    if not payload.email or not payload.email.strip():
        raise HTTPException(400, "Email is required")

    email = sanitize_email(payload.email)
    try:
        validate_email(email, check_deliverability=False)
    except EmailNotValidError:
        raise HTTPException(400, "Invalid email format")

    email_key = hashlib.sha256(email.encode("utf-8")).hexdigest()
    decision = limiter.check(f"forgot-password:{email_key}", FORGOT_PASSWORD_EMAIL_CONFIG)
    if not decision.allowed:
        raise HTTPException(
            429,
            "Too many requests. Please wait a minute before trying again.",
            headers={"Retry-After": str(decision.retry_after or 60)},
        )

    out = {"success": True, "message": FORGOT_PASSWORD_MESSAGE}

    if settings.BOT_PROTECTION_ENABLED:
        verdict = detect_bot(
            ctx,
            payload.model_dump(exclude_none=True),
            secret=settings.SESSION_SECRET,
            min_age_s=settings.FORM_TOKEN_MIN_AGE_SECONDS,
            max_age_s=settings.FORM_TOKEN_MAX_AGE_SECONDS,
        )
        if verdict.is_bot:
            # indistinguishable from a normal request; nothing is issued or mailed
            LOG.warning("forgot_password_bot confidence=%s reasons=%s", verdict.confidence, verdict.reasons)
            audit.record(
                AuditAction.PASSWORD_RESET_REQUEST,
                ctx,
                details={"blocked": "bot", "confidence": verdict.confidence},
            )
            return out

    try:
        user = store.get_user_by_email(email)
        audit.record(
            AuditAction.PASSWORD_RESET_REQUEST,
            ctx,
            user_id=user.id if user else None,
            details={"user_found": user is not None},
        )
        if user is None:
            return out

        token = generate_reset_token()
        store.create_reset_token(
            user_id=user.id,
            token_hash=hash_reset_token(token, settings.SESSION_SECRET),
            expires_at=get_reset_token_expiry(settings.PASSWORD_RESET_TTL_MIN),
            ip=ctx.client_ip,
            user_agent=ctx.user_agent[:500] or None,
        )
        mailer.send_password_reset(
            to=user.email,
            reset_url=f"{settings.APP_URL.rstrip('/')}/admin/reset-password?token={token}",
            expires_minutes=settings.PASSWORD_RESET_TTL_MIN,
        )
        if settings.PASSWORD_RESET_DEBUG_RETURN_TOKEN:
            out["token_debug"] = token
    except Exception:
        # same answer whether or not the account exists
        LOG.exception("password_reset_request_failed")
    return out


@router.get("/reset-password")
def check_reset_token(
    token: str | None = None,
    settings: Settings = Depends(get_app_settings),
    store: AuthStore = Depends(get_store),
):
    if not token:
        return JSONResponse({"valid": False, "error": "Token is required"}, status_code=400)

    try:
        rec = store.get_reset_token(hash_reset_token(token, settings.SESSION_SECRET))
        user = store.get_user(rec.user_id) if is_reset_token_valid(rec) else None
    except StoreUnavailable:
        return JSONResponse({"valid": False, "error": "Internal server error"}, status_code=500)

    if user is None:
        return JSONResponse({"valid": False, "error": "Invalid or expired reset link"}, status_code=400)
    return {"valid": True, "email": mask_email(user.email)}


@router.post("/reset-password")
def reset_password(
    payload: ResetPasswordReq,
    ctx: RequestContext = Depends(get_context),
    settings: Settings = Depends(get_app_settings),
    store: AuthStore = Depends(get_store),
    audit: AuditLog = Depends(get_audit),
):
    if not payload.token:
        raise HTTPException(400, "Reset token is required")
    if not payload.password:
        raise HTTPException(400, "New password is required")

    ok, errors = validate_password(payload.password, min_length=settings.MIN_PASSWORD_LENGTH)
    if not ok:
        raise HTTPException(400, {"error": "Password does not meet requirements", "details": errors})

    rec = store.get_reset_token(hash_reset_token(payload.token, settings.SESSION_SECRET))
    if not is_reset_token_valid(rec):
        if rec is None:
            why = "not_found"
        elif rec.used_at is not None:
            why = "already_used"
        else:
            why = "expired"
        audit.record(
            AuditAction.PASSWORD_RESET_COMPLETE,
            ctx,
            user_id=rec.user_id if rec else None,
            details={"success": False, "reason": why},
        )
        raise HTTPException(400, INVALID_RESET_LINK)

    user = store.get_user(rec.user_id)
    if user is None:
        raise HTTPException(404, "User account not found")
    was_locked = user.locked_until is not None or (user.failed_login_attempts or 0) > 0

    try:
        revoked = store.complete_password_reset(
            rec.id, user.id, hash_password(payload.password, rounds=settings.BCRYPT_ROUNDS)
        )
    except StoreUnavailable:
        raise HTTPException(500, "Failed to update password. Please try again.")
    if revoked is None:
        # lost the race to a concurrent consumer
        audit.record(
            AuditAction.PASSWORD_RESET_COMPLETE,
            ctx,
            user_id=user.id,
            details={"success": False, "reason": "already_used"},
        )
        raise HTTPException(400, INVALID_RESET_LINK)

    audit.record(AuditAction.PASSWORD_RESET_COMPLETE, ctx, user_id=user.id, details={"success": True})
    audit.record(AuditAction.SESSION_REVOKED, ctx, user_id=user.id, details={"count": revoked, "reason": "password_reset"})
    if was_locked:
        audit.record(AuditAction.ACCOUNT_UNLOCKED, ctx, user_id=user.id, details={"reason": "password_reset"})

    return {
        "success": True,
        "message": "Password has been reset successfully. Please log in with your new password.",
    }
