# services/api/tradein_admin/admin_auth.py

from __future__ import annotations

import hashlib
import hmac
import re
import secrets
import string
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
from functools import lru_cache

import pyotp
from passlib.context import CryptContext

SESSION_COOKIE_NAME = "admin_session"
SESSION_DURATION_HOURS = 24
MAX_LOGIN_ATTEMPTS = 5
LOCKOUT_DURATION_MINUTES = 15
MIN_PASSWORD_LENGTH = 12
BCRYPT_ROUNDS = 12
BACKUP_CODE_COUNT = 10
BACKUP_CODE_LENGTH = 8
TOTP_WINDOW = 1
PASSWORD_RESET_TTL_MIN = 60

SPECIAL_CHARS = '!@#$%^&*(),.?":{}|<>'
_BACKUP_ALPHABET = string.ascii_uppercase + string.digits
_TOTP_RE = re.compile(r"^\d{6}$")


def _now() -> datetime:
    # naive UTC, matching what the DateTime columns store
    return datetime.now(timezone.utc).replace(tzinfo=None)

# --------------------------
# Passwords
# --------------------------

@lru_cache(maxsize=8)
def _pwd(rounds: int) -> CryptContext:
    return CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=rounds)

def validate_password(password: str, *, min_length: int = MIN_PASSWORD_LENGTH) -> tuple[bool, list[str]]:
    """Checks every rule and reports all failures, not just the first."""
    errors: list[str] = []
    if len(password) < min_length:
        errors.append(f"Password must be at least {min_length} characters")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"[0-9]", password):
        errors.append("Password must contain at least one number")
    if not any(c in SPECIAL_CHARS for c in password):
        errors.append("Password must contain at least one special character")
    return len(errors) == 0, errors

def hash_password(pw: str, *, rounds: int = BCRYPT_ROUNDS) -> str:
    return _pwd(rounds).hash(pw)

def verify_password(pw: str, pw_hash: str | None) -> bool:
    if not pw_hash:
        return False
    try:
        return _pwd(BCRYPT_ROUNDS).verify(pw, pw_hash)
    except (ValueError, TypeError):
        # malformed / unknown hash
        return False

@lru_cache(maxsize=8)
def dummy_password_hash(rounds: int = BCRYPT_ROUNDS) -> str:
    # compared against when the email is unknown, so both paths cost one bcrypt check
    return hash_password(secrets.token_urlsafe(16), rounds=rounds)

# --------------------------
# Peppered hashes
# --------------------------

def _peppered_sha256(value: str, pepper: str) -> str:
    # stable hash w/ server pepper (SESSION_SECRET)
    h = hashlib.sha256()
    h.update(pepper.encode("utf-8"))
    h.update(b":")
    h.update(value.encode("utf-8"))
    return h.hexdigest()

# --------------------------
# TOTP 2FA
# --------------------------

def generate_totp_secret() -> str:
    return pyotp.random_base32()

def generate_totp_uri(email: str, secret: str, *, issuer: str = "Quirk Admin") -> str:
    # issuer is the app name shown in authenticator apps
    return pyotp.TOTP(secret).provisioning_uri(name=email, issuer_name=issuer)

def verify_totp_code(code: str, secret: str | None, *, window: int = TOTP_WINDOW) -> bool:
    if not secret or not isinstance(code, str) or not _TOTP_RE.match(code):
        return False
    try:
        # allow small clock drift
        return bool(pyotp.TOTP(secret).verify(code, valid_window=window))
    except (ValueError, TypeError):
        return False

def looks_like_totp(code: str) -> bool:
    return bool(_TOTP_RE.match(code))

# --------------------------
# Backup codes
# --------------------------

def normalize_backup_code(code: str) -> str:
    return code.replace(" ", "").replace("-", "").upper()

def generate_backup_codes(count: int = BACKUP_CODE_COUNT, *, length: int = BACKUP_CODE_LENGTH) -> list[str]:
    # human-friendly: codes like A1B2-C3D4, distinct within one batch
    half = length // 2
    out: list[str] = []
    while len(out) < count:
        raw = "".join(secrets.choice(_BACKUP_ALPHABET) for _ in range(length))
        code = f"{raw[:half]}-{raw[half:]}"
        if code not in out:
            out.append(code)
    return out

def hash_backup_code(code: str, pepper: str = "") -> str:
    return _peppered_sha256(normalize_backup_code(code), pepper)

def hash_backup_codes(codes: list[str], pepper: str = "") -> list[str]:
    return [hash_backup_code(c, pepper) for c in codes]

def verify_backup_code(code: str, hashed_codes: list[str], pepper: str = "") -> tuple[bool, int]:
    """
    Returns (valid, index) where index is the position to consume, -1 if none.
    Every stored hash is compared so timing does not depend on the match position.
    """
    candidate = hash_backup_code(code, pepper)
    index = -1
    for i, h in enumerate(hashed_codes):
        if hmac.compare_digest(candidate, str(h)) and index == -1:
            index = i
    return index != -1, index

# --------------------------
# Sessions + cookies
# --------------------------

def generate_session_token() -> str:
    return secrets.token_urlsafe(32)

def get_session_expiry(hours: int = SESSION_DURATION_HOURS) -> datetime:
    return _now() + timedelta(hours=hours)

def is_session_expired(session) -> bool:
    expires_at = getattr(session, "expires_at", None)
    return expires_at is None or expires_at < _now()

def create_session_cookie(
    token: str,
    expires_at: datetime,
    *,
    name: str = SESSION_COOKIE_NAME,
    secure: bool = True,
    samesite: str = "Strict",
) -> str:
    expires = format_datetime(expires_at.replace(tzinfo=timezone.utc), usegmt=True)
    parts = [f"{name}={token}", "Path=/", "HttpOnly", f"SameSite={samesite}", f"Expires={expires}"]
    if secure:
        parts.append("Secure")
    return "; ".join(parts)

def create_logout_cookie(*, name: str = SESSION_COOKIE_NAME, secure: bool = True, samesite: str = "Strict") -> str:
    parts = [
        f"{name}=",
        "Path=/",
        "HttpOnly",
        f"SameSite={samesite}",
        "Max-Age=0",
        "Expires=Thu, 01 Jan 1970 00:00:00 GMT",
    ]
    if secure:
        parts.append("Secure")
    return "; ".join(parts)

def parse_session_cookie(cookie_header: str | None, *, name: str = SESSION_COOKIE_NAME) -> str | None:
    if not cookie_header or not isinstance(cookie_header, str):
        return None
    for part in cookie_header.split(";"):
        key, sep, value = part.strip().partition("=")
        if sep and key.strip() == name:
            value = value.strip()
            return value or None
    return None

# --------------------------
# Account lockout
# --------------------------

def is_account_locked(locked_until: datetime | None) -> bool:
    return locked_until is not None and locked_until > _now()

def should_lock_account(failed_attempts: int, *, max_attempts: int = MAX_LOGIN_ATTEMPTS) -> bool:
    return failed_attempts >= max_attempts

def get_lockout_expiry(minutes: int = LOCKOUT_DURATION_MINUTES) -> datetime:
    return _now() + timedelta(minutes=minutes)

# --------------------------
# Password reset tokens
# --------------------------

def generate_reset_token() -> str:
    return secrets.token_urlsafe(32)

def hash_reset_token(token: str, pepper: str = "") -> str:
    return _peppered_sha256(token, pepper)

def get_reset_token_expiry(minutes: int = PASSWORD_RESET_TTL_MIN) -> datetime:
    return _now() + timedelta(minutes=minutes)

def is_reset_token_valid(rec) -> bool:
    """Unused and unexpired. Consumption is permanent regardless of remaining time."""
    return rec is not None and rec.used_at is None and rec.expires_at > _now()

def mask_email(email: str) -> str:
    return re.sub(r"^(.{2})(.*)(@.*)$", r"\1***\3", email)
