# services/api/tradein_admin/csrf.py
"""
Double-submit CSRF tokens for cookie-authenticated admin requests.

The issuer sets an HttpOnly cookie "<token>.<issued_ms>.<hmac>" and hands the
bare token to the page. Mutating requests echo it in the x-csrf-token header;
the request is accepted when the cookie signature holds, the cookie is within
its TTL and the header matches the cookie's token.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import time
from dataclasses import dataclass

from .context import RequestContext

CSRF_HEADER_NAME = "x-csrf-token"
CSRF_TOKEN_BYTES = 32
MUTATING_METHODS = ("POST", "PUT", "PATCH", "DELETE")


@dataclass
class CsrfToken:
    token: str
    issued_ms: int
    signature: str

    @property
    def cookie_value(self) -> str:
        return f"{self.token}.{self.issued_ms}.{self.signature}"


def _sign(token: str, issued_ms: int, secret: str) -> str:
    msg = f"{token}:{issued_ms}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), msg, hashlib.sha256).hexdigest()


def generate_csrf_token(secret: str, *, now_ms: int | None = None) -> CsrfToken:
    issued = int(time.time() * 1000) if now_ms is None else int(now_ms)
    token = secrets.token_hex(CSRF_TOKEN_BYTES)
    return CsrfToken(token=token, issued_ms=issued, signature=_sign(token, issued, secret))


def parse_csrf_cookie(value: str | None) -> CsrfToken | None:
    if not value:
        return None
    parts = value.split(".")
    if len(parts) != 3 or not all(parts) or not parts[1].isdigit():
        return None
    return CsrfToken(token=parts[0], issued_ms=int(parts[1]), signature=parts[2])


def create_csrf_cookie(value: str, *, name: str, secure: bool, max_age_s: int) -> str:
    # Lax so the token survives top-level navigation into the admin pages
    parts = [f"{name}={value}", "HttpOnly", "SameSite=Lax", "Path=/", f"Max-Age={int(max_age_s)}"]
    if secure:
        parts.append("Secure")
    return "; ".join(parts)


def validate_csrf(
    ctx: RequestContext,
    secret: str,
    *,
    cookie_name: str,
    max_age_s: int,
    now_ms: int | None = None,
) -> tuple[bool, str | None]:
    """Returns (valid, error). Safe methods always pass."""
    if ctx.method not in MUTATING_METHODS:
        return True, None

    raw = ctx.cookie(cookie_name)
    if not raw:
        return False, "Missing CSRF cookie"
    stored = parse_csrf_cookie(raw)
    if stored is None:
        return False, "Invalid CSRF cookie format"

    now = int(time.time() * 1000) if now_ms is None else int(now_ms)
    if now - stored.issued_ms > max_age_s * 1000:
        return False, "CSRF token expired"
    if not hmac.compare_digest(
        stored.signature.encode("utf-8"), _sign(stored.token, stored.issued_ms, secret).encode("utf-8")
    ):
        return False, "Invalid CSRF cookie signature"

    submitted = ctx.header(CSRF_HEADER_NAME)
    if not submitted:
        return False, "Missing CSRF token in request"
    if not hmac.compare_digest(submitted.encode("utf-8"), stored.token.encode("utf-8")):
        return False, "CSRF token mismatch"
    return True, None
