# services/api/tradein_admin/bot_protection.py
"""
Header and behaviour heuristics for telling scripted clients from browsers.

suspicion_score() is the cheap per-request signal the rate limiter accumulates;
detect_bot() is the full check for form submissions (honeypot, signed form
token, interaction counters).
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Mapping

from .context import RequestContext

HONEYPOT_FIELD = "website"

BOT_USER_AGENTS = (
    "bot", "crawler", "spider", "scraper", "curl", "wget", "python-requests",
    "httpclient", "java/", "apache-httpclient", "okhttp", "axios", "node-fetch",
    "go-http-client", "libwww", "lwp-", "scrapy", "phantomjs", "headless",
    "selenium", "puppeteer", "playwright", "webdriver",
)

# search engines and link unfurlers
GOOD_BOTS = (
    "googlebot", "bingbot", "slurp", "duckduckbot", "baiduspider",
    "yandexbot", "facebot", "facebookexternalhit", "twitterbot",
    "linkedinbot", "pinterest", "whatsapp", "telegram",
)

_CRAWLER_MARKERS = ("bot", "crawler", "spider", "scraper", "curl", "wget", "python", "headless")


@dataclass
class BotDetectionResult:
    is_bot: bool
    confidence: int
    reasons: list[str] = field(default_factory=list)


@dataclass
class FormTokenResult:
    valid: bool
    age_ms: int | None = None
    reason: str | None = None


# --------------------------
# Per-request suspicion
# --------------------------

def suspicion_score(ctx: RequestContext) -> int:
    score = 0
    ua = ctx.user_agent
    if not ua:
        score += 20
    else:
        if len(ua) < 20:
            score += 10
        if any(m in ua.lower() for m in _CRAWLER_MARKERS):
            score += 15
    if not ctx.header("accept-language"):
        score += 5
    if not ctx.header("accept"):
        score += 5
    return score


# --------------------------
# Form tokens
# --------------------------

def _sign(data: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), data.encode("utf-8"), hashlib.sha256).hexdigest()[:32]


def generate_form_token(secret: str, *, now_ms: int | None = None) -> str:
    ts = int(time.time() * 1000) if now_ms is None else int(now_ms)
    data = f"{ts}:{secrets.token_hex(8)}"
    raw = f"{data}:{_sign(data, secret)}"
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")


def validate_form_token(
    token: str,
    secret: str,
    *,
    min_age_s: int,
    max_age_s: int,
    now_ms: int | None = None,
) -> FormTokenResult:
    try:
        decoded = base64.urlsafe_b64decode(token.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError):
        return FormTokenResult(False, reason="Token decode error")

    parts = decoded.split(":")
    if len(parts) != 3 or not all(parts):
        return FormTokenResult(False, reason="Invalid token format")
    ts_str, nonce, sig = parts
    if not ts_str.isdigit():
        return FormTokenResult(False, reason="Invalid timestamp")

    if not hmac.compare_digest(sig, _sign(f"{ts_str}:{nonce}", secret)):
        return FormTokenResult(False, reason="Invalid token signature")

    now = int(time.time() * 1000) if now_ms is None else int(now_ms)
    age = now - int(ts_str)
    if age < min_age_s * 1000:
        return FormTokenResult(False, age_ms=age, reason="Form submitted too quickly")
    if age > max_age_s * 1000:
        return FormTokenResult(False, age_ms=age, reason="Form token expired")
    return FormTokenResult(True, age_ms=age)


# --------------------------
# Full detection
# --------------------------

def detect_bot(
    ctx: RequestContext,
    form: Mapping[str, Any] | None = None,
    *,
    secret: str,
    min_age_s: int,
    max_age_s: int,
) -> BotDetectionResult:
    """
    form may carry: website (honeypot), formToken, mouseMovements,
    keystrokes, timeOnPage (ms). Absent counters are not scored.
    """
    reasons: list[str] = []
    score = 0

    ua = ctx.user_agent.lower()
    if not ua:
        score += 40
        reasons.append("Missing user agent")
    else:
        for marker in BOT_USER_AGENTS:
            if marker in ua:
                if not any(good in ua for good in GOOD_BOTS):
                    score += 50
                    reasons.append(f"Bot user agent detected: {marker}")
                break
        if len(ua) < 30:
            score += 15
            reasons.append("Unusually short user agent")

    if not ctx.header("accept"):
        score += 10
        reasons.append("Missing Accept header")
    if not ctx.header("accept-language"):
        score += 10
        reasons.append("Missing Accept-Language header")
    if not ctx.header("accept-encoding"):
        score += 5
        reasons.append("Missing Accept-Encoding header")
    if ctx.method == "POST" and not ctx.header("referer"):
        score += 15
        reasons.append("POST request without referer")

    form = form or {}
    if form.get(HONEYPOT_FIELD):
        score += 100
        reasons.append("Honeypot field filled")

    token = form.get("formToken")
    if token:
        res = validate_form_token(str(token), secret, min_age_s=min_age_s, max_age_s=max_age_s)
        if not res.valid:
            score += 30
            reasons.append(f"Invalid form token: {res.reason}")
    elif ctx.method == "POST":
        score += 20
        reasons.append("Missing form token")

    mouse = form.get("mouseMovements")
    if mouse is not None and mouse < 3:
        score += 20
        reasons.append("Insufficient mouse movements")
    keys = form.get("keystrokes")
    if keys is not None and keys < 5:
        score += 15
        reasons.append("Insufficient keystrokes")
    on_page = form.get("timeOnPage")
    if on_page is not None and on_page < 5000:
        score += 25
        reasons.append("Time on page too short")

    confidence = min(100, score)
    return BotDetectionResult(is_bot=confidence >= 50, confidence=confidence, reasons=reasons)
