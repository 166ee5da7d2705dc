# services/api/tests/test_bot_protection.py

import time

from tradein_admin.bot_protection import (
    detect_bot,
    generate_form_token,
    suspicion_score,
    validate_form_token,
)
from tradein_admin.context import RequestContext

SECRET = "form-secret"
AGES = {"min_age_s": 3, "max_age_s": 30 * 60}

BROWSER = {
    "user-agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/120.0 Safari/537.36",
    "accept": "text/html",
    "accept-language": "en-US",
    "accept-encoding": "gzip, br",
    "referer": "https://quirkcars.com/trade-in",
}


def _ctx(headers=None, method="GET"):
    return RequestContext.build(BROWSER if headers is None else headers, method=method)


class TestSuspicionScore:
    def test_browser_scores_zero(self):
        assert suspicion_score(_ctx()) == 0

    def test_missing_everything(self):
        # no UA 20, no accept-language 5, no accept 5
        assert suspicion_score(_ctx({})) == 30

    def test_short_crawler_ua(self):
        ctx = _ctx({"user-agent": "curl/8.0", "accept": "*/*", "accept-language": "en"})
        assert suspicion_score(ctx) == 25


class TestFormToken:
    def test_valid_after_min_age(self):
        now = int(time.time() * 1000)
        token = generate_form_token(SECRET, now_ms=now - 10_000)
        res = validate_form_token(token, SECRET, now_ms=now, **AGES)
        assert res.valid
        assert res.age_ms == 10_000

    def test_too_fast(self):
        now = int(time.time() * 1000)
        token = generate_form_token(SECRET, now_ms=now - 500)
        res = validate_form_token(token, SECRET, now_ms=now, **AGES)
        assert not res.valid and res.reason == "Form submitted too quickly"

    def test_expired(self):
        now = int(time.time() * 1000)
        token = generate_form_token(SECRET, now_ms=now - 31 * 60 * 1000)
        res = validate_form_token(token, SECRET, now_ms=now, **AGES)
        assert not res.valid and res.reason == "Form token expired"

    def test_wrong_secret(self):
        token = generate_form_token(SECRET, now_ms=int(time.time() * 1000) - 10_000)
        res = validate_form_token(token, "other", **AGES)
        assert not res.valid and res.reason == "Invalid token signature"

    def test_garbage(self):
        assert not validate_form_token("%%%not-base64", SECRET, **AGES).valid
        assert not validate_form_token("", SECRET, **AGES).valid


class TestDetectBot:
    def test_browser_get_is_clean(self):
        res = detect_bot(_ctx(), secret=SECRET, **AGES)
        assert res.is_bot is False
        assert res.confidence == 0
        assert res.reasons == []

    def test_scripted_client(self):
        res = detect_bot(_ctx({"user-agent": "python-requests/2.31"}, method="POST"), secret=SECRET, **AGES)
        assert res.is_bot is True
        assert any("python-requests" in r for r in res.reasons)
        assert res.confidence == 100

    def test_search_engine_allowed(self):
        ua = "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)"
        res = detect_bot(_ctx({**BROWSER, "user-agent": ua}), secret=SECRET, **AGES)
        assert res.is_bot is False

    def test_honeypot(self):
        res = detect_bot(_ctx(), {"website": "http://spam.example"}, secret=SECRET, **AGES)
        assert res.is_bot is True
        assert "Honeypot field filled" in res.reasons

    def test_valid_form_post_with_human_signals(self):
        token = generate_form_token(SECRET, now_ms=int(time.time() * 1000) - 20_000)
        form = {"formToken": token, "mouseMovements": 40, "keystrokes": 30, "timeOnPage": 45_000}
        res = detect_bot(_ctx(method="POST"), form, secret=SECRET, **AGES)
        assert res.is_bot is False
        assert res.confidence == 0

    def test_behavioural_signals_add_up(self):
        token = generate_form_token(SECRET, now_ms=int(time.time() * 1000) - 20_000)
        form = {"formToken": token, "mouseMovements": 0, "keystrokes": 0, "timeOnPage": 1000}
        res = detect_bot(_ctx(method="POST"), form, secret=SECRET, **AGES)
        assert res.confidence == 60
        assert res.is_bot is True
