# services/api/tradein_admin/sanitize.py
"""
Input sanitization: pure transforms applied to untrusted input before it is
stored or written to logs. Nothing here raises on bad input.
"""

from __future__ import annotations

import ipaddress
import re
import unicodedata
from typing import Any
from urllib.parse import urlsplit

import bleach

REDACTED = "[REDACTED]"

HTML_ENTITIES = {
    "&": "&amp;",
    "<": "&lt;",
    ">": "&gt;",
    '"': "&quot;",
    "'": "&#x27;",
    "/": "&#x2F;",
    "`": "&#x60;",
    "=": "&#x3D;",
}
_HTML_ESCAPE_RE = re.compile(r"[&<>\"'`=/]")

DEFAULT_SENSITIVE_FIELDS = (
    "password",
    "token",
    "apikey",
    "api_key",
    "api-key",
    "secret",
    "authorization",
    "cookie",
    "ssn",
    "creditcard",
    "credit_card",
    "cardnumber",
    "card_number",
    "cvv",
    "pin",
)

# --------------------------
# HTML
# --------------------------

def escape_html(value: str) -> str:
    return _HTML_ESCAPE_RE.sub(lambda m: HTML_ENTITIES[m.group(0)], value)

def strip_html(value: str) -> str:
    # bleach drops the tags and keeps their text; leftover entities become spaces
    text = bleach.clean(value, tags=[], attributes={}, strip=True, strip_comments=True)
    text = re.sub(r"&[^;\s]+;", " ", text)
    return text.strip()

# --------------------------
# Strings
# --------------------------

def sanitize_string(
    value: str,
    max_length: int | None = 1000,
    *,
    allow_newlines: bool = False,
    allow_unicode: bool = True,
) -> str:
    s = value.strip().replace("\x00", "")

    if allow_unicode:
        # fold compatibility forms (homoglyph-ish lookalikes)
        s = unicodedata.normalize("NFKC", s)
    else:
        s = re.sub(r"[^\x20-\x7E\n\r\t]", "", s)

    if allow_newlines:
        s = re.sub(r"[ \t\f\v]+", " ", s)
        s = re.sub(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]", "", s)
    else:
        s = re.sub(r"\s+", " ", s)
        s = re.sub(r"[\x00-\x1F\x7F]", "", s)

    if max_length is not None and len(s) > max_length:
        s = s[:max_length]
    return s

def sanitize_name(value: str) -> str:
    s = unicodedata.normalize("NFKC", value.strip())
    s = re.sub(r"[^a-zA-Z\s'-]", "", s)
    s = re.sub(r"\s+", " ", s).strip()
    return s[:50]

def sanitize_email(value: str) -> str:
    s = unicodedata.normalize("NFKC", value.strip().lower())
    s = re.sub(r"[^\w.@+-]", "", s)
    return s[:254]

def sanitize_phone(value: str) -> str:
    # digits only; a leading country code digit is kept as-is
    return re.sub(r"\D", "", value)[:15]

def sanitize_vin(value: str) -> str:
    s = re.sub(r"[^A-Z0-9]", "", value.strip().upper())
    return s[:17]

def sanitize_zip_code(value: str) -> str:
    digits = re.sub(r"\D", "", value)
    if len(digits) == 9:
        return f"{digits[:5]}-{digits[5:]}"
    return digits[:5]

def escape_sql(value: str) -> str:
    """Last resort only. Queries go through bound parameters."""
    return (
        value.replace("\\", "\\\\")
        .replace("'", "''")
        .replace('"', '\\"')
        .replace(";", "\\;")
        .replace("--", "")
    )

_HOST_LABEL_RE = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")
_URL_FORBIDDEN_RE = re.compile(r"[\s\x00-\x1F\x7F]")

def _valid_host(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
        return True
    except ValueError:
        pass
    try:
        ascii_host = host.encode("idna").decode("ascii")
    except UnicodeError:
        return False
    if len(ascii_host) > 253:
        return False
    return all(_HOST_LABEL_RE.match(label) for label in ascii_host.rstrip(".").split("."))

def sanitize_url(value: str) -> str | None:
    if not isinstance(value, str):
        return None
    candidate = value.strip()
    # urlsplit silently drops tabs/newlines instead of failing
    if _URL_FORBIDDEN_RE.search(candidate):
        return None
    try:
        parts = urlsplit(candidate)
        port = parts.port  # raises on garbage ports
    except ValueError:
        return None
    if parts.scheme.lower() not in ("http", "https"):
        return None
    if not parts.hostname or not _valid_host(parts.hostname):
        return None
    if parts.username or parts.password:
        return None
    if port is not None and not (0 < port < 65536):
        return None
    return parts.geturl()

# --------------------------
# Structures
# --------------------------

def sanitize_object(obj: Any, *, max_depth: int = 10, max_string_length: int = 10000) -> Any:
    """Applies sanitize_string to every string (keys included) in nested dicts/lists."""

    def _clean(value: Any, depth: int) -> Any:
        if depth > max_depth:
            return "[MAX_DEPTH_EXCEEDED]"
        if isinstance(value, str):
            return sanitize_string(value, max_length=max_string_length)
        if isinstance(value, (list, tuple)):
            return [_clean(v, depth + 1) for v in value]
        if isinstance(value, dict):
            return {
                (sanitize_string(k, max_length=100) if isinstance(k, str) else k): _clean(v, depth + 1)
                for k, v in value.items()
            }
        return value

    return _clean(obj, 0)

def sanitize_for_logging(data: dict[str, Any], sensitive_fields=DEFAULT_SENSITIVE_FIELDS) -> dict[str, Any]:
    """
    Redacts values whose key contains a sensitive marker (case-insensitive,
    so "apiKey", "X-Api-Key" and "refresh_token" all match). Other values pass through.
    """
    markers = tuple(f.lower() for f in sensitive_fields)

    def _redact(obj: dict, depth: int) -> dict:
        if depth > 10:
            return {"[MAX_DEPTH]": True}
        out: dict[str, Any] = {}
        for key, value in obj.items():
            lk = str(key).lower()
            if any(m in lk for m in markers):
                out[key] = REDACTED
            elif isinstance(value, dict):
                out[key] = _redact(value, depth + 1)
            elif isinstance(value, list):
                out[key] = [_redact(v, depth + 1) if isinstance(v, dict) else v for v in value]
            else:
                out[key] = value
        return out

    return _redact(data, 0)
