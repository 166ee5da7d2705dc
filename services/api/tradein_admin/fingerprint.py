# services/api/tradein_admin/fingerprint.py

from __future__ import annotations

import hashlib
import ipaddress
from typing import Mapping

UNKNOWN_IP = "unknown"


def _valid_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def get_client_ip(headers: Mapping[str, str]) -> str:
    """
    Proxy headers in trust order: cf-connecting-ip, x-real-ip, then the first
    x-forwarded-for hop. A value that is not an IP address is skipped.
    Header names are expected lower-cased.
    """
    for name in ("cf-connecting-ip", "x-real-ip"):
        value = (headers.get(name) or "").strip()
        if value and _valid_ip(value):
            return value

    forwarded = headers.get("x-forwarded-for") or ""
    first = forwarded.split(",")[0].strip()
    if first and _valid_ip(first):
        return first
    return UNKNOWN_IP


def generate_fingerprint(headers: Mapping[str, str]) -> str:
    # stable pseudo-identity: ip + ua + language + encoding
    parts = [
        get_client_ip(headers),
        headers.get("user-agent", ""),
        headers.get("accept-language", ""),
        headers.get("accept-encoding", ""),
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()[:16]
