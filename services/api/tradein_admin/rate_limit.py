# services/api/tradein_admin/rate_limit.py
"""
Fixed-window request counter per (endpoint, client) key, with temporary
blocks and an accumulated suspicion score.

The policy is one pure function, apply_policy(); stores only decide where the
record lives and how the read-modify-write is made atomic per key.
"""

from __future__ import annotations

import json
import logging
import math
import threading
import time
from dataclasses import asdict, dataclass

from redis import Redis
from redis.exceptions import RedisError, WatchError

LOG = logging.getLogger("tradein_admin.rate_limit")


@dataclass(frozen=True)
class RateLimitConfig:
    window_ms: int
    max_requests: int
    block_duration_ms: int
    suspicion_threshold: int


_MIN = 60 * 1000
_HOUR = 60 * _MIN

DEFAULT_CONFIG = RateLimitConfig(_MIN, 30, 15 * _MIN, 100)

RATE_LIMIT_CONFIGS: dict[str, RateLimitConfig] = {
    "/api/chat": RateLimitConfig(_MIN, 10, 5 * _MIN, 50),
    "/api/decode-vin": RateLimitConfig(_MIN, 20, 10 * _MIN, 75),
    "/api/valuation": RateLimitConfig(_MIN, 5, 30 * _MIN, 30),
    "/api/submit-lead": RateLimitConfig(_HOUR, 3, 24 * _HOUR, 20),
    "/api/submit-offer": RateLimitConfig(_MIN, 10, 15 * _MIN, 50),
    "/api/vehicle-image": RateLimitConfig(_MIN, 30, 5 * _MIN, 100),
    "/api/offers": RateLimitConfig(_MIN, 30, 5 * _MIN, 100),
    "/api/admin/auth/login": RateLimitConfig(_MIN, 10, 15 * _MIN, 60),
    "/api/admin/auth/forgot-password": RateLimitConfig(_MIN, 5, 15 * _MIN, 60),
}

# per-email throttle for forgot-password, on top of the per-client one
FORGOT_PASSWORD_EMAIL_CONFIG = RateLimitConfig(_MIN, 3, _MIN, 1000)


def config_for(endpoint: str | None) -> RateLimitConfig:
    if endpoint and endpoint in RATE_LIMIT_CONFIGS:
        return RATE_LIMIT_CONFIGS[endpoint]
    return DEFAULT_CONFIG


def resolve_endpoint(path: str) -> str:
    """Longest configured endpoint that is the path or a parent of it; else the path."""
    best = None
    for ep in RATE_LIMIT_CONFIGS:
        if path == ep or path.startswith(ep + "/"):
            if best is None or len(ep) > len(best):
                best = ep
    return best or path


@dataclass
class RateLimitRecord:
    count: int = 0
    window_start: int = 0  # ms
    blocked_until: int | None = None  # ms
    suspicion: int = 0


@dataclass(frozen=True)
class Decision:
    allowed: bool
    blocked: bool
    remaining: int
    reset_time: int  # absolute, ms
    retry_after: int | None = None  # seconds


def _now_ms() -> int:
    return int(time.time() * 1000)


def _ceil_s(ms: int) -> int:
    return max(1, math.ceil(ms / 1000))


def apply_policy(
    record: RateLimitRecord | None,
    config: RateLimitConfig,
    now: int,
    suspicion: int = 0,
) -> tuple[RateLimitRecord, Decision]:
    rec = record or RateLimitRecord()

    if rec.blocked_until is not None:
        if now < rec.blocked_until:
            return rec, Decision(
                allowed=False,
                blocked=True,
                remaining=0,
                reset_time=rec.blocked_until,
                retry_after=_ceil_s(rec.blocked_until - now),
            )
        # block served: forgive half, not all
        rec.blocked_until = None
        rec.suspicion //= 2
        rec.count = 0

    if record is None or rec.count == 0 or now - rec.window_start >= config.window_ms:
        if record is not None:
            rec.suspicion = max(0, rec.suspicion - 5)
        rec.count = 1
        rec.window_start = now
    else:
        rec.count += 1

    if suspicion > 0:
        rec.suspicion = min(rec.suspicion + suspicion, config.suspicion_threshold * 2)
    if rec.suspicion >= config.suspicion_threshold or rec.count > config.max_requests:
        rec.blocked_until = now + config.block_duration_ms
        return rec, Decision(
            allowed=False,
            blocked=True,
            remaining=0,
            reset_time=rec.blocked_until,
            retry_after=_ceil_s(config.block_duration_ms),
        )

    return rec, Decision(
        allowed=True,
        blocked=False,
        remaining=max(0, config.max_requests - rec.count),
        reset_time=rec.window_start + config.window_ms,
    )


def _ttl_ms(rec: RateLimitRecord, config: RateLimitConfig, now: int) -> int:
    window_left = rec.window_start + config.window_ms - now
    block_left = (rec.blocked_until - now) if rec.blocked_until else 0
    return max(window_left, block_left, 1000)


# --------------------------
# Stores
# --------------------------

class MemoryRateLimitStore:
    """Single-process store: a dict of records guarded by one lock."""

    def __init__(self, max_keys: int = 10000):
        self.max_keys = max_keys
        self._records: dict[str, tuple[RateLimitRecord, int]] = {}
        self._lock = threading.Lock()

    def check(self, key: str, config: RateLimitConfig, suspicion: int = 0, now: int | None = None) -> Decision:
        now = _now_ms() if now is None else now
        with self._lock:
            entry = self._records.get(key)
            record = entry[0] if entry and entry[1] > now else None
            if record is None and len(self._records) >= self.max_keys:
                self._sweep(now)

            record, decision = apply_policy(record, config, now, suspicion)
            self._records[key] = (record, now + _ttl_ms(record, config, now))
            return decision

    def _sweep(self, now: int) -> None:
        expired = [k for k, (_, exp) in self._records.items() if exp <= now]
        for k in expired:
            del self._records[k]
        if len(self._records) >= self.max_keys:
            LOG.warning("rate_limit_store_full keys=%s", len(self._records))

    def reset(self) -> None:
        with self._lock:
            self._records.clear()


class RedisRateLimitStore:
    """
    Shared store for multi-instance deployments. The record is a JSON blob
    per key; WATCH/MULTI makes the read-modify-write atomic.
    """

    def __init__(self, client: Redis, prefix: str = "rl:"):
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, *, timeout_s: int = 5) -> "RedisRateLimitStore":
        client = Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=timeout_s,
            socket_connect_timeout=timeout_s,
        )
        return cls(client)

    def check(self, key: str, config: RateLimitConfig, suspicion: int = 0, now: int | None = None) -> Decision:
        rkey = self.prefix + key
        now = _now_ms() if now is None else now
        out: dict = {}

        def _txn(pipe) -> None:
            raw = pipe.get(rkey)
            record = RateLimitRecord(**json.loads(raw)) if raw else None
            record, decision = apply_policy(record, config, now, suspicion)
            pipe.multi()
            pipe.set(rkey, json.dumps(asdict(record)), px=_ttl_ms(record, config, now))
            out["decision"] = decision

        # retries on WatchError until the key was not touched mid-flight
        self.client.transaction(_txn, rkey)
        return out["decision"]


# --------------------------
# Limiter
# --------------------------

class RateLimiter:
    def __init__(self, store, *, fail_open: bool = True):
        self.store = store
        self.fail_open = fail_open

    def check(self, key: str, config: RateLimitConfig = DEFAULT_CONFIG, suspicion: int = 0) -> Decision:
        try:
            return self.store.check(key, config, suspicion)
        except (RedisError, WatchError, ValueError, TypeError) as e:
            LOG.error("rate_limit_store_error %s: %s", type(e).__name__, e)
            now = _now_ms()
            if self.fail_open:
                return Decision(
                    allowed=True,
                    blocked=False,
                    remaining=config.max_requests,
                    reset_time=now + config.window_ms,
                )
            return Decision(
                allowed=False,
                blocked=False,
                remaining=0,
                reset_time=now + config.window_ms,
                retry_after=_ceil_s(config.window_ms),
            )

    def check_endpoint(self, endpoint: str, client_key: str, suspicion: int = 0) -> Decision:
        return self.check(f"{endpoint}:{client_key}", config_for(endpoint), suspicion)
