# services/api/tradein_admin/logging_mw.py

import logging
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

LOG = logging.getLogger("tradein_admin.http")

REDACT_HEADERS = {"authorization", "cookie", "set-cookie", "x-api-key"}

SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
}


def _redact_headers(headers: dict) -> dict:
    out = {}
    for k, v in headers.items():
        if k.lower() in REDACT_HEADERS:
            out[k] = "[REDACTED]"
        else:
            out[k] = v if len(v) < 200 else (v[:200] + "...")
    return out


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        rid = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        request.state.request_id = rid
        start = time.time()
        status = 500

        try:
            response: Response = await call_next(request)
            status = response.status_code
        finally:
            # bodies carry passwords and codes; never logged
            LOG.info(
                "request",
                extra={
                    "request_id": rid,
                    "method": request.method,
                    "path": request.url.path,
                    "status": status,
                    "duration_ms": int((time.time() - start) * 1000),
                    "client": request.client.host if request.client else None,
                    "headers": _redact_headers(dict(request.headers)),
                },
            )

        response.headers["X-Request-Id"] = rid
        for k, v in SECURITY_HEADERS.items():
            response.headers.setdefault(k, v)
        return response


class _RequestFieldsFilter(logging.Filter):
    # lets one format string serve both request and plain records
    def filter(self, record: logging.LogRecord) -> bool:
        for name in ("request_id", "method", "path", "status", "duration_ms"):
            if not hasattr(record, name):
                setattr(record, name, "-")
        return True


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger("tradein_admin")
    if getattr(root, "_configured", False):
        root.setLevel(level.upper())
        return
    handler = logging.StreamHandler()
    handler.addFilter(_RequestFieldsFilter())
    handler.setFormatter(
        logging.Formatter(
            "%(levelname)s %(name)s %(message)s | %(request_id)s %(method)s %(path)s %(status)s %(duration_ms)s"
        )
    )
    root.addHandler(handler)
    root.setLevel(level.upper())
    root._configured = True
