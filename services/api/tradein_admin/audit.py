# services/api/tradein_admin/audit.py

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict

from .context import RequestContext
from .sanitize import sanitize_for_logging
from .store import AuthStore

LOG = logging.getLogger("tradein_admin.audit")


class AuditAction(str, Enum):
    LOGIN = "login"
    LOGOUT = "logout"
    FAILED_LOGIN = "failed_login"
    PASSWORD_CHANGE = "password_change"
    PASSWORD_RESET_REQUEST = "password_reset_request"
    PASSWORD_RESET_COMPLETE = "password_reset_complete"
    TWO_FACTOR_SETUP_STARTED = "2fa_setup_started"
    TWO_FACTOR_ENABLED = "2fa_enabled"
    TWO_FACTOR_DISABLED = "2fa_disabled"
    TWO_FACTOR_VERIFIED = "2fa_verified"
    TWO_FACTOR_FAILED = "2fa_failed"
    BACKUP_CODE_USED = "backup_code_used"
    SESSION_REVOKED = "session_revoked"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_UNLOCKED = "account_unlocked"


class AuditLog:
    """
    Append-only audit sink over the store.

    record() never raises: a failed write is reported through the operational
    logger and the caller's response goes out unchanged.
    """

    def __init__(self, store: AuthStore):
        self.store = store

    def record(
        self,
        action: AuditAction,
        ctx: RequestContext | None = None,
        *,
        user_id: int | None = None,
        details: Dict[str, Any] | None = None,
    ) -> bool:
        action = AuditAction(action)
        payload = sanitize_for_logging(dict(details or {}))
        ip = ua = None
        if ctx is not None:
            payload.setdefault("fingerprint", ctx.fingerprint)
            ip = ctx.client_ip
            ua = ctx.user_agent[:500] or None

        try:
            self.store.append_audit(
                action=action.value,
                user_id=user_id,
                details=payload,
                ip_address=ip,
                user_agent=ua,
            )
            return True
        except Exception:
            LOG.exception("audit_write_failed action=%s user_id=%s", action.value, user_id)
            return False
