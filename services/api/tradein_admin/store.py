# services/api/tradein_admin/store.py

from __future__ import annotations

import abc
import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session as OrmSession, sessionmaker

from . import models

LOG = logging.getLogger("tradein_admin.store")

BACKUP_CODE_CAS_ATTEMPTS = 3


class StoreUnavailable(Exception):
    """Backing store failed or timed out. Retryable; never shown to clients verbatim."""


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def load_backup_hashes(user: models.AdminUser) -> list[str]:
    if not user.backup_codes_json:
        return []
    try:
        hashes = json.loads(user.backup_codes_json)
    except ValueError:
        return []
    return hashes if isinstance(hashes, list) else []


class AuthStore(abc.ABC):
    """
    Persistence contract for the auth core: admin users, sessions, reset tokens
    and the audit trail. Implementations raise StoreUnavailable on any backend
    failure; "not found" is always None/False, never an exception.
    """

    # users
    @abc.abstractmethod
    def create_user(self, *, email: str, password_hash: str, role: str = "admin") -> models.AdminUser: ...

    @abc.abstractmethod
    def get_user(self, user_id: int) -> models.AdminUser | None: ...

    @abc.abstractmethod
    def get_user_by_email(self, email: str) -> models.AdminUser | None: ...

    @abc.abstractmethod
    def increment_failed_attempts(self, user_id: int) -> int: ...

    @abc.abstractmethod
    def reset_failed_attempts(self, user_id: int) -> None: ...

    @abc.abstractmethod
    def lock_account(self, user_id: int, until: datetime) -> None: ...

    @abc.abstractmethod
    def record_login(self, user_id: int) -> None: ...

    # 2FA
    @abc.abstractmethod
    def store_pending_two_factor(self, user_id: int, secret: str, backup_hashes: list[str]) -> None: ...

    @abc.abstractmethod
    def enable_two_factor(self, user_id: int, backup_hashes: list[str]) -> None: ...

    @abc.abstractmethod
    def disable_two_factor(self, user_id: int) -> None: ...

    @abc.abstractmethod
    def remove_backup_code(self, user_id: int, code_hash: str) -> int | None:
        """Drops one stored hash; returns remaining count, or None if it was already consumed."""

    # sessions
    @abc.abstractmethod
    def create_session(
        self,
        *,
        user_id: int,
        token: str,
        expires_at: datetime,
        two_factor_verified: bool,
        ip_address: str | None,
        user_agent: str | None,
    ) -> models.AdminSession: ...

    @abc.abstractmethod
    def get_session(self, token: str) -> models.AdminSession | None: ...

    @abc.abstractmethod
    def mark_session_verified(self, token: str, expires_at: datetime) -> bool: ...

    @abc.abstractmethod
    def delete_session(self, token: str) -> bool: ...

    @abc.abstractmethod
    def delete_user_sessions(self, user_id: int) -> int: ...

    # password reset
    @abc.abstractmethod
    def create_reset_token(
        self,
        *,
        user_id: int,
        token_hash: str,
        expires_at: datetime,
        ip: str | None,
        user_agent: str | None,
    ) -> models.AdminPasswordReset: ...

    @abc.abstractmethod
    def get_reset_token(self, token_hash: str) -> models.AdminPasswordReset | None: ...

    @abc.abstractmethod
    def complete_password_reset(self, reset_id: int, user_id: int, password_hash: str) -> int | None:
        """
        Atomically: consume the token (only if still unused), set the password,
        clear lockout state and delete every session of the user.
        Returns the number of revoked sessions, or None if the token was already consumed.
        """

    # audit
    @abc.abstractmethod
    def append_audit(
        self,
        *,
        action: str,
        user_id: int | None,
        details: dict[str, Any] | None,
        ip_address: str | None,
        user_agent: str | None,
    ) -> None: ...

    @abc.abstractmethod
    def list_audit(self, *, user_id: int | None = None, limit: int = 50) -> list[models.AdminAuditLog]: ...


class SqlAuthStore(AuthStore):
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @contextmanager
    def _db(self) -> Iterator[OrmSession]:
        db: OrmSession = self._session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            LOG.error("store_error %s: %s", type(e).__name__, e)
            raise StoreUnavailable(type(e).__name__) from e
        finally:
            db.close()

    def _touch_user(self, db: OrmSession, user_id: int, **values) -> None:
        db.execute(
            update(models.AdminUser)
            .where(models.AdminUser.id == user_id)
            .values(updated_at=_now(), **values)
        )

    # --------------------------
    # Users
    # --------------------------

    def create_user(self, *, email: str, password_hash: str, role: str = "admin") -> models.AdminUser:
        with self._db() as db:
            u = models.AdminUser(
                email=email.lower(),
                password_hash=password_hash,
                role=role,
                two_factor_enabled=False,
                failed_login_attempts=0,
                created_at=_now(),
                updated_at=_now(),
            )
            db.add(u)
            db.flush()
            return u

    def get_user(self, user_id: int) -> models.AdminUser | None:
        with self._db() as db:
            return db.get(models.AdminUser, int(user_id))

    def get_user_by_email(self, email: str) -> models.AdminUser | None:
        with self._db() as db:
            return db.execute(
                select(models.AdminUser).where(models.AdminUser.email == email.lower())
            ).scalars().first()

    def increment_failed_attempts(self, user_id: int) -> int:
        with self._db() as db:
            db.execute(
                update(models.AdminUser)
                .where(models.AdminUser.id == user_id)
                .values(failed_login_attempts=func.coalesce(models.AdminUser.failed_login_attempts, 0) + 1)
            )
            count = db.execute(
                select(models.AdminUser.failed_login_attempts).where(models.AdminUser.id == user_id)
            ).scalar()
            return int(count or 0)

    def reset_failed_attempts(self, user_id: int) -> None:
        with self._db() as db:
            self._touch_user(db, user_id, failed_login_attempts=0, locked_until=None)

    def lock_account(self, user_id: int, until: datetime) -> None:
        with self._db() as db:
            self._touch_user(db, user_id, locked_until=until)

    def record_login(self, user_id: int) -> None:
        with self._db() as db:
            self._touch_user(db, user_id, last_login_at=_now())

    # --------------------------
    # 2FA
    # --------------------------

    def store_pending_two_factor(self, user_id: int, secret: str, backup_hashes: list[str]) -> None:
        # overwrites an abandoned setup; stays disabled until confirmed
        with self._db() as db:
            self._touch_user(
                db,
                user_id,
                two_factor_secret=secret,
                two_factor_enabled=False,
                backup_codes_json=json.dumps(backup_hashes),
            )

    def enable_two_factor(self, user_id: int, backup_hashes: list[str]) -> None:
        with self._db() as db:
            self._touch_user(
                db,
                user_id,
                two_factor_enabled=True,
                backup_codes_json=json.dumps(backup_hashes),
            )

    def disable_two_factor(self, user_id: int) -> None:
        with self._db() as db:
            self._touch_user(
                db,
                user_id,
                two_factor_enabled=False,
                two_factor_secret=None,
                backup_codes_json=None,
            )

    def remove_backup_code(self, user_id: int, code_hash: str) -> int | None:
        with self._db() as db:
            for _ in range(BACKUP_CODE_CAS_ATTEMPTS):
                u = db.execute(
                    select(models.AdminUser).where(models.AdminUser.id == user_id).with_for_update()
                ).scalars().first()
                if u is None:
                    return None
                current = u.backup_codes_json
                hashes = load_backup_hashes(u)
                if code_hash not in hashes:
                    return None
                hashes.remove(code_hash)
                # compare-and-swap; FOR UPDATE is a no-op on some backends
                res = db.execute(
                    update(models.AdminUser)
                    .where(models.AdminUser.id == user_id)
                    .where(models.AdminUser.backup_codes_json == current)
                    .values(backup_codes_json=json.dumps(hashes), updated_at=_now())
                )
                if res.rowcount == 1:
                    return len(hashes)
                db.expire_all()
            return None

    # --------------------------
    # Sessions
    # --------------------------

    def create_session(
        self,
        *,
        user_id: int,
        token: str,
        expires_at: datetime,
        two_factor_verified: bool,
        ip_address: str | None,
        user_agent: str | None,
    ) -> models.AdminSession:
        with self._db() as db:
            s = models.AdminSession(
                token=token,
                user_id=user_id,
                two_factor_verified=bool(two_factor_verified),
                created_at=_now(),
                expires_at=expires_at,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            db.add(s)
            db.flush()
            return s

    def get_session(self, token: str) -> models.AdminSession | None:
        with self._db() as db:
            return db.execute(
                select(models.AdminSession).where(models.AdminSession.token == token)
            ).scalars().first()

    def mark_session_verified(self, token: str, expires_at: datetime) -> bool:
        with self._db() as db:
            res = db.execute(
                update(models.AdminSession)
                .where(models.AdminSession.token == token)
                .values(two_factor_verified=True, expires_at=expires_at)
            )
            return res.rowcount > 0

    def delete_session(self, token: str) -> bool:
        with self._db() as db:
            res = db.execute(delete(models.AdminSession).where(models.AdminSession.token == token))
            return res.rowcount > 0

    def delete_user_sessions(self, user_id: int) -> int:
        with self._db() as db:
            res = db.execute(delete(models.AdminSession).where(models.AdminSession.user_id == user_id))
            return int(res.rowcount or 0)

    # --------------------------
    # Password reset tokens
    # --------------------------

    def create_reset_token(
        self,
        *,
        user_id: int,
        token_hash: str,
        expires_at: datetime,
        ip: str | None,
        user_agent: str | None,
    ) -> models.AdminPasswordReset:
        with self._db() as db:
            rec = models.AdminPasswordReset(
                user_id=user_id,
                token_hash=token_hash,
                created_at=_now(),
                expires_at=expires_at,
                used_at=None,
                ip=ip,
                user_agent=user_agent,
            )
            db.add(rec)
            db.flush()
            return rec

    def get_reset_token(self, token_hash: str) -> models.AdminPasswordReset | None:
        with self._db() as db:
            return db.execute(
                select(models.AdminPasswordReset).where(models.AdminPasswordReset.token_hash == token_hash)
            ).scalars().first()

    def complete_password_reset(self, reset_id: int, user_id: int, password_hash: str) -> int | None:
        with self._db() as db:
            # conditional update: only one concurrent consumer can win
            res = db.execute(
                update(models.AdminPasswordReset)
                .where(models.AdminPasswordReset.id == reset_id)
                .where(models.AdminPasswordReset.used_at.is_(None))
                .values(used_at=_now())
            )
            if res.rowcount != 1:
                return None

            self._touch_user(
                db,
                user_id,
                password_hash=password_hash,
                failed_login_attempts=0,
                locked_until=None,
            )
            revoked = db.execute(delete(models.AdminSession).where(models.AdminSession.user_id == user_id))
            return int(revoked.rowcount or 0)

    # --------------------------
    # Audit (append-only)
    # --------------------------

    def append_audit(
        self,
        *,
        action: str,
        user_id: int | None,
        details: dict[str, Any] | None,
        ip_address: str | None,
        user_agent: str | None,
    ) -> None:
        with self._db() as db:
            db.add(
                models.AdminAuditLog(
                    created_at=_now(),
                    action=action,
                    user_id=user_id,
                    details_json=json.dumps(details, ensure_ascii=False, default=str) if details is not None else None,
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
            )

    def list_audit(self, *, user_id: int | None = None, limit: int = 50) -> list[models.AdminAuditLog]:
        with self._db() as db:
            q = select(models.AdminAuditLog).order_by(models.AdminAuditLog.id.desc()).limit(int(limit))
            if user_id is not None:
                q = q.where(models.AdminAuditLog.user_id == user_id)
            return list(db.execute(q).scalars().all())
