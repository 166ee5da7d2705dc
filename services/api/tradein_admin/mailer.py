# services/api/tradein_admin/mailer.py

from __future__ import annotations

import logging

LOG = logging.getLogger("tradein_admin.mailer")


class Mailer:
    def send_password_reset(self, *, to: str, reset_url: str, expires_minutes: int) -> None:
        raise NotImplementedError


class LoggingMailer(Mailer):
    """Default mailer: logs that a reset mail would go out, without the link."""

    def send_password_reset(self, *, to: str, reset_url: str, expires_minutes: int) -> None:
        LOG.info("password_reset_mail to=%s expires_in_min=%s", to, expires_minutes)
