# services/api/tests/test_routes_two_factor.py

import re
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pyotp

from conftest import SECRET, actions, csrf_headers, login
from tradein_admin.admin_auth import hash_backup_codes
from tradein_admin.store import StoreUnavailable

VERIFY = "/api/admin/auth/verify-2fa"
SETUP = "/api/admin/auth/2fa/setup"
ENABLE = "/api/admin/auth/2fa/enable"
DISABLE = "/api/admin/auth/2fa/disable"

CODES = ["AAAA-BBBB", "CCCC-DDDD", "EEEE-FFFF"]


def enable_2fa(store, user_id, codes=CODES):
    secret = pyotp.random_base32()
    store.store_pending_two_factor(user_id, secret, [])
    store.enable_two_factor(user_id, hash_backup_codes(list(codes), SECRET))
    return secret


class TestVerify2fa:
    def test_requires_code(self, client):
        r = client.post(VERIFY, json={})
        assert r.status_code == 400
        assert r.json()["detail"] == "Verification code is required"

    def test_requires_session(self, client):
        r = client.post(VERIFY, json={"code": "123456"})
        assert r.status_code == 401
        assert r.json()["detail"] == "Not authenticated"

    def test_unknown_session(self, client):
        client.cookies.set("admin_session", "not-a-real-token")
        r = client.post(VERIFY, json={"code": "123456"})
        assert r.status_code == 401
        assert r.json()["detail"] == "Invalid session"

    def test_expired_session(self, client, store, admin_user):
        store.create_session(
            user_id=admin_user.id,
            token="old",
            expires_at=datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(minutes=1),
            two_factor_verified=False,
            ip_address=None,
            user_agent=None,
        )
        client.cookies.set("admin_session", "old")
        r = client.post(VERIFY, json={"code": "123456"})
        assert r.status_code == 401
        assert r.json()["detail"] == "Session expired"

    def test_already_verified(self, client, admin_user):
        login(client)
        r = client.post(VERIFY, json={"code": "123456"})
        assert r.status_code == 400
        assert r.json()["detail"] == "Session already verified"

    def test_totp_completes_login(self, client, store, admin_user):
        secret = enable_2fa(store, admin_user.id)
        login(client)
        token = client.cookies.get("admin_session")

        r = client.post(VERIFY, json={"code": pyotp.TOTP(secret).now()})
        assert r.status_code == 200
        body = r.json()
        assert body["success"] is True
        assert body["usedBackupCode"] is False
        assert "remainingBackupCodes" not in body
        assert body["user"]["id"] == admin_user.id
        assert "admin_session=" in r.headers["set-cookie"]

        assert store.get_session(token).two_factor_verified is True
        assert store.get_user(admin_user.id).last_login_at is not None
        assert "2fa_verified" in actions(store, admin_user.id)

    def test_totp_with_spaces(self, client, store, admin_user):
        secret = enable_2fa(store, admin_user.id)
        login(client)
        code = pyotp.TOTP(secret).now()
        r = client.post(VERIFY, json={"code": f"{code[:3]} {code[3:]}"})
        assert r.status_code == 200

    def test_backup_code_consumed(self, client, store, admin_user):
        enable_2fa(store, admin_user.id)
        login(client)
        r = client.post(VERIFY, json={"code": "cccc-dddd"})
        assert r.status_code == 200
        body = r.json()
        assert body["usedBackupCode"] is True
        assert body["remainingBackupCodes"] == 2
        assert "backup_code_used" in actions(store, admin_user.id)

        # a fresh partial session cannot reuse it
        client.cookies.clear()
        login(client)
        r = client.post(VERIFY, json={"code": "CCCC-DDDD"})
        assert r.status_code == 400
        assert r.json()["detail"] == "Invalid verification code"

    def test_invalid_code_audited(self, client, store, admin_user):
        enable_2fa(store, admin_user.id)
        login(client)
        r = client.post(VERIFY, json={"code": "ZZZZ-ZZZZ"})
        assert r.status_code == 400
        assert "2fa_failed" in actions(store, admin_user.id)

    def test_2fa_not_enabled(self, client, store, admin_user):
        store.create_session(
            user_id=admin_user.id,
            token="partial",
            expires_at=datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(hours=1),
            two_factor_verified=False,
            ip_address=None,
            user_agent=None,
        )
        client.cookies.set("admin_session", "partial")
        r = client.post(VERIFY, json={"code": "123456"})
        assert r.status_code == 400
        assert r.json()["detail"] == "2FA is not enabled for this account"


class TestSetup:
    def test_requires_session(self, client):
        r = client.post(SETUP, headers=csrf_headers(client))
        assert r.status_code == 401
        assert r.json()["detail"] == "Not authenticated"

    def test_partial_session_forbidden(self, client, store, admin_user):
        enable_2fa(store, admin_user.id)
        login(client)
        r = client.post(SETUP, headers=csrf_headers(client))
        assert r.status_code == 403
        assert "2FA verification" in r.json()["detail"]

    def test_returns_secret_qr_and_codes(self, client, store, admin_user):
        login(client)
        r = client.post(SETUP, headers=csrf_headers(client))
        assert r.status_code == 200
        body = r.json()
        assert body["success"] is True
        assert body["otpauthUri"].startswith("otpauth://totp/")
        assert "issuer=Quirk%20Admin" in body["otpauthUri"]
        assert body["qrCodeUrl"].startswith("data:image/png;base64,")
        assert len(body["backupCodes"]) == 10
        assert all(re.match(r"^[A-Z0-9]{4}-[A-Z0-9]{4}$", c) for c in body["backupCodes"])

        u = store.get_user(admin_user.id)
        assert u.two_factor_enabled is False
        assert u.two_factor_secret == body["secret"]
        assert "2fa_setup_started" in actions(store, admin_user.id)

    def test_rerun_overwrites_pending_secret(self, client, store, admin_user):
        login(client)
        first = client.post(SETUP, headers=csrf_headers(client)).json()["secret"]
        second = client.post(SETUP, headers=csrf_headers(client)).json()["secret"]
        assert first != second
        assert store.get_user(admin_user.id).two_factor_secret == second

    def test_already_enabled(self, client, store, admin_user):
        login(client)
        enable_2fa(store, admin_user.id)
        r = client.post(SETUP, headers=csrf_headers(client))
        assert r.status_code == 400
        assert "already enabled" in r.json()["detail"]

    def test_storage_failure(self, client, store, admin_user):
        login(client)
        with patch.object(store, "store_pending_two_factor", side_effect=StoreUnavailable("down")):
            r = client.post(SETUP, headers=csrf_headers(client))
        assert r.status_code == 500
        assert "Failed to initialize" in r.json()["detail"]


class TestEnableDisable:
    def test_full_cycle(self, client, store, admin_user):
        login(client)
        setup = client.post(SETUP, headers=csrf_headers(client)).json()
        totp = pyotp.TOTP(setup["secret"])

        r = client.post(ENABLE, headers=csrf_headers(client), json={"code": "abcdef"})
        assert r.status_code == 400
        assert r.json()["detail"] == "Invalid verification code"

        r = client.post(ENABLE, headers=csrf_headers(client), json={"code": totp.now()})
        assert r.status_code == 200
        body = r.json()
        assert body["message"] == "2FA enabled successfully"
        assert len(body["backupCodes"]) == 10
        assert set(body["backupCodes"]) != set(setup["backupCodes"])
        assert store.get_user(admin_user.id).two_factor_enabled is True

        # the setup-time batch was superseded
        r = client.post(DISABLE, headers=csrf_headers(client), json={"code": setup["backupCodes"][0]})
        assert r.status_code == 400

        r = client.post(DISABLE, headers=csrf_headers(client), json={"code": body["backupCodes"][0]})
        assert r.status_code == 200
        assert r.json()["message"] == "2FA has been disabled"

        u = store.get_user(admin_user.id)
        assert u.two_factor_enabled is False
        assert u.two_factor_secret is None
        logged = actions(store, admin_user.id)
        for action in ("2fa_enabled", "2fa_disabled", "2fa_failed"):
            assert action in logged

    def test_enable_without_setup(self, client, admin_user):
        login(client)
        r = client.post(ENABLE, headers=csrf_headers(client), json={"code": "123456"})
        assert r.status_code == 400
        assert r.json()["detail"] == "No 2FA setup in progress. Please run setup first."

    def test_enable_requires_code(self, client, admin_user):
        login(client)
        r = client.post(ENABLE, headers=csrf_headers(client), json={})
        assert r.status_code == 400
        assert r.json()["detail"] == "Verification code is required"

    def test_disable_when_not_enabled(self, client, admin_user):
        login(client)
        r = client.post(DISABLE, headers=csrf_headers(client), json={"code": "123456"})
        assert r.status_code == 400
        assert r.json()["detail"] == "2FA is not enabled"

    def test_disable_with_totp_after_verified_login(self, client, store, admin_user):
        secret = enable_2fa(store, admin_user.id)
        login(client)
        assert client.post(VERIFY, json={"code": pyotp.TOTP(secret).now()}).status_code == 200

        r = client.post(DISABLE, headers=csrf_headers(client), json={"code": pyotp.TOTP(secret).now()})
        assert r.status_code == 200
        assert store.get_user(admin_user.id).two_factor_enabled is False


class TestCsrfGuard:
    def test_issuer_sets_cookie_and_tokens(self, client):
        r = client.get("/api/admin/auth/csrf")
        assert r.status_code == 200
        body = r.json()
        assert body["headerName"] == "x-csrf-token"
        assert body["formToken"]
        cookie = r.headers["set-cookie"]
        assert cookie.startswith("admin_csrf=" + body["token"] + ".")
        assert "HttpOnly" in cookie and "SameSite=Lax" in cookie

    def test_mutation_without_cookie_rejected(self, client, store, admin_user):
        login(client)
        r = client.post(SETUP)
        assert r.status_code == 403
        assert r.json()["detail"] == "Missing CSRF cookie"
        assert store.get_user(admin_user.id).two_factor_secret is None

    def test_mutation_without_header_rejected(self, client, admin_user):
        login(client)
        csrf_headers(client)
        r = client.post(SETUP)
        assert r.status_code == 403
        assert r.json()["detail"] == "Missing CSRF token in request"

    def test_mismatched_header_rejected(self, client, store, admin_user):
        secret = enable_2fa(store, admin_user.id)
        login(client)
        assert client.post(VERIFY, json={"code": pyotp.TOTP(secret).now()}).status_code == 200
        csrf_headers(client)
        r = client.post(DISABLE, headers={"x-csrf-token": "0" * 64}, json={"code": pyotp.TOTP(secret).now()})
        assert r.status_code == 403
        assert r.json()["detail"] == "CSRF token mismatch"
        assert store.get_user(admin_user.id).two_factor_enabled is True

    def test_session_checked_before_csrf(self, client):
        r = client.post(SETUP)
        assert r.status_code == 401
