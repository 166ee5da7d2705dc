# services/api/tests/conftest.py

import pytest
from fastapi.testclient import TestClient

from tradein_admin.admin_auth import hash_password
from tradein_admin.config import Settings
from tradein_admin.db import Base, build_engine, build_session_factory
from tradein_admin.main import create_app
from tradein_admin.store import SqlAuthStore

SECRET = "test-session-secret"
ADMIN_EMAIL = "admin@quirkcars.com"
ADMIN_PASSWORD = "Sup3r!SecretPass"
TEST_ROUNDS = 4

# a plausible browser, so the suspicion score stays at zero
BROWSER_HEADERS = {
    "user-agent": "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0 Safari/537.36",
    "accept": "application/json, text/plain, */*",
    "accept-language": "en-US,en;q=0.9",
    "accept-encoding": "gzip, deflate",
}


def make_settings(**overrides) -> Settings:
    values = dict(
        DATABASE_URL="sqlite://",
        SESSION_SECRET=SECRET,
        BCRYPT_ROUNDS=TEST_ROUNDS,
        ADMIN_COOKIE_SECURE=False,  # TestClient talks plain http
        APP_URL="https://trade.example.com",
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def store():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield SqlAuthStore(build_session_factory(engine))
    engine.dispose()


@pytest.fixture
def admin_user(store):
    return store.create_user(
        email=ADMIN_EMAIL,
        password_hash=hash_password(ADMIN_PASSWORD, rounds=TEST_ROUNDS),
        role="admin",
    )


@pytest.fixture
def app(settings, store):
    return create_app(settings, store=store)


@pytest.fixture
def client(app):
    return TestClient(app, headers=BROWSER_HEADERS)


def login(client, email=ADMIN_EMAIL, password=ADMIN_PASSWORD):
    return client.post("/api/admin/auth/login", json={"email": email, "password": password})


def actions(store, user_id=None):
    return [e.action for e in store.list_audit(user_id=user_id, limit=200)]


def csrf_headers(client):
    r = client.get("/api/admin/auth/csrf")
    assert r.status_code == 200
    return {"x-csrf-token": r.json()["token"]}
