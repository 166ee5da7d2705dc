# services/api/tradein_admin/config.py

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str
    REDIS_URL: str | None = None  # unset -> in-process rate limit store

    # pepper for reset-token / backup-code hashes and form-token signing
    SESSION_SECRET: str

    APP_NAME: str = "Quirk Admin"  # issuer shown in authenticator apps
    APP_URL: str = "http://localhost:8000"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Admin sessions (server-side)
    SESSION_DURATION_HOURS: int = 24
    ADMIN_COOKIE_NAME: str = "admin_session"
    ADMIN_COOKIE_SECURE: bool = True
    ADMIN_COOKIE_SAMESITE: str = "Strict"  # "Lax" at minimum

    # Lockout
    MAX_LOGIN_ATTEMPTS: int = 5
    LOCKOUT_DURATION_MINUTES: int = 15

    # Password policy / hashing
    MIN_PASSWORD_LENGTH: int = 12
    BCRYPT_ROUNDS: int = 12

    # TOTP 2FA + backup codes
    BACKUP_CODE_COUNT: int = 10
    BACKUP_CODE_LENGTH: int = 8
    TOTP_WINDOW: int = 1

    # Password reset
    PASSWORD_RESET_TTL_MIN: int = 60
    PASSWORD_RESET_DEBUG_RETURN_TOKEN: bool = False  # never in production

    # Every store call is bounded by this (connect + statement)
    STORE_TIMEOUT_SECONDS: int = 5

    RATE_LIMIT_FAIL_OPEN: bool = True
    RATE_LIMIT_SUSPICION_ENABLED: bool = True

    # Double-submit CSRF cookie for cookie-authenticated mutations
    CSRF_COOKIE_NAME: str = "admin_csrf"
    CSRF_TOKEN_TTL_HOURS: int = 24

    # Bot protection on the public forgot-password form
    BOT_PROTECTION_ENABLED: bool = True
    FORM_TOKEN_MIN_AGE_SECONDS: int = 3
    FORM_TOKEN_MAX_AGE_SECONDS: int = 30 * 60


@lru_cache
def get_settings() -> Settings:
    return Settings()
