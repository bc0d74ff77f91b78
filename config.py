"""
Runtime settings for the Stepwise backend.

All values come from the environment (``load_dotenv()`` in app.py fills it from
``.env`` for local dev). Build one ``Settings`` at startup and hand it to the
components that need it.
"""
from __future__ import annotations

import os
from dataclasses import dataclass


# ============================================================================
# DEFAULTS
# ============================================================================

DEFAULT_GEMINI_MODEL = "gemini-2.5-flash"
DEFAULT_FIREBASE_CREDENTIALS = "firebase-service-account.json"
DEFAULT_SECRET_KEY = "dev-secret-change-me"

_TRUTHY = {"1", "true", "yes", "on"}


def _env(name: str) -> str | None:
    value = (os.getenv(name) or "").strip()
    return value or None


@dataclass(frozen=True)
class Settings:
    database_url: str | None = None
    gemini_api_key: str | None = None
    gemini_model: str = DEFAULT_GEMINI_MODEL
    owner_open_id: str | None = None
    firebase_credentials: str = DEFAULT_FIREBASE_CREDENTIALS
    storage_bucket: str | None = None
    secret_key: str = DEFAULT_SECRET_KEY
    cookie_secure: bool = False
    log_level: str = "INFO"
    port: int = 5000

    @classmethod
    def from_env(cls) -> "Settings":
        try:
            port = int(os.getenv("PORT", "5000"))
        except ValueError:
            port = 5000
        return cls(
            database_url=_env("DATABASE_URL"),
            gemini_api_key=_env("GOOGLE_API_KEY"),
            gemini_model=_env("GEMINI_MODEL") or DEFAULT_GEMINI_MODEL,
            owner_open_id=_env("OWNER_OPEN_ID"),
            firebase_credentials=_env("FIREBASE_CREDENTIALS") or DEFAULT_FIREBASE_CREDENTIALS,
            storage_bucket=_env("FIREBASE_STORAGE_BUCKET"),
            secret_key=_env("FLASK_SECRET_KEY") or DEFAULT_SECRET_KEY,
            cookie_secure=(_env("SESSION_COOKIE_SECURE") or "").lower() in _TRUTHY,
            log_level=(_env("LOG_LEVEL") or "INFO").upper(),
            port=port,
        )
