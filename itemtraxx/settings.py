from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

from services.errors import ServerMisconfigured

load_dotenv()

DEFAULT_EMAIL_FROM = "support@itemtraxx.com"


@dataclass(frozen=True)
class Settings:
    db_url: str
    supabase_url: str
    publishable_key: str
    allowed_origins: list[str]
    resend_api_key: str
    email_from: str
    auth_timeout_seconds: float
    email_timeout_seconds: float


def _env(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def parse_allowed_origins(raw: str | None) -> list[str]:
    return [item.strip() for item in str(raw or "").split(",") if item.strip()]


def load_allowed_origins() -> list[str]:
    return parse_allowed_origins(os.environ.get("ITX_ALLOWED_ORIGINS"))


def load_settings() -> Settings:
    """Read the runtime configuration; raises ServerMisconfigured when a required value is missing."""
    db_url = _env("ITX_DB_URL")
    supabase_url = _env("ITX_SUPABASE_URL")
    publishable_key = _env("ITX_PUBLISHABLE_KEY")
    if not db_url or not supabase_url or not publishable_key:
        raise ServerMisconfigured()
    return Settings(
        db_url=db_url,
        supabase_url=supabase_url.rstrip("/"),
        publishable_key=publishable_key,
        allowed_origins=load_allowed_origins(),
        resend_api_key=_env("ITX_RESEND_API_KEY"),
        email_from=_env("ITX_EMAIL_FROM", DEFAULT_EMAIL_FROM),
        auth_timeout_seconds=_env_float("ITX_AUTH_TIMEOUT_SECONDS", 10.0),
        email_timeout_seconds=_env_float("ITX_EMAIL_TIMEOUT_SECONDS", 20.0),
    )
