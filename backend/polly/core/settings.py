from __future__ import annotations

import os
from functools import lru_cache
from typing import List, Optional

from pydantic import BaseModel, Field

DEFAULT_ALLOWED_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]


class Settings(BaseModel):
    # One threshold shared by the rate limiter and the failed-attempt tracker.
    max_attempts: int = Field(default=5)
    rate_limit_window_seconds: int = Field(default=15 * 60)
    rate_limit_lockout_seconds: int = Field(default=30 * 60)
    failed_attempt_ttl_seconds: int = Field(default=15 * 60)
    suspicious_failure_threshold: int = Field(default=3)
    device_max_per_user: int = Field(default=10)
    device_max_age_seconds: int = Field(default=90 * 24 * 60 * 60)
    redis_url: Optional[str] = Field(default=None)
    identity_provider: str = Field(default="local")
    database_url: str = Field(default="sqlite:///./polly.db")
    require_email_confirmation: bool = Field(default=False)
    supabase_url: Optional[str] = Field(default=None)
    supabase_anon_key: Optional[str] = Field(default=None)
    supabase_service_key: Optional[str] = Field(default=None)
    provider_timeout_seconds: float = Field(default=10.0)
    jwt_secret: str = Field(default="your-secret-key")
    jwt_algorithm: str = Field(default="HS256")
    access_token_expire_minutes: int = Field(default=60)
    step_up_mode: str = Field(default="log")
    trust_forwarded_for: bool = Field(default=False)
    auth_log_file: Optional[str] = Field(default="auth.log")
    global_auth_rate_limit: str = Field(default="30/minute")
    allowed_origins: List[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_ORIGINS))


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name, default)
    if value == "":
        return None
    return value


def _flag(name: str, default: str = "0") -> bool:
    return (os.getenv(name, default) or "").strip().lower() in {"1", "true", "yes", "on"}


def _origins() -> List[str]:
    raw = os.getenv("ALLOWED_ORIGINS", "")
    origins = [o.strip() for o in raw.split(",") if o.strip()]
    return origins or list(DEFAULT_ALLOWED_ORIGINS)


def _load_settings() -> Settings:
    env = os.getenv
    return Settings(
        max_attempts=int(env("AUTH_MAX_ATTEMPTS", "5")),
        rate_limit_window_seconds=int(env("RATE_LIMIT_WINDOW_SECONDS", "900")),
        rate_limit_lockout_seconds=int(env("RATE_LIMIT_LOCKOUT_SECONDS", "1800")),
        failed_attempt_ttl_seconds=int(env("FAILED_ATTEMPT_TTL_SECONDS", "900")),
        suspicious_failure_threshold=int(env("SUSPICIOUS_FAILURE_THRESHOLD", "3")),
        device_max_per_user=int(env("DEVICE_MAX_PER_USER", "10")),
        device_max_age_seconds=int(env("DEVICE_MAX_AGE_SECONDS", str(90 * 24 * 60 * 60))),
        redis_url=_env("REDIS_URL"),
        identity_provider=(env("IDENTITY_PROVIDER", "local") or "local").strip().lower(),
        database_url=_env("DATABASE_URL") or "sqlite:///./polly.db",
        require_email_confirmation=_flag("REQUIRE_EMAIL_CONFIRMATION"),
        supabase_url=_env("SUPABASE_URL"),
        supabase_anon_key=_env("SUPABASE_ANON_KEY"),
        supabase_service_key=_env("SUPABASE_SERVICE_KEY"),
        provider_timeout_seconds=float(env("PROVIDER_TIMEOUT_SECONDS", "10")),
        jwt_secret=_env("JWT_SECRET") or "your-secret-key",
        jwt_algorithm=_env("JWT_ALGORITHM") or "HS256",
        access_token_expire_minutes=int(env("ACCESS_TOKEN_EXPIRE_MINUTES", "60")),
        step_up_mode=(env("STEP_UP_MODE", "log") or "log").strip().lower(),
        trust_forwarded_for=_flag("TRUST_FORWARDED_FOR"),
        auth_log_file=env("AUTH_LOG_FILE", "auth.log") or None,
        global_auth_rate_limit=_env("GLOBAL_AUTH_RATE_LIMIT") or "30/minute",
        allowed_origins=_origins(),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return _load_settings()


def reload_settings() -> Settings:
    get_settings.cache_clear()
    return get_settings()


__all__ = ["Settings", "get_settings", "reload_settings"]
