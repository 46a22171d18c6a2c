"""
Process-wide collaborators, built lazily from settings.

Routes receive them through ``Depends`` so tests can swap any of them with
``app.dependency_overrides`` or rebuild everything with ``reset_dependencies``.
"""

from __future__ import annotations

from functools import lru_cache

from sqlalchemy.orm import sessionmaker

from polly.core.settings import get_settings
from polly.db import build_engine, build_session_factory, init_db
from polly.providers.base import IdentityProvider, RoleStore
from polly.providers.local import LocalIdentityProvider, SqlRoleStore
from polly.providers.supabase import SupabaseIdentityProvider, SupabaseRoleStore
from polly.security.attempts import FailedAttemptTracker
from polly.security.auth_flow import AuthFlow
from polly.security.devices import DeviceRegistry
from polly.security.mfa import MfaRegistry
from polly.security.rate_limit import RateLimiter
from polly.security.step_up import build_step_up
from polly.security.store import KeyValueStore, create_store


@lru_cache(maxsize=1)
def get_store() -> KeyValueStore:
    return create_store(get_settings())


@lru_cache(maxsize=1)
def get_session_factory() -> sessionmaker:
    engine = build_engine(get_settings().database_url)
    init_db(engine)
    return build_session_factory(engine)


def _supabase_config() -> tuple[str, str]:
    settings = get_settings()
    if not settings.supabase_url or not settings.supabase_anon_key:
        raise RuntimeError("IDENTITY_PROVIDER=supabase requires SUPABASE_URL and SUPABASE_ANON_KEY")
    return settings.supabase_url, settings.supabase_anon_key


@lru_cache(maxsize=1)
def get_identity_provider() -> IdentityProvider:
    settings = get_settings()
    if settings.identity_provider == "supabase":
        url, anon_key = _supabase_config()
        return SupabaseIdentityProvider(url, anon_key, timeout=settings.provider_timeout_seconds)
    if settings.identity_provider != "local":
        raise RuntimeError(f"unknown identity provider: {settings.identity_provider!r}")
    return LocalIdentityProvider(
        get_session_factory(),
        get_store(),
        jwt_secret=settings.jwt_secret,
        jwt_algorithm=settings.jwt_algorithm,
        access_token_expire_minutes=settings.access_token_expire_minutes,
        require_email_confirmation=settings.require_email_confirmation,
    )


@lru_cache(maxsize=1)
def get_role_store() -> RoleStore:
    settings = get_settings()
    if settings.identity_provider == "supabase":
        url, anon_key = _supabase_config()
        return SupabaseRoleStore(
            url,
            settings.supabase_service_key or anon_key,
            timeout=settings.provider_timeout_seconds,
        )
    return SqlRoleStore(get_session_factory())


@lru_cache(maxsize=1)
def get_mfa_registry() -> MfaRegistry:
    return MfaRegistry(get_store())


@lru_cache(maxsize=1)
def get_auth_flow() -> AuthFlow:
    settings = get_settings()
    store = get_store()

    def limiter(namespace: str) -> RateLimiter:
        return RateLimiter(
            store,
            namespace,
            max_attempts=settings.max_attempts,
            window_seconds=settings.rate_limit_window_seconds,
            lockout_seconds=settings.rate_limit_lockout_seconds,
        )

    return AuthFlow(
        provider=get_identity_provider(),
        ip_limiter=limiter("ip"),
        email_limiter=limiter("email"),
        tracker=FailedAttemptTracker(
            store,
            threshold=settings.max_attempts,
            ttl_seconds=settings.failed_attempt_ttl_seconds,
        ),
        devices=DeviceRegistry(
            store,
            max_devices=settings.device_max_per_user,
            max_age_seconds=settings.device_max_age_seconds,
            suspicious_failure_threshold=settings.suspicious_failure_threshold,
        ),
        step_up=build_step_up(settings.step_up_mode, get_mfa_registry()),
    )


def reset_dependencies() -> None:
    for factory in (
        get_auth_flow,
        get_mfa_registry,
        get_role_store,
        get_identity_provider,
        get_session_factory,
        get_store,
    ):
        factory.cache_clear()


__all__ = [
    "get_auth_flow",
    "get_identity_provider",
    "get_mfa_registry",
    "get_role_store",
    "get_session_factory",
    "get_store",
    "reset_dependencies",
]
