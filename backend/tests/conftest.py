import os

# Keep test runs from writing auth.log into the working directory.
os.environ.setdefault("AUTH_LOG_FILE", "")

import itertools
from typing import Dict, Optional

import pytest
from fastapi.testclient import TestClient

from polly.core.settings import get_settings
from polly.deps import reset_dependencies
from polly.providers.base import AuthResponse, ProviderError, ProviderSession, ProviderUser
from polly.security.attempts import FailedAttemptTracker
from polly.security.auth_flow import AuthFlow
from polly.security.devices import DeviceRegistry
from polly.security.rate_limit import RateLimiter
from polly.security.step_up import LogOnlyStepUp
from polly.security.store import MemoryStore


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProvider:
    """Identity provider double keeping users and sessions in dicts."""

    def __init__(self) -> None:
        self.users: Dict[str, tuple] = {}
        self.sessions: Dict[str, ProviderUser] = {}
        self.signed_out = []
        self.sign_in_calls = 0
        self._ids = itertools.count(1)

    def add_user(self, email: str, password: str) -> ProviderUser:
        user = ProviderUser(id=f"user-{next(self._ids)}", email=email)
        self.users[email] = (password, user)
        return user

    def _session(self, user: ProviderUser) -> ProviderSession:
        token = f"token-{user.id}-{len(self.sessions)}"
        self.sessions[token] = user
        return ProviderSession(access_token=token, user=user)

    def sign_in_with_password(self, email: str, password: str) -> AuthResponse:
        self.sign_in_calls += 1
        entry = self.users.get(email)
        if entry is None or entry[0] != password:
            return AuthResponse(error=ProviderError("Invalid login credentials", status=400))
        session = self._session(entry[1])
        return AuthResponse(user=entry[1], session=session)

    def sign_up(self, email: str, password: str, metadata: Optional[dict] = None) -> AuthResponse:
        if email in self.users:
            return AuthResponse(error=ProviderError("User already registered", status=422))
        user = self.add_user(email, password)
        user.metadata = dict(metadata or {})
        return AuthResponse(user=user, session=self._session(user))

    def get_user(self, access_token: str) -> Optional[ProviderUser]:
        return self.sessions.get(access_token)

    def get_session(self, access_token: str) -> Optional[ProviderSession]:
        user = self.sessions.get(access_token)
        return ProviderSession(access_token=access_token, user=user) if user else None

    def sign_out(self, access_token: str) -> Optional[ProviderError]:
        if self.sessions.pop(access_token, None) is None:
            return ProviderError("Invalid session", code="session_not_found", status=401)
        self.signed_out.append(access_token)
        return None


class FakeRoleStore:
    def __init__(self, roles: Optional[Dict[str, str]] = None) -> None:
        self.roles = dict(roles or {})

    def get_role(self, user_id: str) -> Optional[str]:
        return self.roles.get(user_id)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> MemoryStore:
    return MemoryStore(clock=clock)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


def build_flow(store, clock, provider, *, limiter_max: int = 5, step_up=None) -> AuthFlow:
    return AuthFlow(
        provider=provider,
        ip_limiter=RateLimiter(store, "ip", max_attempts=limiter_max, clock=clock),
        email_limiter=RateLimiter(store, "email", max_attempts=limiter_max, clock=clock),
        tracker=FailedAttemptTracker(store, threshold=5, ttl_seconds=900),
        devices=DeviceRegistry(store, clock=clock),
        step_up=step_up or LogOnlyStepUp(),
    )


@pytest.fixture
def flow(store, clock, provider) -> AuthFlow:
    return build_flow(store, clock, provider)


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'polly.db'}")
    monkeypatch.setenv("IDENTITY_PROVIDER", "local")
    monkeypatch.setenv("TRUST_FORWARDED_FOR", "1")
    monkeypatch.setenv("GLOBAL_AUTH_RATE_LIMIT", "1000/minute")
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.delenv("STEP_UP_MODE", raising=False)
    get_settings.cache_clear()
    reset_dependencies()

    from polly.main import app

    app.state.limiter.reset()
    yield TestClient(app)

    app.state.limiter.reset()
    app.dependency_overrides.clear()
    get_settings.cache_clear()
    reset_dependencies()
