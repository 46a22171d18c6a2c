import itertools
import time

import pyotp

from conftest import FakeProvider, build_flow
from polly.deps import get_auth_flow, get_role_store
from polly.main import app
from polly.providers.base import AuthResponse, ProviderError

PASSWORD = "Sup3r-secret!"
_ips = itertools.count(1)


def _headers(ip=None, user_agent="pytest-browser/1.0", token=None):
    headers = {"User-Agent": user_agent, "X-Forwarded-For": ip or f"192.0.2.{next(_ips)}"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def _register(client, email, ip="198.51.100.10", name="Ada"):
    return client.post(
        "/auth/register",
        json={"email": email, "password": PASSWORD, "name": name},
        headers=_headers(ip),
    )


def _login(client, email, password=PASSWORD, ip="198.51.100.10", user_agent="pytest-browser/1.0", **extra):
    payload = {"email": email, "password": password, **extra}
    return client.post("/auth/login", json=payload, headers=_headers(ip, user_agent))


def test_register_then_login(client):
    r = _register(client, "ada@example.com")
    assert r.status_code == 201
    body = r.json()
    assert body["error"] is None
    assert body["user_id"]
    assert body["access_token"]

    r = _login(client, "ada@example.com")
    assert r.status_code == 200
    body = r.json()
    assert body["error"] is None
    assert body["token_type"] == "bearer"
    # Same browser and address as at registration.
    assert body["requires_verification"] is False

    session = client.get("/auth/session", headers=_headers(token=body["access_token"]))
    assert session.status_code == 200
    assert session.json()["email"] == "ada@example.com"


def test_login_from_new_device_is_flagged(client):
    _register(client, "bob@example.com")
    r = _login(client, "bob@example.com", ip="203.0.113.77", user_agent="curl/8.4.0")
    assert r.status_code == 200
    assert r.json()["requires_verification"] is True


def test_invalid_credentials(client):
    _register(client, "cy@example.com")
    r = _login(client, "cy@example.com", password="wrong-password")
    assert r.status_code == 401
    assert r.json() == {
        "error": "Invalid email or password",
        "error_type": "invalid_credentials",
        "retry_after": None,
    }
    r = _login(client, "nobody@example.com")
    assert r.status_code == 401


def test_duplicate_registration(client):
    assert _register(client, "dup@example.com").status_code == 201
    r = _register(client, "DUP@example.com", ip="198.51.100.11")
    assert r.status_code == 400
    assert r.json()["error"] == "User already registered"


def test_registration_payload_validation(client):
    r = client.post(
        "/auth/register",
        json={"email": "not-an-email", "password": "short"},
        headers=_headers(),
    )
    assert r.status_code == 422


def test_email_rate_limit_returns_429_with_retry_after(client):
    _register(client, "eve@example.com", ip="198.51.100.20")
    statuses = [
        _login(client, "eve@example.com", password="wrong-password", ip=f"198.51.100.{21 + n}").status_code
        for n in range(4)
    ]
    # Registration was attempt 1, so the fourth login is the fifth attempt.
    assert statuses == [401, 401, 401, 429]

    r = _login(client, "eve@example.com", ip="198.51.100.40")
    assert r.status_code == 429
    assert r.json()["error_type"] == "rate_limited"
    assert 0 < int(r.headers["Retry-After"]) <= 1800


def test_lockout_after_five_failures(client):
    _register(client, "fay@example.com")
    flow = get_auth_flow()
    for n in range(5):
        flow.email_limiter.reset()
        assert _login(client, "fay@example.com", password="wrong-password", ip=f"198.51.101.{n}").status_code == 401

    flow.email_limiter.reset()
    r = _login(client, "fay@example.com", ip="198.51.101.99")
    assert r.status_code == 429
    assert r.json()["error_type"] == "account_locked"
    assert r.json()["error"].startswith("Account temporarily locked")
    assert 0 < int(r.headers["Retry-After"]) <= 900


def test_logout_revokes_session(client):
    token = _register(client, "gus@example.com").json()["access_token"]

    r = client.post("/auth/logout", json={}, headers=_headers(token=token))
    assert r.status_code == 200
    assert r.json() == {"error": None}

    assert client.get("/auth/session", headers=_headers(token=token)).status_code == 401
    assert client.post("/auth/logout", json={}, headers=_headers(token=token)).status_code == 401
    assert client.post("/auth/logout", json={}, headers=_headers()).status_code == 401


def test_admin_dashboard_by_stored_role(client):
    r = _register(client, "hal@example.com")
    user_id, token = r.json()["user_id"], r.json()["access_token"]

    assert client.get("/admin/dashboard", headers=_headers(token=token)).status_code == 403

    get_role_store().set_role(user_id, "admin")
    r = client.get("/admin/dashboard", headers=_headers(token=token))
    assert r.status_code == 200
    assert r.json()["managed_by"] == "hal@example.com"


def test_totp_step_up_flow(client, monkeypatch):
    monkeypatch.setenv("STEP_UP_MODE", "totp")
    from polly.core.settings import get_settings
    from polly.deps import reset_dependencies

    get_settings.cache_clear()
    reset_dependencies()

    token = _register(client, "ivy@example.com").json()["access_token"]
    enroll = client.post("/auth/mfa/enroll", json={}, headers=_headers(token=token))
    assert enroll.status_code == 201
    data = enroll.json()
    assert len(data["backup_codes"]) == 10
    totp = pyotp.parse_uri(data["otpauth_uri"])

    setup_code = totp.now()
    verify = client.post("/auth/mfa/verify-setup", json={"otp": setup_code}, headers=_headers(token=token))
    assert verify.status_code == 204

    denied = _login(client, "ivy@example.com", ip="203.0.113.5", user_agent="other-browser/2.0")
    assert denied.status_code == 403
    assert denied.json()["error_type"] == "verification_required"

    replay = _login(client, "ivy@example.com", ip="203.0.113.5", user_agent="other-browser/2.0", otp=setup_code)
    assert replay.status_code == 403

    # Codes are single use, so sign in with the next time step.
    next_code = totp.at(time.time() + totp.interval)
    allowed = _login(client, "ivy@example.com", ip="203.0.113.5", user_agent="other-browser/2.0", otp=next_code)
    assert allowed.status_code == 200
    assert allowed.json()["requires_verification"] is True


def test_mfa_enroll_requires_session(client):
    assert client.post("/auth/mfa/enroll", json={}, headers=_headers()).status_code == 401


def test_post_requires_json(client):
    r = client.post("/auth/login", data="email=a", headers={"Content-Type": "application/x-www-form-urlencoded"})
    assert r.status_code == 415


class UnreachableProvider(FakeProvider):
    def sign_in_with_password(self, email, password):
        self.sign_in_calls += 1
        return AuthResponse(error=ProviderError("connection refused", code="network_error"))


def test_unreachable_provider_returns_503(client, store, clock):
    provider = UnreachableProvider()
    app.dependency_overrides[get_auth_flow] = lambda: build_flow(store, clock, provider)

    r = _login(client, "kim@example.com")

    assert r.status_code == 503
    assert r.json() == {
        "error": "Unable to reach the authentication service. Please try again later",
        "error_type": "network_error",
        "retry_after": None,
    }
    assert provider.sign_in_calls == 1
