import logging

import pyotp

from conftest import build_flow
from polly.security.auth_flow import LOCKED_MESSAGE, UNEXPECTED_MESSAGE
from polly.security.devices import generate_fingerprint
from polly.security.errors import AuthErrorType
from polly.security.mfa import MfaRegistry
from polly.security.step_up import STEP_UP_MESSAGE, TotpStepUp

EMAIL = "user@example.com"
UA = "Mozilla/5.0 (Macintosh) Safari/605.1.15"


def test_successful_login_resets_failures_and_records_device(flow, provider):
    user = provider.add_user(EMAIL, "correct-horse")
    flow.tracker.track_failed_attempt(EMAIL)

    result = flow.login(EMAIL, "correct-horse", ip="198.51.100.1", user_agent=UA)

    assert result.ok
    assert result.session is not None
    assert flow.tracker.get_failed_attempts(EMAIL) == 0
    assert flow.devices.is_known_device(user.id, generate_fingerprint(UA, "198.51.100.1"))


def test_new_device_is_flagged_but_allowed(flow, provider, caplog):
    provider.add_user(EMAIL, "pw")
    with caplog.at_level(logging.WARNING, logger="auth"):
        first = flow.login(EMAIL, "pw", ip="198.51.100.1", user_agent=UA)
    assert first.ok
    assert first.requires_verification is True
    assert any("New device detected" in r.getMessage() for r in caplog.records)

    second = flow.login(EMAIL, "pw", ip="198.51.100.1", user_agent=UA)
    assert second.ok
    assert second.requires_verification is False


def test_failed_login_is_counted_and_classified(flow, provider):
    provider.add_user(EMAIL, "pw")
    result = flow.login(EMAIL, "wrong", ip="198.51.100.1", user_agent=UA)

    assert result.error == "Invalid email or password"
    assert result.error_type is AuthErrorType.INVALID_CREDENTIALS
    assert flow.tracker.get_failed_attempts(EMAIL) == 1


def test_email_is_normalized(flow, provider):
    provider.add_user(EMAIL, "pw")
    assert flow.login("  User@Example.COM ", "pw", ip="198.51.100.1", user_agent=UA).ok


def test_ip_rate_limit_blocks_before_provider(flow, provider):
    provider.add_user(EMAIL, "pw")
    for n in range(4):
        flow.login(f"other{n}@example.com", "x", ip="198.51.100.9", user_agent=UA)
    calls = provider.sign_in_calls

    result = flow.login(EMAIL, "pw", ip="198.51.100.9", user_agent=UA)

    assert result.error_type is AuthErrorType.RATE_LIMITED
    assert result.error == "Too many attempts. Please try again later."
    assert result.retry_after == 30 * 60
    assert provider.sign_in_calls == calls


def test_email_rate_limit_counts_every_attempt(flow, provider, clock):
    provider.add_user(EMAIL, "pw")
    # Successful logins count too.
    for n in range(4):
        assert flow.login(EMAIL, "pw", ip=f"198.51.100.{n}", user_agent=UA).ok

    blocked = flow.login(EMAIL, "pw", ip="198.51.100.50", user_agent=UA)
    assert blocked.error_type is AuthErrorType.RATE_LIMITED

    clock.advance(10 * 60)
    still = flow.login(EMAIL, "pw", ip="198.51.100.51", user_agent=UA)
    assert still.error_type is AuthErrorType.RATE_LIMITED
    assert still.retry_after == 20 * 60
    assert still.error == "Too many attempts. Please try again in 20 minutes."


def test_five_failures_lock_the_account(store, clock, provider):
    # Generous rate limits so only the failed-attempt tracker can block.
    flow = build_flow(store, clock, provider, limiter_max=100)
    provider.add_user(EMAIL, "pw")
    for _ in range(5):
        result = flow.login(EMAIL, "wrong", ip="198.51.100.1", user_agent=UA)
        assert result.error_type is AuthErrorType.INVALID_CREDENTIALS
    calls = provider.sign_in_calls

    sixth = flow.login(EMAIL, "pw", ip="198.51.100.1", user_agent=UA)

    assert sixth.error == LOCKED_MESSAGE
    assert sixth.error_type is AuthErrorType.ACCOUNT_LOCKED
    assert sixth.retry_after == 900
    assert provider.sign_in_calls == calls

    clock.advance(901)
    assert flow.login(EMAIL, "pw", ip="198.51.100.1", user_agent=UA).ok


def test_failures_then_success_from_new_device_is_suspicious(store, clock, provider, caplog):
    flow = build_flow(store, clock, provider, limiter_max=100)
    provider.add_user(EMAIL, "pw")
    flow.login(EMAIL, "wrong", ip="198.51.100.1", user_agent=UA)

    with caplog.at_level(logging.WARNING, logger="auth"):
        result = flow.login(EMAIL, "pw", ip="203.0.113.5", user_agent="curl/8.4.0")

    assert result.ok
    assert result.requires_verification is True
    flagged = [r.getMessage() for r in caplog.records if "New device detected" in r.getMessage()]
    assert flagged and '"suspicious": true' in flagged[-1]


def test_totp_step_up_denies_without_code(store, clock, provider):
    mfa = MfaRegistry(store)
    flow = build_flow(store, clock, provider, limiter_max=100, step_up=TotpStepUp(mfa))
    user = provider.add_user(EMAIL, "pw")
    uri, _ = mfa.enroll(user.id, EMAIL)

    denied = flow.login(EMAIL, "pw", ip="198.51.100.1", user_agent=UA)

    assert denied.error == STEP_UP_MESSAGE
    assert denied.error_type is AuthErrorType.VERIFICATION_REQUIRED
    assert denied.requires_verification is True
    assert len(provider.signed_out) == 1
    assert provider.sessions == {}
    assert flow.tracker.get_failed_attempts(EMAIL) == 1
    assert not flow.devices.is_known_device(user.id, generate_fingerprint(UA, "198.51.100.1"))

    code = pyotp.parse_uri(uri).now()
    allowed = flow.login(EMAIL, "pw", ip="198.51.100.1", user_agent=UA, otp=code)
    assert allowed.ok
    assert flow.tracker.get_failed_attempts(EMAIL) == 0
    assert flow.devices.is_known_device(user.id, generate_fingerprint(UA, "198.51.100.1"))


def test_totp_step_up_accepts_backup_code_once(store, clock, provider):
    mfa = MfaRegistry(store)
    flow = build_flow(store, clock, provider, limiter_max=100, step_up=TotpStepUp(mfa))
    user = provider.add_user(EMAIL, "pw")
    _, codes = mfa.enroll(user.id, EMAIL)

    assert flow.login(EMAIL, "pw", ip="198.51.100.1", user_agent=UA, backup_code=codes[0]).ok
    again = flow.login(EMAIL, "pw", ip="198.51.100.2", user_agent=UA, backup_code=codes[0])
    assert again.error_type is AuthErrorType.VERIFICATION_REQUIRED


def test_totp_step_up_skips_users_without_enrollment(store, clock, provider):
    flow = build_flow(store, clock, provider, step_up=TotpStepUp(MfaRegistry(store)))
    provider.add_user(EMAIL, "pw")
    assert flow.login(EMAIL, "pw", ip="198.51.100.1", user_agent=UA).ok


def test_register_records_device(flow, provider):
    result = flow.register(EMAIL, "long-password", "Ada", ip="198.51.100.1", user_agent=UA)

    assert result.ok
    assert result.user.metadata == {"name": "Ada"}
    assert flow.devices.is_known_device(result.user.id, generate_fingerprint(UA, "198.51.100.1"))


def test_register_classifies_provider_errors(flow, provider):
    provider.add_user(EMAIL, "pw")
    result = flow.register(EMAIL, "long-password", None, ip="198.51.100.1", user_agent=UA)
    assert result.error == "User already registered"
    assert result.error_type is AuthErrorType.UNKNOWN


def test_register_is_rate_limited(flow):
    for n in range(4):
        flow.register(f"u{n}@example.com", "long-password", None, ip="198.51.100.1", user_agent=UA)
    result = flow.register("late@example.com", "long-password", None, ip="198.51.100.1", user_agent=UA)
    assert result.error_type is AuthErrorType.RATE_LIMITED


def test_register_hides_unexpected_exceptions(flow, provider, monkeypatch, caplog):
    def boom(*args, **kwargs):
        raise RuntimeError("database password is hunter2")

    monkeypatch.setattr(provider, "sign_up", boom)
    with caplog.at_level(logging.ERROR, logger="auth"):
        result = flow.register(EMAIL, "long-password", None, ip="198.51.100.1", user_agent=UA)

    assert result.error == UNEXPECTED_MESSAGE
    assert "hunter2" not in result.error
    assert any('"unexpected": true' in r.getMessage() for r in caplog.records)


def test_logout(flow, provider):
    provider.add_user(EMAIL, "pw")
    session = flow.login(EMAIL, "pw", ip="198.51.100.1", user_agent=UA).session

    assert flow.get_current_user(session.access_token).email == EMAIL
    assert flow.logout(session.access_token).ok
    assert flow.get_session(session.access_token) is None
    assert flow.logout(session.access_token).error == "Invalid session"
