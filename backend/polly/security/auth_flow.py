"""
Login and registration flows.

Each attempt passes through the IP and email rate limiters, then (for
logins) the account lockout check, before the identity provider sees the
credentials. Provider failures are counted, classified and logged; risky
successful logins go through the step-up strategy.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from polly.providers.base import IdentityProvider, ProviderSession, ProviderUser
from polly.security.attempts import FailedAttemptTracker
from polly.security.devices import DeviceRegistry, generate_fingerprint
from polly.security.errors import AuthErrorType, log_auth_error, parse_auth_error
from polly.security.logger import auth_logger as logger
from polly.security.rate_limit import RateLimiter
from polly.security.step_up import StepUpContext, StepUpStrategy

LOCKED_MESSAGE = "Account temporarily locked due to too many failed attempts. Please try again later."
UNEXPECTED_MESSAGE = "An unexpected error occurred. Please try again later."


@dataclass
class AuthResult:
    error: Optional[str] = None
    error_type: Optional[AuthErrorType] = None
    retry_after: Optional[int] = None
    user: Optional[ProviderUser] = None
    session: Optional[ProviderSession] = None
    requires_verification: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class AuthFlow:
    def __init__(
        self,
        provider: IdentityProvider,
        ip_limiter: RateLimiter,
        email_limiter: RateLimiter,
        tracker: FailedAttemptTracker,
        devices: DeviceRegistry,
        step_up: StepUpStrategy,
    ) -> None:
        self.provider = provider
        self.ip_limiter = ip_limiter
        self.email_limiter = email_limiter
        self.tracker = tracker
        self.devices = devices
        self.step_up = step_up

    def _rate_limited(self, ip: str, email: str, action: str) -> Optional[AuthResult]:
        # Both dimensions are counted on every attempt.
        ip_check = self.ip_limiter.check(ip)
        email_check = self.email_limiter.check(email)

        if ip_check.limited:
            logger.warning(f"Rate limited {action} by IP {ip}")
            return AuthResult(
                error=ip_check.message or f"Too many {action} attempts from this IP. Please try again later.",
                error_type=AuthErrorType.RATE_LIMITED,
                retry_after=ip_check.time_remaining or self.ip_limiter.lockout_seconds,
            )
        if email_check.limited:
            logger.warning(f"Rate limited {action} for {email} from IP {ip}")
            return AuthResult(
                error=email_check.message or f"Too many {action} attempts for this email. Please try again later.",
                error_type=AuthErrorType.RATE_LIMITED,
                retry_after=email_check.time_remaining or self.email_limiter.lockout_seconds,
            )
        return None

    def login(
        self,
        email: str,
        password: str,
        ip: str,
        user_agent: str,
        otp: Optional[str] = None,
        backup_code: Optional[str] = None,
    ) -> AuthResult:
        email = _normalize_email(email)
        logger.info(f"Login attempt for {email} from IP {ip} Password:[REDACTED]")

        limited = self._rate_limited(ip, email, "login")
        if limited:
            return limited

        if self.tracker.is_account_locked(email):
            logger.warning(f"Login refused for locked account {email} from IP {ip}")
            return AuthResult(
                error=LOCKED_MESSAGE,
                error_type=AuthErrorType.ACCOUNT_LOCKED,
                retry_after=self.tracker.lock_time_remaining(email),
            )

        response = self.provider.sign_in_with_password(email, password)
        if response.error is not None or response.user is None:
            attempts = self.tracker.track_failed_attempt(email)
            parsed = parse_auth_error(response.error)
            log_auth_error(
                response.error,
                {"action": "login", "email": email, "ip": ip, "errorType": parsed.type.value, "attempts": attempts},
            )
            return AuthResult(error=parsed.message, error_type=parsed.type, retry_after=parsed.retry_after)

        user = response.user
        prior_failures = self.tracker.get_failed_attempts(email)
        fingerprint = generate_fingerprint(user_agent, ip)
        is_new_device = not self.devices.is_known_device(user.id, fingerprint)
        suspicious = self.devices.check_suspicious_activity(
            user.id, fingerprint, user_agent, failed_attempts=prior_failures
        )

        flagged = is_new_device or suspicious
        if flagged:
            outcome = self.step_up.verify(
                StepUpContext(
                    user=user,
                    session=response.session,
                    is_new_device=is_new_device,
                    suspicious=suspicious,
                    ip=ip,
                    otp=otp,
                    backup_code=backup_code,
                )
            )
            if not outcome.allowed:
                if response.session is not None:
                    self.provider.sign_out(response.session.access_token)
                self.tracker.track_failed_attempt(email)
                return AuthResult(
                    error=outcome.message,
                    error_type=AuthErrorType.VERIFICATION_REQUIRED,
                    requires_verification=True,
                )

        self.tracker.reset_failed_attempts(email)
        self.devices.check_device_verification(user.id, fingerprint, user_agent)
        logger.info(f"Successful login for {email} from IP {ip}")
        return AuthResult(user=user, session=response.session, requires_verification=flagged)

    def register(
        self,
        email: str,
        password: str,
        name: Optional[str],
        ip: str,
        user_agent: str,
    ) -> AuthResult:
        try:
            email = _normalize_email(email)
            limited = self._rate_limited(ip, email, "registration")
            if limited:
                return limited

            response = self.provider.sign_up(email, password, {"name": name} if name else {})
            if response.error is not None:
                parsed = parse_auth_error(response.error)
                log_auth_error(
                    response.error,
                    {"action": "register", "email": email, "ip": ip, "errorType": parsed.type.value},
                )
                return AuthResult(error=parsed.message, error_type=parsed.type, retry_after=parsed.retry_after)

            if response.user is not None:
                fingerprint = generate_fingerprint(user_agent, ip)
                self.devices.check_device_verification(response.user.id, fingerprint, user_agent)
            logger.info(f"Registered {email} from IP {ip}")
            return AuthResult(user=response.user, session=response.session)
        except Exception as exc:
            log_auth_error(exc, {"action": "register", "unexpected": True})
            return AuthResult(error=UNEXPECTED_MESSAGE, error_type=AuthErrorType.UNKNOWN)

    def logout(self, access_token: str) -> AuthResult:
        error = self.provider.sign_out(access_token)
        if error is not None:
            parsed = parse_auth_error(error)
            log_auth_error(error, {"action": "logout", "errorType": parsed.type.value})
            return AuthResult(error=parsed.message, error_type=parsed.type)
        return AuthResult()

    def get_current_user(self, access_token: str) -> Optional[ProviderUser]:
        return self.provider.get_user(access_token)

    def get_session(self, access_token: str) -> Optional[ProviderSession]:
        return self.provider.get_session(access_token)


__all__ = ["AuthFlow", "AuthResult", "LOCKED_MESSAGE", "UNEXPECTED_MESSAGE"]
