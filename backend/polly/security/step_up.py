"""
Step-up verification for logins from a new device or with a suspicious
history. The strategy is chosen with ``STEP_UP_MODE``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from polly.providers.base import ProviderSession, ProviderUser
from polly.security.logger import log_event
from polly.security.mfa import MfaRegistry

STEP_UP_MESSAGE = "Additional verification required. Enter the code from your authenticator app."


@dataclass
class StepUpContext:
    user: ProviderUser
    session: Optional[ProviderSession]
    is_new_device: bool
    suspicious: bool
    ip: str
    otp: Optional[str] = None
    backup_code: Optional[str] = None


@dataclass
class StepUpOutcome:
    allowed: bool
    message: Optional[str] = None


class StepUpStrategy(Protocol):
    def verify(self, context: StepUpContext) -> StepUpOutcome:
        ...


def _flag(context: StepUpContext, message: str) -> None:
    log_event(
        logging.WARNING,
        message,
        {
            "user_id": context.user.id,
            "ip": context.ip,
            "new_device": context.is_new_device,
            "suspicious": context.suspicious,
        },
    )


class LogOnlyStepUp:
    """Records the risky login and lets it through."""

    def verify(self, context: StepUpContext) -> StepUpOutcome:
        _flag(context, "New device detected or suspicious activity; additional verification not enforced")
        return StepUpOutcome(allowed=True)


class TotpStepUp:
    def __init__(self, mfa: MfaRegistry) -> None:
        self._mfa = mfa

    def verify(self, context: StepUpContext) -> StepUpOutcome:
        user_id = context.user.id
        if not self._mfa.is_enrolled(user_id):
            _flag(context, "Step-up verification skipped; user has no MFA enrollment")
            return StepUpOutcome(allowed=True)
        if context.otp and self._mfa.verify_totp(user_id, context.otp):
            return StepUpOutcome(allowed=True)
        if context.backup_code and self._mfa.try_backup_code(user_id, context.backup_code):
            return StepUpOutcome(allowed=True)
        _flag(context, "Step-up verification failed")
        return StepUpOutcome(allowed=False, message=STEP_UP_MESSAGE)


def build_step_up(mode: str, mfa: MfaRegistry) -> StepUpStrategy:
    if mode == "totp":
        return TotpStepUp(mfa)
    if mode == "log":
        return LogOnlyStepUp()
    raise ValueError(f"unknown step-up mode: {mode!r}")


__all__ = [
    "LogOnlyStepUp",
    "STEP_UP_MESSAGE",
    "StepUpContext",
    "StepUpOutcome",
    "StepUpStrategy",
    "TotpStepUp",
    "build_step_up",
]
