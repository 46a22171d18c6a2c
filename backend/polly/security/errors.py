"""
Classification of identity-provider errors.

Providers that report structured error codes are mapped through
``PROVIDER_CODE_MAP``. Substring matching on the error text is only the
fallback, because provider wording is not a stable contract.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from polly.security.logger import log_event


class AuthErrorType(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    RATE_LIMITED = "rate_limited"
    ACCOUNT_LOCKED = "account_locked"
    VERIFICATION_REQUIRED = "verification_required"
    NETWORK_ERROR = "network_error"
    UNKNOWN = "unknown"


@dataclass
class AuthError:
    type: AuthErrorType
    message: str
    retry_after: Optional[int] = None


RATE_LIMIT_RETRY_SECONDS = 900

_INVALID_CREDENTIALS = (AuthErrorType.INVALID_CREDENTIALS, "Invalid email or password", None)
_RATE_LIMITED = (AuthErrorType.RATE_LIMITED, "Too many attempts. Please try again later", RATE_LIMIT_RETRY_SECONDS)
_NOT_CONFIRMED = (AuthErrorType.VERIFICATION_REQUIRED, "Please verify your email before logging in", None)
_NETWORK = (
    AuthErrorType.NETWORK_ERROR,
    "Unable to reach the authentication service. Please try again later",
    None,
)

PROVIDER_CODE_MAP: Dict[str, Tuple[AuthErrorType, str, Optional[int]]] = {
    "invalid_credentials": _INVALID_CREDENTIALS,
    "invalid_grant": _INVALID_CREDENTIALS,
    "over_request_rate_limit": _RATE_LIMITED,
    "over_email_send_rate_limit": _RATE_LIMITED,
    "too_many_requests": _RATE_LIMITED,
    "email_not_confirmed": _NOT_CONFIRMED,
    "network_error": _NETWORK,
}

SUBSTRING_RULES = (
    ("Invalid login credentials", _INVALID_CREDENTIALS),
    ("Too many requests", _RATE_LIMITED),
    ("Email not confirmed", _NOT_CONFIRMED),
)


def _message_of(error: Any) -> str:
    if isinstance(error, str):
        return error
    if isinstance(error, Mapping):
        for field in ("message", "msg", "error_description", "error"):
            value = error.get(field)
            if value:
                return str(value)
        return ""
    if hasattr(error, "message"):
        return str(error.message or "")
    return str(error)


def _code_of(error: Any) -> Optional[str]:
    if isinstance(error, Mapping):
        code = error.get("code") or error.get("error_code")
    else:
        code = getattr(error, "code", None)
    if isinstance(code, str) and code:
        return code.strip().lower()
    return None


def parse_auth_error(error: Any) -> AuthError:
    if error is None:
        return AuthError(type=AuthErrorType.UNKNOWN, message="Unknown error")

    message = _message_of(error)
    code = _code_of(error)

    mapped = PROVIDER_CODE_MAP.get(code) if code else None
    if mapped is None:
        for needle, rule in SUBSTRING_RULES:
            if needle in message:
                mapped = rule
                break

    if mapped is not None:
        error_type, text, retry_after = mapped
        return AuthError(type=error_type, message=text, retry_after=retry_after)

    if not message:
        return AuthError(type=AuthErrorType.UNKNOWN, message="Unknown error")
    return AuthError(type=AuthErrorType.UNKNOWN, message=message)


def log_auth_error(error: Any, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    summary = _message_of(error) if error is not None else "Unknown error"
    ctx = dict(context or {})
    ctx["error"] = summary
    return log_event(logging.ERROR, "Authentication error", ctx)


__all__ = [
    "AuthError",
    "AuthErrorType",
    "PROVIDER_CODE_MAP",
    "log_auth_error",
    "parse_auth_error",
]
