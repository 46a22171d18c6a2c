from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, runtime_checkable


@dataclass
class ProviderError:
    message: str
    code: Optional[str] = None
    status: Optional[int] = None


@dataclass
class ProviderUser:
    id: str
    email: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderSession:
    access_token: str
    user: ProviderUser
    token_type: str = "bearer"
    expires_in: Optional[int] = None
    refresh_token: Optional[str] = None


@dataclass
class AuthResponse:
    user: Optional[ProviderUser] = None
    session: Optional[ProviderSession] = None
    error: Optional[ProviderError] = None


@runtime_checkable
class IdentityProvider(Protocol):
    def sign_in_with_password(self, email: str, password: str) -> AuthResponse:
        ...

    def sign_up(self, email: str, password: str, metadata: Optional[Dict[str, Any]] = None) -> AuthResponse:
        ...

    def get_user(self, access_token: str) -> Optional[ProviderUser]:
        ...

    def get_session(self, access_token: str) -> Optional[ProviderSession]:
        ...

    def sign_out(self, access_token: str) -> Optional[ProviderError]:
        ...


@runtime_checkable
class RoleStore(Protocol):
    def get_role(self, user_id: str) -> Optional[str]:
        ...


__all__ = [
    "AuthResponse",
    "IdentityProvider",
    "ProviderError",
    "ProviderSession",
    "ProviderUser",
    "RoleStore",
]
