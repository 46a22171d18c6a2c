from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Union

from fastapi import Depends, HTTPException, Request, status

from polly.providers.base import IdentityProvider, ProviderUser, RoleStore
from polly.security.logger import auth_logger as logger


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"
    MODERATOR = "moderator"


DEFAULT_ROLE = Role.USER

RoleRequirement = Union[Role, str, Iterable[Union[Role, str]]]


@dataclass
class RoleCheck:
    authorized: bool
    user: Optional[ProviderUser] = None
    role: Optional[Role] = None


def bearer_token(request: Request) -> Optional[str]:
    auth = request.headers.get("authorization", "")
    parts = auth.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return None


def resolve_role(raw: Optional[str], user_id: str = "") -> Role:
    if not raw:
        return DEFAULT_ROLE
    try:
        return Role(raw.strip().lower())
    except ValueError:
        logger.warning(f"Unrecognized role {raw!r} for user {user_id}; treating as {DEFAULT_ROLE.value}")
        return DEFAULT_ROLE


def _required_set(required: RoleRequirement) -> frozenset:
    if isinstance(required, (Role, str)):
        return frozenset({Role(required)})
    return frozenset(Role(r) for r in required)


def check_user_role(
    required: RoleRequirement,
    access_token: Optional[str],
    provider: IdentityProvider,
    role_store: RoleStore,
) -> RoleCheck:
    allowed = _required_set(required)
    session = provider.get_session(access_token) if access_token else None
    if session is None:
        return RoleCheck(authorized=False)

    user = session.user
    role = resolve_role(role_store.get_role(user.id), user.id)
    return RoleCheck(authorized=role in allowed, user=user, role=role)


def with_role_protection(required: RoleRequirement, redirect_to: Optional[str] = None):
    """
    Route dependency that stops the request unless the caller holds one of
    the required roles: 401 without a session, 403 for the wrong role, or a
    303 to ``redirect_to`` in both cases when it is given.
    """
    from polly.deps import get_identity_provider, get_role_store

    def _dep(
        request: Request,
        provider: IdentityProvider = Depends(get_identity_provider),
        role_store: RoleStore = Depends(get_role_store),
    ) -> RoleCheck:
        result = check_user_role(required, bearer_token(request), provider, role_store)
        if result.authorized:
            return result

        logger.warning(
            f"Access denied to {request.url.path} for "
            f"{result.user.email if result.user else 'anonymous'} (role={result.role.value if result.role else None})"
        )
        if redirect_to is not None:
            raise HTTPException(status_code=status.HTTP_303_SEE_OTHER, headers={"Location": redirect_to})
        if result.user is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthenticated")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="forbidden")

    return _dep


def require_role(*roles: Role):
    return with_role_protection(roles if len(roles) != 1 else roles[0])


__all__ = [
    "DEFAULT_ROLE",
    "Role",
    "RoleCheck",
    "bearer_token",
    "check_user_role",
    "require_role",
    "resolve_role",
    "with_role_protection",
]
