"""
Self-hosted identity provider for development and tests.

Users live in the ``users`` table with Argon2id password hashes, sessions
are signed JWTs, and signed-out tokens are remembered in the key/value store
until they would have expired anyway.
"""

from __future__ import annotations

import hashlib
import hmac
import os
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt
from passlib.hash import argon2
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from polly.db_models import Profile, UserAccount
from polly.providers.base import AuthResponse, ProviderError, ProviderSession, ProviderUser
from polly.security.store import KeyValueStore

# Explicit Argon2id configuration
_argon = argon2.using(type="ID", time_cost=3, memory_cost=65536, parallelism=2)

# Provider wording mirrors the hosted provider so classification behaves the same.
INVALID_CREDENTIALS = ProviderError("Invalid login credentials", code="invalid_credentials", status=400)
EMAIL_NOT_CONFIRMED = ProviderError("Email not confirmed", code="email_not_confirmed", status=400)
USER_EXISTS = ProviderError("User already registered", code="user_already_exists", status=422)


def _pepperize(password: str) -> str:
    pepper = os.getenv("PASSWORD_PEPPER", "")
    if not pepper:
        return password
    return hmac.new(pepper.encode("utf-8"), password.encode("utf-8"), hashlib.sha256).hexdigest()


def hash_password(password: str) -> str:
    return _argon.hash(_pepperize(password))


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return _argon.verify(_pepperize(password), password_hash)
    except (ValueError, TypeError):
        return False


def _normalize(email: str) -> str:
    return (email or "").strip().lower()


class LocalIdentityProvider:
    def __init__(
        self,
        session_factory: sessionmaker,
        store: KeyValueStore,
        jwt_secret: str,
        jwt_algorithm: str = "HS256",
        access_token_expire_minutes: int = 60,
        require_email_confirmation: bool = False,
    ) -> None:
        self._session_factory = session_factory
        self._store = store
        self._secret = jwt_secret
        self._algorithm = jwt_algorithm
        self._expire_minutes = access_token_expire_minutes
        self._require_confirmation = require_email_confirmation

    # ---------------- tokens ----------------
    def _issue(self, account: UserAccount) -> ProviderSession:
        now = datetime.now(timezone.utc)
        expires = timedelta(minutes=self._expire_minutes)
        claims = {
            "sub": account.id,
            "email": account.email,
            "jti": uuid.uuid4().hex,
            "iat": now,
            "exp": now + expires,
        }
        token = jwt.encode(claims, self._secret, algorithm=self._algorithm)
        return ProviderSession(
            access_token=token,
            user=self._to_user(account),
            expires_in=int(expires.total_seconds()),
        )

    def _claims(self, access_token: str) -> Optional[Dict[str, Any]]:
        if not access_token:
            return None
        try:
            claims = jwt.decode(access_token, self._secret, algorithms=[self._algorithm])
        except JWTError:
            return None
        jti = claims.get("jti")
        if jti and self._store.get(f"revoked:{jti}") is not None:
            return None
        return claims

    @staticmethod
    def _to_user(account: UserAccount) -> ProviderUser:
        return ProviderUser(id=account.id, email=account.email, metadata=dict(account.user_metadata or {}))

    # ---------------- capability ----------------
    def sign_in_with_password(self, email: str, password: str) -> AuthResponse:
        with self._session_factory() as db:
            account = db.execute(select(UserAccount).where(UserAccount.email == _normalize(email))).scalars().first()
        if account is None or not verify_password(password, account.password_hash):
            return AuthResponse(error=INVALID_CREDENTIALS)
        if self._require_confirmation and not account.email_confirmed:
            return AuthResponse(error=EMAIL_NOT_CONFIRMED)
        session = self._issue(account)
        return AuthResponse(user=session.user, session=session)

    def sign_up(self, email: str, password: str, metadata: Optional[Dict[str, Any]] = None) -> AuthResponse:
        account = UserAccount(
            email=_normalize(email),
            password_hash=hash_password(password),
            user_metadata=dict(metadata or {}),
            email_confirmed=not self._require_confirmation,
        )
        with self._session_factory() as db:
            db.add(account)
            try:
                db.flush()
                db.add(Profile(id=account.id, role="user"))
                db.commit()
            except IntegrityError:
                db.rollback()
                return AuthResponse(error=USER_EXISTS)
            db.refresh(account)

        user = self._to_user(account)
        if self._require_confirmation:
            # No session until the address is confirmed.
            return AuthResponse(user=user)
        session = self._issue(account)
        return AuthResponse(user=user, session=session)

    def confirm_email(self, email: str) -> bool:
        with self._session_factory() as db:
            account = db.execute(select(UserAccount).where(UserAccount.email == _normalize(email))).scalars().first()
            if account is None:
                return False
            account.email_confirmed = True
            db.commit()
            return True

    def get_user(self, access_token: str) -> Optional[ProviderUser]:
        claims = self._claims(access_token)
        if not claims:
            return None
        with self._session_factory() as db:
            account = db.get(UserAccount, claims.get("sub"))
        return self._to_user(account) if account else None

    def get_session(self, access_token: str) -> Optional[ProviderSession]:
        user = self.get_user(access_token)
        if user is None:
            return None
        claims = self._claims(access_token) or {}
        expires_in = None
        if isinstance(claims.get("exp"), (int, float)):
            expires_in = max(0, int(claims["exp"] - time.time()))
        return ProviderSession(access_token=access_token, user=user, expires_in=expires_in)

    def sign_out(self, access_token: str) -> Optional[ProviderError]:
        claims = self._claims(access_token)
        if not claims:
            return ProviderError("Invalid or expired session", code="session_not_found", status=401)
        ttl = max(1, int(claims.get("exp", time.time()) - time.time()))
        self._store.set(f"revoked:{claims['jti']}", "1", ttl_seconds=ttl)
        return None


class SqlRoleStore:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def get_role(self, user_id: str) -> Optional[str]:
        with self._session_factory() as db:
            profile = db.get(Profile, user_id)
        return profile.role if profile else None

    def set_role(self, user_id: str, role: Optional[str]) -> None:
        with self._session_factory() as db:
            profile = db.get(Profile, user_id)
            if profile is None:
                db.add(Profile(id=user_id, role=role))
            else:
                profile.role = role
            db.commit()


__all__ = ["LocalIdentityProvider", "SqlRoleStore", "hash_password", "verify_password"]
