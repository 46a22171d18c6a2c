"""
Adapter for a hosted Supabase project (GoTrue auth + PostgREST).

Transport failures are reported as ``network_error`` provider errors rather
than raised, so callers handle them like any other provider error.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests

from polly.providers.base import AuthResponse, ProviderError, ProviderSession, ProviderUser

logger = logging.getLogger(__name__)


def _error_from(response: requests.Response) -> ProviderError:
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    message = (
        body.get("msg")
        or body.get("message")
        or body.get("error_description")
        or body.get("error")
        or response.reason
        or f"HTTP {response.status_code}"
    )
    code = body.get("error_code") or body.get("code")
    if code is None and response.status_code == 429:
        code = "over_request_rate_limit"
    return ProviderError(message=str(message), code=str(code) if code else None, status=response.status_code)


def _user_from(data: Optional[Dict[str, Any]]) -> Optional[ProviderUser]:
    if not data or not data.get("id"):
        return None
    return ProviderUser(id=str(data["id"]), email=data.get("email") or "", metadata=data.get("user_metadata") or {})


def _session_from(data: Dict[str, Any], user: Optional[ProviderUser]) -> Optional[ProviderSession]:
    token = data.get("access_token")
    if not token or user is None:
        return None
    return ProviderSession(
        access_token=token,
        user=user,
        token_type=data.get("token_type") or "bearer",
        expires_in=data.get("expires_in"),
        refresh_token=data.get("refresh_token"),
    )


class SupabaseIdentityProvider:
    def __init__(
        self,
        url: str,
        anon_key: str,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._base = url.rstrip("/")
        self._anon_key = anon_key
        self._timeout = timeout
        self._http = session or requests.Session()

    def _headers(self, access_token: Optional[str] = None) -> Dict[str, str]:
        headers = {"apikey": self._anon_key, "Content-Type": "application/json"}
        headers["Authorization"] = f"Bearer {access_token or self._anon_key}"
        return headers

    def _request(self, method: str, path: str, *, access_token: Optional[str] = None, **kwargs: Any):
        url = f"{self._base}{path}"
        try:
            return self._http.request(
                method, url, headers=self._headers(access_token), timeout=self._timeout, **kwargs
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            logger.warning(f"Identity provider unreachable: {method} {path}: {exc}")
            return ProviderError(message=str(exc) or "Network error", code="network_error")

    def sign_in_with_password(self, email: str, password: str) -> AuthResponse:
        response = self._request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        if isinstance(response, ProviderError):
            return AuthResponse(error=response)
        if not response.ok:
            return AuthResponse(error=_error_from(response))
        data = response.json()
        user = _user_from(data.get("user"))
        return AuthResponse(user=user, session=_session_from(data, user))

    def sign_up(self, email: str, password: str, metadata: Optional[Dict[str, Any]] = None) -> AuthResponse:
        response = self._request(
            "POST",
            "/auth/v1/signup",
            json={"email": email, "password": password, "data": metadata or {}},
        )
        if isinstance(response, ProviderError):
            return AuthResponse(error=response)
        if not response.ok:
            return AuthResponse(error=_error_from(response))
        data = response.json()
        # With email confirmation enabled the body is the bare user object.
        user = _user_from(data.get("user") if "user" in data else data)
        return AuthResponse(user=user, session=_session_from(data, user))

    def get_user(self, access_token: str) -> Optional[ProviderUser]:
        if not access_token:
            return None
        response = self._request("GET", "/auth/v1/user", access_token=access_token)
        if isinstance(response, ProviderError) or not response.ok:
            return None
        return _user_from(response.json())

    def get_session(self, access_token: str) -> Optional[ProviderSession]:
        user = self.get_user(access_token)
        if user is None:
            return None
        return ProviderSession(access_token=access_token, user=user)

    def sign_out(self, access_token: str) -> Optional[ProviderError]:
        response = self._request("POST", "/auth/v1/logout", access_token=access_token)
        if isinstance(response, ProviderError):
            return response
        if not response.ok:
            return _error_from(response)
        return None


class SupabaseRoleStore:
    """Reads ``profiles.role`` through PostgREST."""

    def __init__(
        self,
        url: str,
        api_key: str,
        table: str = "profiles",
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._base = url.rstrip("/")
        self._api_key = api_key
        self._table = table
        self._timeout = timeout
        self._http = session or requests.Session()

    def get_role(self, user_id: str) -> Optional[str]:
        response = self._http.request(
            "GET",
            f"{self._base}/rest/v1/{self._table}",
            params={"id": f"eq.{user_id}", "select": "role"},
            headers={"apikey": self._api_key, "Authorization": f"Bearer {self._api_key}"},
            timeout=self._timeout,
        )
        response.raise_for_status()
        rows = response.json()
        if not rows:
            return None
        return rows[0].get("role")


__all__ = ["SupabaseIdentityProvider", "SupabaseRoleStore"]
