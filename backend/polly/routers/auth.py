# backend/polly/routers/auth.py
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, EmailStr, Field, field_validator

from polly.core.settings import get_settings
from polly.deps import get_auth_flow, get_mfa_registry
from polly.limiter import auth_rate_limit, limiter
from polly.providers.base import ProviderUser
from polly.security import bearer_token
from polly.security.auth_flow import UNEXPECTED_MESSAGE, AuthFlow, AuthResult
from polly.security.errors import AuthErrorType
from polly.security.logger import auth_logger as logger
from polly.security.mfa import MfaRegistry

router = APIRouter(prefix="/auth", tags=["auth"])

ERROR_STATUS = {
    AuthErrorType.INVALID_CREDENTIALS: status.HTTP_401_UNAUTHORIZED,
    AuthErrorType.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    AuthErrorType.ACCOUNT_LOCKED: status.HTTP_429_TOO_MANY_REQUESTS,
    AuthErrorType.VERIFICATION_REQUIRED: status.HTTP_403_FORBIDDEN,
    AuthErrorType.NETWORK_ERROR: status.HTTP_503_SERVICE_UNAVAILABLE,
    AuthErrorType.UNKNOWN: status.HTTP_400_BAD_REQUEST,
}


# ---------------- Payloads ----------------
class LoginPayload(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=128)
    otp: Optional[str] = Field(default=None, min_length=6, max_length=8)
    backup_code: Optional[str] = Field(default=None, min_length=8, max_length=16)


class RegisterPayload(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8, max_length=128)
    name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("password")
    @classmethod
    def _password_rules(cls, v: str) -> str:
        if any(ord(ch) < 32 for ch in v):
            raise ValueError("password contains control characters")
        if v.strip() != v:
            raise ValueError("password must not have surrounding spaces")
        return v

    @field_validator("name")
    @classmethod
    def _name_rules(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None


class LoginResponse(BaseModel):
    error: Optional[str] = None
    access_token: str
    token_type: str = "bearer"
    requires_verification: bool = False


class RegisterResponse(BaseModel):
    error: Optional[str] = None
    user_id: Optional[str] = None
    access_token: Optional[str] = None


class SessionResponse(BaseModel):
    user_id: str
    email: str
    expires_in: Optional[int] = None


class MfaEnrollResponse(BaseModel):
    otpauth_uri: str
    backup_codes: List[str]


class MfaVerifyPayload(BaseModel):
    otp: str = Field(min_length=6, max_length=8)


# ---------------- Utilities ----------------
def _client_ip(request: Request) -> str:
    if get_settings().trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    client = request.client
    return client.host if client and client.host else "unknown-ip"


def _user_agent(request: Request) -> str:
    return request.headers.get("user-agent") or "unknown"


def _error_response(result: AuthResult, default_status: Optional[int] = None) -> JSONResponse:
    code = default_status or ERROR_STATUS.get(result.error_type, status.HTTP_400_BAD_REQUEST)
    headers = {}
    if result.retry_after:
        headers["Retry-After"] = str(result.retry_after)
    return JSONResponse(
        status_code=code,
        content={
            "error": result.error,
            "error_type": result.error_type.value if result.error_type else None,
            "retry_after": result.retry_after,
        },
        headers=headers or None,
    )


def _current_user(request: Request, flow: AuthFlow) -> ProviderUser:
    token = bearer_token(request)
    user = flow.get_current_user(token) if token else None
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthenticated")
    return user


# ---------------- Login / register ----------------
@router.post("/login", response_model=LoginResponse)
@limiter.limit(auth_rate_limit)
def login(request: Request, payload: LoginPayload, flow: AuthFlow = Depends(get_auth_flow)):
    result = flow.login(
        payload.email,
        payload.password,
        ip=_client_ip(request),
        user_agent=_user_agent(request),
        otp=payload.otp,
        backup_code=payload.backup_code,
    )
    if not result.ok:
        return _error_response(result)
    if result.session is None:
        # Provider accepted the credentials but issued no session.
        return _error_response(
            AuthResult(error="Please verify your email before logging in", error_type=AuthErrorType.VERIFICATION_REQUIRED)
        )
    return LoginResponse(
        access_token=result.session.access_token,
        token_type=result.session.token_type,
        requires_verification=result.requires_verification,
    )


@router.post("/register", response_model=RegisterResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(auth_rate_limit)
def register(request: Request, payload: RegisterPayload, flow: AuthFlow = Depends(get_auth_flow)):
    result = flow.register(
        payload.email,
        payload.password,
        payload.name,
        ip=_client_ip(request),
        user_agent=_user_agent(request),
    )
    if not result.ok:
        if result.error == UNEXPECTED_MESSAGE:
            return _error_response(result, status.HTTP_500_INTERNAL_SERVER_ERROR)
        return _error_response(result)
    return RegisterResponse(
        user_id=result.user.id if result.user else None,
        access_token=result.session.access_token if result.session else None,
    )


# ---------------- Session ----------------
@router.post("/logout")
def logout(request: Request, flow: AuthFlow = Depends(get_auth_flow)):
    token = bearer_token(request)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthenticated")
    result = flow.logout(token)
    if not result.ok:
        return _error_response(result, status.HTTP_401_UNAUTHORIZED)
    return {"error": None}


@router.get("/session", response_model=SessionResponse)
def session(request: Request, flow: AuthFlow = Depends(get_auth_flow)) -> SessionResponse:
    token = bearer_token(request)
    current = flow.get_session(token) if token else None
    if current is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthenticated")
    return SessionResponse(user_id=current.user.id, email=current.user.email, expires_in=current.expires_in)


# ---------------- MFA routes ----------------
@router.post("/mfa/enroll", response_model=MfaEnrollResponse, status_code=status.HTTP_201_CREATED)
def enroll_mfa(
    request: Request,
    flow: AuthFlow = Depends(get_auth_flow),
    mfa: MfaRegistry = Depends(get_mfa_registry),
) -> MfaEnrollResponse:
    user = _current_user(request, flow)
    otpauth_uri, backup_codes = mfa.enroll(user.id, user.email)
    logger.info(f"MFA enrolled for {user.email}")
    return MfaEnrollResponse(otpauth_uri=otpauth_uri, backup_codes=backup_codes)


@router.post("/mfa/verify-setup", status_code=status.HTTP_204_NO_CONTENT)
def verify_mfa_setup(
    request: Request,
    payload: MfaVerifyPayload,
    flow: AuthFlow = Depends(get_auth_flow),
    mfa: MfaRegistry = Depends(get_mfa_registry),
) -> Response:
    user = _current_user(request, flow)
    if not mfa.is_enrolled(user.id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="mfa_not_enrolled")
    if not mfa.verify_totp(user.id, payload.otp):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_otp")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
