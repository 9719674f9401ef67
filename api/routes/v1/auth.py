"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/login    -- password login; access token in body, refresh token in cookie
  POST /api/v1/auth/logout   -- revoke a refresh token; clears the cookie
  POST /api/v1/auth/refresh  -- rotate a refresh token; new access token in body
  GET  /api/v1/auth/me       -- current user (Bearer access token)

Security:
  [H2] POST /login is rate-limited per client IP (LOGIN_RATE_LIMIT).
  [M5] Cache-Control: no-store on every response that carries a token.
  The refresh token never appears in a response body. It is delivered as an
  httpOnly cookie scoped to /api/v1/auth. Logout and refresh accept it from
  the JSON body first, then from that cookie.

Errors are raised as auth.errors exceptions and rendered by the AuthError
handler in api/main.py; routes never build error responses themselves.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    LoginRequest,
    LoginResponse,
    LogoutResponse,
    MeResponse,
    RefreshTokenRequest,
    TokenResponse,
    UserResponse,
)
from auth.dependencies import get_auth_service, get_current_user
from auth.errors import AuthValidationError
from auth.flows import AuthService
from auth.models import PublicUser, User, utcnow
from auth.tokens import REFRESH_COOKIE_NAME, clear_refresh_cookie, set_refresh_cookie
from core.config import get_settings

# Auth policy:
# - POST /api/v1/auth/login:    public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/logout:   public -- possession of the refresh token is the credential
# - POST /api/v1/auth/refresh:  public -- possession of the refresh token is the credential
# - GET  /api/v1/auth/me:       requires a Bearer access token (get_current_user)
router = APIRouter()

_settings = get_settings()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(_settings.login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest, auth: AuthService = Depends(get_auth_service)) -> JSONResponse:
    """Authenticate with username and password.

    Unknown username and wrong password produce the same 401
    ("invalid_credentials"). A locked account gets 423 with locked_until.
    """
    result = auth.login(body.username, body.password, _client_ip(request), request.headers.get("User-Agent", ""))

    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            user=_user_response(result.user),
            access_token=result.tokens.access_token,
            token_type=result.tokens.token_type,
            expires_in=result.expires_in,
        ).model_dump(),
    )
    set_refresh_cookie(
        resp,
        result.tokens.refresh_token,
        _seconds_until(result.refresh_expires_at),
        secure=get_settings().secure_cookies,
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/logout", response_model=LogoutResponse)
def logout(
    request: Request,
    body: Optional[RefreshTokenRequest] = None,
    auth: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Revoke the given refresh token and clear the refresh cookie."""
    result = auth.logout(_refresh_token_from(request, body))
    resp = JSONResponse(content=LogoutResponse(message=result.message).model_dump())
    clear_refresh_cookie(resp, secure=get_settings().secure_cookies)
    return resp


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(
    request: Request,
    body: Optional[RefreshTokenRequest] = None,
    auth: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Exchange a refresh token for a new access token and a rotated refresh cookie.

    The rotated token keeps the original session expiry.
    """
    result = auth.refresh(
        _refresh_token_from(request, body),
        _client_ip(request),
        request.headers.get("User-Agent", ""),
    )
    resp = JSONResponse(
        content=TokenResponse(
            access_token=result.tokens.access_token,
            token_type=result.tokens.token_type,
            expires_in=result.expires_in,
        ).model_dump(),
    )
    set_refresh_cookie(
        resp,
        result.tokens.refresh_token,
        _seconds_until(result.refresh_expires_at),
        secure=get_settings().secure_cookies,
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
async def me(current_user: User = Depends(get_current_user)) -> MeResponse:
    """Return the public profile of the user owning the access token."""
    return MeResponse(
        user=_user_response(current_user.to_public()),
        role_id=current_user.role_id,
        last_login_at=current_user.last_login_at.isoformat() if current_user.last_login_at else None,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _user_response(user: PublicUser) -> UserResponse:
    return UserResponse(
        id=user.id,
        username=user.username,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        status=user.status,
    )


def _refresh_token_from(request: Request, body: Optional[RefreshTokenRequest]) -> str:
    token = body.refresh_token if body is not None else None
    token = token or request.cookies.get(REFRESH_COOKIE_NAME)
    if not token:
        raise AuthValidationError("refresh_token is required.")
    return token


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else ""


def _seconds_until(moment) -> int:
    return int((moment - utcnow()).total_seconds())
