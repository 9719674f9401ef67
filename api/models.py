"""
API request and response models for staffdesk REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# bcrypt cannot hash more than 72 bytes; longer input can never verify.
_PASSWORD_MAX_LENGTH = 72

# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    details: Optional[dict[str, Any]] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str


# ---------------------------------------------------------------------------
# Auth -- requests
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=50)
    password: str = Field(..., min_length=1, max_length=_PASSWORD_MAX_LENGTH)


class RefreshTokenRequest(BaseModel):
    """Body for /auth/logout and /auth/refresh.

    refresh_token may be omitted when the httpOnly cookie set at login is
    present; the route falls back to the cookie.
    """

    refresh_token: Optional[str] = Field(default=None, min_length=1, max_length=1024)


# ---------------------------------------------------------------------------
# Auth -- responses
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public user fields. Password hash and salt are never serialized."""

    id: str
    username: str
    email: str
    first_name: str
    last_name: str
    status: str


class LoginResponse(BaseModel):
    user: UserResponse
    access_token: str
    token_type: str = "Bearer"
    expires_in: int


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int


class LogoutResponse(BaseModel):
    message: str


class MeResponse(BaseModel):
    user: UserResponse
    role_id: Optional[str] = None
    last_login_at: Optional[str] = None
