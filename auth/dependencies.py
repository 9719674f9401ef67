"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The services are built once in the lifespan (api/main.py) and attached to
app.state; these helpers fetch them per request so routes never construct
their own.

get_current_claims() is the access-token gate: Authorization: Bearer <token>,
audience "api" only. A refresh token presented as a bearer credential raises
InvalidTokenType. get_current_user() additionally re-reads the user and
requires an ACTIVE account.

Role and permission enforcement is not implemented; authenticated means
allowed.

Layer rule: auth/dependencies.py may import from fastapi because it is part
of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, Request

from auth.errors import AccountNotActive, UserNotFound
from auth.flows import AuthService
from auth.models import AccessClaims, User
from auth.store import UserStore
from auth.tokens import TokenService, extract_bearer


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_token_service(request: Request) -> TokenService:
    return request.app.state.token_service


def get_current_claims(request: Request, tokens: TokenService = Depends(get_token_service)) -> AccessClaims:
    """Require a valid access token in the Authorization header.

    Raises MissingHeader / MalformedHeader / InvalidToken / InvalidTokenType;
    the AuthError handler turns each into a 401.
    """
    token = extract_bearer(request.headers.get("Authorization"))
    return tokens.validate_access(token)


def get_current_user(request: Request, claims: AccessClaims = Depends(get_current_claims)) -> User:
    """Require authentication and return the live user record.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user_store: UserStore = request.app.state.user_store
    user = user_store.get_by_id(claims.user_id)
    if user is None:
        raise UserNotFound()
    if not user.is_active():
        raise AccountNotActive()
    return user
