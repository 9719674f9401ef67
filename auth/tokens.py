"""
auth/tokens.py -- JWT issuance/validation and bearer/cookie helpers.

Security design decisions:
  JWT: python-jose, HMAC family only (HS256 by default). Two token kinds are
       issued as a pair:
         access  -- aud "api", short-lived, carries user_id/username/email/role_id.
         refresh -- aud "refresh", long-lived, carries only user_id. Identity
                    is re-read from the user store when it is exchanged.
       Both carry iss, sub (= user_id), nbf, iat, exp and a unique jti.

  Audience: the "aud" claim is the only difference between the two kinds. It
       is converted into AccessClaims / RefreshClaims at decode time and every
       consumer asks for the kind it needs (validate_access / validate_refresh).
       A token of the other kind raises InvalidTokenType, never passes.

  Algorithm confusion: the header's "alg" must equal the configured algorithm
       before the signature is even checked, and python-jose is given a
       single-element algorithms list. "none", RS*/ES* and other HS* variants
       are all rejected.

  Clock: exp/nbf are checked here against an injected clock rather than by
       python-jose, so expiry is testable without sleeping. TOKEN_LEEWAY_SECONDS
       widens both bounds.

  Secret: TokenService receives an immutable TokenConfig at construction.
       There is no module-level secret; api/main.py builds the service in the
       lifespan from get_settings().

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Optional

from jose import JWTError, jwt

from auth.errors import AuthSystemError, InvalidToken, InvalidTokenType, MalformedHeader, MissingHeader
from auth.models import (
    ACCESS_AUDIENCE,
    AUDIENCE_KINDS,
    REFRESH_AUDIENCE,
    AccessClaims,
    Clock,
    RefreshClaims,
    TokenClaims,
    TokenKind,
    TokenPair,
    new_id,
    utcnow,
)

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("staffdesk.auth.tokens")

BEARER_PREFIX = "Bearer "

REFRESH_COOKIE_NAME = "refresh_token"
REFRESH_COOKIE_PATH = "/api/v1/auth"

# exp/nbf presence and bounds are checked against the service clock in
# _check_lifetime(); python-jose's require_exp/require_nbf would re-enable its
# own wall-clock check. aud is converted to a TokenKind in _kind_from_audience().
_DECODE_OPTIONS = {
    "verify_aud": False,
    "verify_exp": False,
    "verify_nbf": False,
    "require_iat": True,
    "require_iss": True,
    "require_sub": True,
    "require_jti": True,
}


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenConfig:
    secret: str
    algorithm: str = "HS256"
    issuer: str = "staffdesk"
    access_ttl: timedelta = timedelta(minutes=15)
    refresh_ttl: timedelta = timedelta(days=7)
    leeway: timedelta = timedelta(0)

    @classmethod
    def from_settings(cls, settings: Settings) -> TokenConfig:
        return cls(
            secret=settings.secret_key,
            algorithm=settings.jwt_algorithm,
            issuer=settings.token_issuer,
            access_ttl=timedelta(seconds=settings.access_token_expire_seconds),
            refresh_ttl=timedelta(seconds=settings.refresh_token_expire_seconds),
            leeway=timedelta(seconds=settings.token_leeway_seconds),
        )


# ---------------------------------------------------------------------------
# Token service
# ---------------------------------------------------------------------------


class TokenService:
    """Issues and validates signed access/refresh token pairs.

    Usage:
        service = TokenService(TokenConfig(secret=settings.secret_key))
        pair = service.issue_token_pair(user.id, user.username, user.email, user.role_id)
        claims = service.validate_access(pair.access_token)
    """

    def __init__(self, config: TokenConfig, clock: Clock = utcnow) -> None:
        if not config.algorithm.startswith("HS"):
            raise ValueError("TokenService only supports HMAC algorithms")
        self._config = config
        self._clock = clock

    @property
    def access_ttl_seconds(self) -> int:
        return int(self._config.access_ttl.total_seconds())

    # -- issuance ---------------------------------------------------------

    def issue_token_pair(self, user_id: str, username: str, email: str, role_id: Optional[str]) -> TokenPair:
        now = self._clock()
        access_claims: dict[str, Any] = {
            "user_id": user_id,
            "username": username,
            "email": email,
        }
        if role_id is not None:
            access_claims["role_id"] = role_id
        access_token = self._encode(access_claims, ACCESS_AUDIENCE, now, self._config.access_ttl, user_id)
        refresh_token = self._encode({"user_id": user_id}, REFRESH_AUDIENCE, now, self._config.refresh_ttl, user_id)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.access_ttl_seconds,
        )

    def _encode(self, claims: dict[str, Any], audience: str, now: datetime, ttl: timedelta, user_id: str) -> str:
        issued_at = int(now.timestamp())
        payload = {
            **claims,
            "iss": self._config.issuer,
            "sub": user_id,
            "aud": audience,
            "iat": issued_at,
            "nbf": issued_at,
            "exp": int((now + ttl).timestamp()),
            "jti": new_id(),
        }
        try:
            return jwt.encode(payload, self._config.secret, algorithm=self._config.algorithm)
        except JWTError as exc:
            logger.error("Failed to sign %s token for user %s: %s", audience, user_id, exc)
            raise AuthSystemError("Failed to generate tokens.") from exc

    # -- validation -------------------------------------------------------

    def validate(self, token: str) -> TokenClaims:
        """Verify signature, issuer and lifetime; return the typed claims.

        Raises InvalidToken on any structural, signature or temporal failure.
        """
        if not token:
            raise InvalidToken()
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise InvalidToken() from exc
        if header.get("alg") != self._config.algorithm:
            logger.warning("Rejected token with unexpected algorithm %r", header.get("alg"))
            raise InvalidToken()

        try:
            payload = jwt.decode(
                token,
                self._config.secret,
                algorithms=[self._config.algorithm],
                issuer=self._config.issuer,
                options=_DECODE_OPTIONS,
            )
        except JWTError as exc:
            logger.info("Token rejected: %s", exc)
            raise InvalidToken() from exc

        expires_at, not_before = self._check_lifetime(payload)
        kind = _kind_from_audience(payload.get("aud"))
        try:
            return _build_claims(kind, payload, expires_at, not_before)
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidToken() from exc

    def validate_access(self, token: str) -> AccessClaims:
        claims = self.validate(token)
        if not isinstance(claims, AccessClaims):
            raise InvalidTokenType("An access token is required.")
        return claims

    def validate_refresh(self, token: str) -> RefreshClaims:
        claims = self.validate(token)
        if not isinstance(claims, RefreshClaims):
            raise InvalidTokenType("A refresh token is required.")
        return claims

    def _check_lifetime(self, payload: dict[str, Any]) -> tuple[datetime, datetime]:
        exp, nbf = payload.get("exp"), payload.get("nbf")
        if not isinstance(exp, (int, float)) or not isinstance(nbf, (int, float)):
            raise InvalidToken()
        expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
        not_before = datetime.fromtimestamp(nbf, tz=timezone.utc)
        now = self._clock()
        leeway = self._config.leeway
        if now >= expires_at + leeway:
            raise InvalidToken("Token has expired.")
        if now < not_before - leeway:
            raise InvalidToken("Token is not yet valid.")
        return expires_at, not_before

    # -- exchange ---------------------------------------------------------

    def refresh(self, refresh_token: str, username: str, email: str, role_id: Optional[str]) -> TokenPair:
        """Exchange a refresh token for a brand-new pair.

        username/email/role_id come from a fresh user-store read by the caller,
        never from the refresh token itself.
        """
        claims = self.validate_refresh(refresh_token)
        return self.issue_token_pair(claims.user_id, username, email, role_id)


# ---------------------------------------------------------------------------
# Claim mapping
# ---------------------------------------------------------------------------


def _kind_from_audience(aud: Any) -> TokenKind:
    audiences = [aud] if isinstance(aud, str) else aud
    if not isinstance(audiences, list):
        raise InvalidToken()
    kinds = {AUDIENCE_KINDS[a] for a in audiences if isinstance(a, str) and a in AUDIENCE_KINDS}
    if len(kinds) != 1:
        raise InvalidToken()
    return kinds.pop()


def _build_claims(kind: TokenKind, payload: dict[str, Any], expires_at: datetime, not_before: datetime) -> TokenClaims:
    user_id = payload["user_id"]
    if not isinstance(user_id, str) or user_id != payload["sub"]:
        raise ValueError("user_id does not match subject")
    issued_at = datetime.fromtimestamp(payload["iat"], tz=timezone.utc)
    if kind is TokenKind.REFRESH:
        return RefreshClaims(
            user_id=user_id,
            issuer=payload["iss"],
            subject=payload["sub"],
            expires_at=expires_at,
            not_before=not_before,
            issued_at=issued_at,
            token_id=payload["jti"],
        )
    return AccessClaims(
        user_id=user_id,
        username=str(payload["username"]),
        email=str(payload["email"]),
        role_id=payload.get("role_id"),
        issuer=payload["iss"],
        subject=payload["sub"],
        expires_at=expires_at,
        not_before=not_before,
        issued_at=issued_at,
        token_id=payload["jti"],
    )


# ---------------------------------------------------------------------------
# Authorization header
# ---------------------------------------------------------------------------


def extract_bearer(header: Optional[str]) -> str:
    """Return the token from an "Authorization: Bearer <token>" header value.

    The prefix match is exact and case-sensitive.
    """
    if not header:
        raise MissingHeader()
    if not header.startswith(BEARER_PREFIX) or len(header) == len(BEARER_PREFIX):
        raise MalformedHeader()
    return header[len(BEARER_PREFIX) :]


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_refresh_cookie(response, token: str, max_age: int, secure: bool = False) -> None:
    """Write the refresh token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    path: scoped to the auth routes, the only ones that read it.
    max_age: seconds until the server-side session row expires.
    """
    response.set_cookie(
        REFRESH_COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=max(max_age, 0),
        path=REFRESH_COOKIE_PATH,
    )


def clear_refresh_cookie(response, secure: bool = False) -> None:
    response.delete_cookie(REFRESH_COOKIE_NAME, path=REFRESH_COOKIE_PATH, secure=secure, httponly=True, samesite="lax")
