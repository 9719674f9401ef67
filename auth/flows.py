"""
auth/flows.py -- Login, logout and refresh orchestration.

AuthService combines the credential hasher, the token service and the two
stores into the three authentication protocols. It knows nothing about HTTP:
inputs are plain strings, outputs are result dataclasses, failures are
auth.errors exceptions that api/ maps to status codes.

Failure handling:
  Fatal -- the call raises:
    * refresh-token row insert at login or refresh (AuthSystemError; without
      the row the issued refresh token would be unusable)
    * revoke at logout (VersionConflict or AuthSystemError)
    * losing the revoke race at refresh (VersionConflict); another request
      already spent the same refresh row, and the pair minted here is dropped
      before its row is stored
  Non-blocking side effects -- logged, returned as SideEffectResult, never raised:
    * failed-login counter at login
    * last-login / counter reset at login
    * revoking the old row during refresh, for store errors only
  The non-blocking writes trade consistency for availability: a lost write
  can leave a counter short, or leave a rotated-out refresh row valid until
  it expires. That gap is known and accepted.

Lockout counter races:
  Two concurrent failed logins read the same version; the second write gets
  VersionConflict. _persist_user_change() re-reads the user, re-applies the
  mutation and retries up to max_retries times, so attempts are not lost.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional

from sqlalchemy.exc import SQLAlchemyError

from auth.errors import (
    AccountLocked,
    AccountNotActive,
    AuthSystemError,
    InvalidCredentials,
    InvalidToken,
    UserNotFound,
    VersionConflict,
)
from auth.models import DEFAULT_LOCKOUT, Clock, LockoutPolicy, PublicUser, RefreshToken, TokenPair, User, utcnow
from auth.passwords import PasswordHasher
from auth.store import RefreshTokenRepository, UserRepository
from auth.tokens import TokenConfig, TokenService

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("staffdesk.auth")

LOGOUT_MESSAGE = "Successfully logged out"


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SideEffectResult:
    """Outcome of a write whose failure must not fail the surrounding flow."""

    name: str
    ok: bool
    attempts: int = 1
    error: Optional[str] = None


@dataclass
class LoginResult:
    user: PublicUser
    tokens: TokenPair
    expires_in: int
    refresh_expires_at: datetime
    side_effects: list[SideEffectResult] = field(default_factory=list)


@dataclass
class LogoutResult:
    message: str = LOGOUT_MESSAGE


@dataclass
class RefreshResult:
    tokens: TokenPair
    expires_in: int
    refresh_expires_at: datetime
    side_effects: list[SideEffectResult] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class AuthService:
    """Stateless per call; all durable state lives in the stores.

    session_lifetime is the absolute lifetime of the refresh-token row created
    at login. Refresh keeps that row's expiry, so rotating tokens never extends
    a session.
    """

    def __init__(
        self,
        users: UserRepository,
        refresh_tokens: RefreshTokenRepository,
        hasher: PasswordHasher,
        tokens: TokenService,
        policy: LockoutPolicy = DEFAULT_LOCKOUT,
        session_lifetime: timedelta = timedelta(days=7),
        clock: Clock = utcnow,
        max_retries: int = 3,
    ) -> None:
        self._users = users
        self._refresh_tokens = refresh_tokens
        self._hasher = hasher
        self._tokens = tokens
        self._policy = policy
        self._session_lifetime = session_lifetime
        self._clock = clock
        self._max_retries = max(1, max_retries)

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, username: str, password: str, ip_address: str = "", user_agent: str = "") -> LoginResult:
        now = self._clock()

        user = self._users.get_by_username(username)
        if user is None:
            self._hasher.verify_dummy(password)
            logger.info("Login failed: unknown username from %s", ip_address or "unknown")
            raise InvalidCredentials()

        if user.is_locked(now):
            logger.warning("Login refused for locked user %s from %s", user.id, ip_address or "unknown")
            raise AccountLocked(details={"locked_until": user.locked_until.isoformat()})

        if not user.is_active():
            logger.info("Login refused for %s user %s", user.status.value, user.id)
            raise AccountNotActive()

        if not self._hasher.verify_password(password, user.password_hash, user.salt):
            outcome = self._persist_user_change(
                "record_failed_login",
                user,
                lambda u: u.record_failed_login(now, self._policy),
            )
            logger.info("Login failed: wrong password for user %s from %s", user.id, ip_address or "unknown")
            error = InvalidCredentials()
            error.side_effects = (outcome,)
            raise error

        tokens = self._tokens.issue_token_pair(user.id, user.username, user.email, user.role_id)

        refresh_expires_at = now + self._session_lifetime
        self._store_refresh_token(user.id, tokens.refresh_token, refresh_expires_at, ip_address, user_agent, now)

        side_effects = [self._persist_user_change("record_login", user, lambda u: u.record_login(now))]
        logger.info("User %s logged in from %s", user.id, ip_address or "unknown")
        return LoginResult(
            user=user.to_public(),
            tokens=tokens,
            expires_in=tokens.expires_in,
            refresh_expires_at=refresh_expires_at,
            side_effects=side_effects,
        )

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    def logout(self, refresh_token: str) -> LogoutResult:
        """Revoke a refresh token.

        Only refresh tokens are accepted; an access token raises
        InvalidTokenType from validate_refresh().
        """
        self._tokens.validate_refresh(refresh_token)
        now = self._clock()

        stored = self._refresh_tokens.get_by_token(refresh_token)
        if stored is None or not stored.is_valid(now):
            raise InvalidToken("Invalid refresh token.")

        stored.revoke(now)
        try:
            self._refresh_tokens.update(stored)
        except SQLAlchemyError as exc:
            logger.error("Failed to revoke refresh token %s: %s", stored.id, exc)
            raise AuthSystemError("Failed to revoke refresh token.") from exc
        logger.info("Refresh token %s revoked for user %s (logout)", stored.id, stored.user_id)
        return LogoutResult()

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str, ip_address: str = "", user_agent: str = "") -> RefreshResult:
        claims = self._tokens.validate(refresh_token)
        now = self._clock()

        stored = self._refresh_tokens.get_by_token(refresh_token)
        if stored is None or not stored.is_valid(now) or stored.user_id != claims.user_id:
            raise InvalidToken("Invalid refresh token.")

        user = self._users.get_by_id(claims.user_id)
        if user is None:
            raise UserNotFound()
        if not user.is_active():
            raise AccountNotActive()

        # Re-checks the audience; an access token fails here with InvalidTokenType.
        tokens = self._tokens.refresh(refresh_token, user.username, user.email, user.role_id)

        side_effects = [self._revoke_best_effort(stored, now)]

        self._store_refresh_token(user.id, tokens.refresh_token, stored.expires_at, ip_address, user_agent, now)
        logger.info("Refresh token rotated for user %s", user.id)
        return RefreshResult(
            tokens=tokens,
            expires_in=tokens.expires_in,
            refresh_expires_at=stored.expires_at,
            side_effects=side_effects,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _store_refresh_token(
        self,
        user_id: str,
        token: str,
        expires_at: datetime,
        ip_address: str,
        user_agent: str,
        now: datetime,
    ) -> None:
        row = RefreshToken.issue(user_id, token, expires_at, ip_address, user_agent, now=now)
        try:
            self._refresh_tokens.create(row)
        except SQLAlchemyError as exc:
            logger.error("Failed to save refresh token for user %s: %s", user_id, exc)
            raise AuthSystemError("Failed to save refresh token.") from exc

    def _revoke_best_effort(self, stored: RefreshToken, now: datetime) -> SideEffectResult:
        # Known consistency gap: on a store error the old row stays usable until
        # it expires, while the caller already holds the new pair. A version
        # conflict means the row was already spent and is never swallowed.
        stored.revoke(now)
        try:
            self._refresh_tokens.update(stored)
        except VersionConflict:
            logger.warning("Refresh token %s was already spent by a concurrent request", stored.id)
            raise
        except SQLAlchemyError as exc:
            logger.warning("Could not revoke rotated refresh token %s: %s", stored.id, exc)
            return SideEffectResult("revoke_old_refresh_token", ok=False, error=str(exc))
        return SideEffectResult("revoke_old_refresh_token", ok=True)

    def _persist_user_change(self, name: str, user: User, mutate: Callable[[User], None]) -> SideEffectResult:
        """Apply mutate() to user and persist it, retrying on version conflicts.

        On conflict the user is re-read and the mutation re-applied to the fresh
        copy. Failures are logged and reported, never raised.
        """
        # Known consistency gap: exhausting the retries or a store error drops
        # the write. The login outcome itself is unaffected.
        current: Optional[User] = user
        last_error: Optional[str] = None
        for attempt in range(1, self._max_retries + 1):
            mutate(current)
            try:
                self._users.update(current)
            except VersionConflict as exc:
                logger.info("%s: version conflict for user %s (attempt %d)", name, user.id, attempt)
                current = self._users.get_by_id(user.id)
                if current is None:
                    return SideEffectResult(name, ok=False, attempts=attempt, error="user disappeared")
                last_error = str(exc)
                continue
            except SQLAlchemyError as exc:
                logger.warning("%s: could not persist user %s: %s", name, user.id, exc)
                return SideEffectResult(name, ok=False, attempts=attempt, error=str(exc))
            return SideEffectResult(name, ok=True, attempts=attempt)
        logger.warning("%s: giving up on user %s after %d attempts", name, user.id, self._max_retries)
        return SideEffectResult(name, ok=False, attempts=self._max_retries, error=last_error)

    @property
    def token_service(self) -> TokenService:
        return self._tokens


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------


def build_auth_service(
    settings: Settings,
    users: UserRepository,
    refresh_tokens: RefreshTokenRepository,
    clock: Clock = utcnow,
) -> AuthService:
    """Wire an AuthService from Settings. The signing secret goes no further than TokenConfig."""
    return AuthService(
        users=users,
        refresh_tokens=refresh_tokens,
        hasher=PasswordHasher(rounds=settings.bcrypt_rounds),
        tokens=TokenService(TokenConfig.from_settings(settings), clock=clock),
        policy=LockoutPolicy(
            threshold=settings.lockout_threshold,
            duration=timedelta(seconds=settings.lockout_duration_seconds),
        ),
        session_lifetime=timedelta(seconds=settings.refresh_session_lifetime_seconds),
        clock=clock,
        max_retries=settings.lockout_retry_attempts,
    )
