"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class. Stores and flows do the I/O; the only logic kept here is
the state each entity owns -- the user's lockout window and the refresh
token's one-way revocation. Every time-dependent method takes an optional
`now` so callers (and tests) can drive the clock explicitly.

Token claims are modelled as two distinct types rather than one dict with an
audience string. The token service converts the JWT "aud" claim into one of
them at decode time, so code holding an AccessClaims cannot mistake it for a
refresh credential.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import ClassVar, Optional, Union

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# User
# ---------------------------------------------------------------------------


class UserStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    PENDING = "PENDING"
    BLOCKED = "BLOCKED"


@dataclass(frozen=True)
class LockoutPolicy:
    """How many consecutive failures lock an account, and for how long."""

    threshold: int = 5
    duration: timedelta = timedelta(minutes=30)


DEFAULT_LOCKOUT = LockoutPolicy()


@dataclass
class PublicUser:
    """The user fields that may leave the server. No hash, no salt."""

    id: str
    username: str
    email: str
    first_name: str
    last_name: str
    status: str


@dataclass
class User:
    """A staff member able to authenticate.

    password_hash and salt come from auth.passwords.PasswordHasher. version is
    the optimistic-lock counter: the store bumps it on every successful write
    and rejects writes carrying a stale value.
    """

    username: str
    email: str
    password_hash: str = ""
    salt: str = ""
    first_name: str = ""
    last_name: str = ""
    phone: str = ""
    status: UserStatus = UserStatus.PENDING
    id: str = field(default_factory=new_id)
    role_id: Optional[str] = None
    login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE

    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    # -- lockout ----------------------------------------------------------

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        """True iff a lock window is set and has not yet elapsed."""
        if self.locked_until is None:
            return False
        return self.locked_until > (now or utcnow())

    def record_failed_login(self, now: Optional[datetime] = None, policy: LockoutPolicy = DEFAULT_LOCKOUT) -> None:
        """Count a failed attempt; open a lock window once the threshold is hit.

        The counter is not reset when a lock window expires, only by
        record_login() or unlock(). A failure after an expired window
        therefore re-locks immediately.
        """
        now = now or utcnow()
        self.login_attempts += 1
        if self.login_attempts >= policy.threshold:
            self.locked_until = now + policy.duration
        self.updated_at = now

    def record_login(self, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        self.last_login_at = now
        self.login_attempts = 0
        self.locked_until = None
        self.updated_at = now

    def unlock(self, now: Optional[datetime] = None) -> None:
        """Administrative reset, independent of any login."""
        self.login_attempts = 0
        self.locked_until = None
        self.updated_at = now or utcnow()

    def to_public(self) -> PublicUser:
        return PublicUser(
            id=self.id,
            username=self.username,
            email=self.email,
            first_name=self.first_name,
            last_name=self.last_name,
            status=self.status.value,
        )


# ---------------------------------------------------------------------------
# Refresh token (server-side record)
# ---------------------------------------------------------------------------


@dataclass
class RefreshToken:
    """A refresh credential as persisted by the store.

    A row is usable iff it is not revoked and not expired. Revocation is
    one-way. Rows are only removed (soft-deleted) by the expired-token cleanup.
    ip_address and user_agent are informational.
    """

    user_id: str
    token: str
    expires_at: datetime
    id: str = field(default_factory=new_id)
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    ip_address: str = ""
    user_agent: str = ""
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @classmethod
    def issue(
        cls,
        user_id: str,
        token: str,
        expires_at: datetime,
        ip_address: str = "",
        user_agent: str = "",
        now: Optional[datetime] = None,
    ) -> RefreshToken:
        now = now or utcnow()
        return cls(
            user_id=user_id,
            token=token,
            expires_at=expires_at,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
            updated_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return not self.revoked and not self.is_expired(now)

    def revoke(self, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        self.revoked = True
        self.revoked_at = now
        self.updated_at = now


# ---------------------------------------------------------------------------
# Token claims (ephemeral)
# ---------------------------------------------------------------------------


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


# JWT "aud" values. The audience is the only thing separating the two token
# kinds; both are otherwise identical HMAC-signed JWTs.
ACCESS_AUDIENCE = "api"
REFRESH_AUDIENCE = "refresh"

AUDIENCE_KINDS: dict[str, TokenKind] = {
    ACCESS_AUDIENCE: TokenKind.ACCESS,
    REFRESH_AUDIENCE: TokenKind.REFRESH,
}


@dataclass(frozen=True)
class AccessClaims:
    kind: ClassVar[TokenKind] = TokenKind.ACCESS

    user_id: str
    username: str
    email: str
    role_id: Optional[str]
    issuer: str
    subject: str
    expires_at: datetime
    not_before: datetime
    issued_at: datetime
    token_id: str


@dataclass(frozen=True)
class RefreshClaims:
    """Refresh tokens carry only the user ID; identity is re-read from the store."""

    kind: ClassVar[TokenKind] = TokenKind.REFRESH

    user_id: str
    issuer: str
    subject: str
    expires_at: datetime
    not_before: datetime
    issued_at: datetime
    token_id: str


TokenClaims = Union[AccessClaims, RefreshClaims]


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int  # access token lifetime in seconds
    token_type: str = "Bearer"
