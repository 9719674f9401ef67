"""
auth/store.py -- Store contracts and SQLAlchemy Core persistence for auth entities.

Pattern: Repository + Data Mapper.
UserRepository / RefreshTokenRepository are the contracts the flows in
auth/flows.py depend on (typing.Protocol, so any object with these methods
fits -- tests can hand in fakes). UserStore / RefreshTokenStore implement them
over SQLAlchemy Core; _row_to_user / _row_to_refresh_token are the mappers.
Flow code never touches SQL directly.

Optimistic locking:
  Every row carries a version column. update() is a compare-and-swap:
    UPDATE ... SET ..., version = expected + 1
    WHERE id = :id AND version = :expected AND deleted_at IS NULL
  Zero affected rows means another writer got there first (or the row was
  soft-deleted) and VersionConflict is raised. The store never retries; the
  caller decides whether a retry makes sense.

Soft delete:
  deleted_at IS NULL is part of every lookup. Refresh-token rows are only
  soft-deleted by cleanup_expired().

Timestamps:
  Stored as ISO 8601 UTC strings with fixed microsecond precision, so string
  comparison in SQL (cleanup_expired) orders the same way as the datetimes.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional, Protocol

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine

from auth.errors import VersionConflict
from auth.models import RefreshToken, User, UserStatus, utcnow

logger = logging.getLogger("staffdesk.auth.store")

# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------


class UserRepository(Protocol):
    def get_by_username(self, username: str) -> Optional[User]: ...

    def get_by_id(self, user_id: str) -> Optional[User]: ...

    def update(self, user: User, expected_version: Optional[int] = None) -> User: ...


class RefreshTokenRepository(Protocol):
    def create(self, refresh_token: RefreshToken) -> str: ...

    def get_by_token(self, token: str) -> Optional[RefreshToken]: ...

    def update(self, refresh_token: RefreshToken, expected_version: Optional[int] = None) -> RefreshToken: ...

    def revoke_all_for_user(self, user_id: str) -> int: ...

    def cleanup_expired(self, now: Optional[datetime] = None) -> int: ...


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("username", String(50), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False, server_default=""),
    Column("salt", String(64), nullable=False, server_default=""),
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("phone", String(20), nullable=False, server_default=""),
    Column("status", String(20), nullable=False, server_default=UserStatus.PENDING.value),
    Column("role_id", String(36)),
    Column("login_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(40)),
    Column("last_login_at", String(40)),
    Column("version", Integer, nullable=False, server_default="1"),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
    Column("deleted_at", String(40)),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("token", String(1024), nullable=False, unique=True),
    Column("expires_at", String(40), nullable=False, index=True),
    Column("is_revoked", Integer, nullable=False, server_default="0"),
    Column("revoked_at", String(40)),
    Column("ip_address", String(45), nullable=False, server_default=""),
    Column("user_agent", String(500), nullable=False, server_default=""),
    Column("version", Integer, nullable=False, server_default="1"),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
    Column("deleted_at", String(40)),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _make_engine(db_url: str) -> Engine:
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    _metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities.

    Usage:
        store = UserStore("sqlite:///staffdesk.db")
        store.create_user(User(username="alice", email="alice@example.com", ...))
        user = store.get_by_username("alice")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = _make_engine(db_url)

    def create_user(self, user: User) -> str:
        """Insert a new user and return its ID.

        Raises sqlalchemy.exc.IntegrityError if the username or email already exists.
        """
        now = utcnow()
        user.created_at = user.created_at or now
        user.updated_at = user.updated_at or now
        with self.engine.connect() as conn:
            conn.execute(
                _users.insert().values(
                    id=user.id,
                    version=user.version,
                    created_at=_to_iso(user.created_at),
                    **_user_values(user),
                )
            )
            conn.commit()
        return user.id

    def get_by_username(self, username: str) -> Optional[User]:
        """Look up a live user by exact username (case-sensitive)."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where((_users.c.username == username) & (_users.c.deleted_at.is_(None)))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> Optional[User]:
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where((_users.c.email == email) & (_users.c.deleted_at.is_(None)))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: str) -> Optional[User]:
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where((_users.c.id == user_id) & (_users.c.deleted_at.is_(None)))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def update(self, user: User, expected_version: Optional[int] = None) -> User:
        """Write every mutable field if the stored version still equals expected_version.

        expected_version defaults to user.version (the version that was read).
        On success user.version is advanced and the same object is returned.
        Raises VersionConflict when no live row matches.
        """
        expected = user.version if expected_version is None else expected_version
        user.updated_at = user.updated_at or utcnow()
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user.id) & (_users.c.version == expected) & (_users.c.deleted_at.is_(None)))
                .values(version=expected + 1, **_user_values(user))
            )
            conn.commit()
        if result.rowcount == 0:
            raise VersionConflict("user", user.id, expected)
        user.version = expected + 1
        return user

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Refresh tokens
# ---------------------------------------------------------------------------


class RefreshTokenStore:
    """Repository for server-side refresh-token records.

    Usage:
        store = RefreshTokenStore("sqlite:///staffdesk.db")
        store.create(RefreshToken.issue(user.id, pair.refresh_token, expires_at))
        row = store.get_by_token(pair.refresh_token)
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = _make_engine(db_url)

    def create(self, refresh_token: RefreshToken) -> str:
        """Insert a refresh-token row and return its ID.

        Raises sqlalchemy.exc.IntegrityError if the token string is already stored.
        """
        now = utcnow()
        refresh_token.created_at = refresh_token.created_at or now
        refresh_token.updated_at = refresh_token.updated_at or now
        with self.engine.connect() as conn:
            conn.execute(
                _refresh_tokens.insert().values(
                    id=refresh_token.id,
                    user_id=refresh_token.user_id,
                    token=refresh_token.token,
                    ip_address=refresh_token.ip_address,
                    user_agent=refresh_token.user_agent,
                    version=refresh_token.version,
                    created_at=_to_iso(refresh_token.created_at),
                    **_refresh_token_values(refresh_token),
                )
            )
            conn.commit()
        logger.info("Refresh token %s created for user %s", refresh_token.id, refresh_token.user_id)
        return refresh_token.id

    def get_by_token(self, token: str) -> Optional[RefreshToken]:
        with self.engine.connect() as conn:
            row = conn.execute(
                _refresh_tokens.select().where(
                    (_refresh_tokens.c.token == token) & (_refresh_tokens.c.deleted_at.is_(None))
                )
            ).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def list_for_user(self, user_id: str) -> list[RefreshToken]:
        """Return every live row for a user, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select()
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.deleted_at.is_(None)))
                .order_by(_refresh_tokens.c.created_at.desc())
            ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]

    def update(self, refresh_token: RefreshToken, expected_version: Optional[int] = None) -> RefreshToken:
        """Compare-and-swap write of the mutable fields. See UserStore.update()."""
        expected = refresh_token.version if expected_version is None else expected_version
        refresh_token.updated_at = refresh_token.updated_at or utcnow()
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.id == refresh_token.id)
                    & (_refresh_tokens.c.version == expected)
                    & (_refresh_tokens.c.deleted_at.is_(None))
                )
                .values(version=expected + 1, **_refresh_token_values(refresh_token))
            )
            conn.commit()
        if result.rowcount == 0:
            raise VersionConflict("refresh_token", refresh_token.id, expected)
        refresh_token.version = expected + 1
        return refresh_token

    def revoke_all_for_user(self, user_id: str) -> int:
        """Revoke every live, unrevoked token of a user. Returns the number revoked."""
        now = _to_iso(utcnow())
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.user_id == user_id)
                    & (_refresh_tokens.c.is_revoked == 0)
                    & (_refresh_tokens.c.deleted_at.is_(None))
                )
                .values(
                    is_revoked=1,
                    revoked_at=now,
                    updated_at=now,
                    version=_refresh_tokens.c.version + 1,
                )
            )
            conn.commit()
        logger.info("Revoked %d refresh token(s) for user %s", result.rowcount, user_id)
        return result.rowcount

    def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        """Soft-delete every row whose expiry has passed. Returns the number removed."""
        cutoff = _to_iso(now or utcnow())
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.expires_at <= cutoff) & (_refresh_tokens.c.deleted_at.is_(None)))
                .values(deleted_at=cutoff, updated_at=cutoff, version=_refresh_tokens.c.version + 1)
            )
            conn.commit()
        if result.rowcount:
            logger.info("Cleaned up %d expired refresh token(s)", result.rowcount)
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _user_values(user: User) -> dict:
    return {
        "username": user.username,
        "email": user.email,
        "password_hash": user.password_hash,
        "salt": user.salt,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "phone": user.phone,
        "status": UserStatus(user.status).value,
        "role_id": user.role_id,
        "login_attempts": user.login_attempts,
        "locked_until": _to_iso(user.locked_until),
        "last_login_at": _to_iso(user.last_login_at),
        "updated_at": _to_iso(user.updated_at),
        "deleted_at": _to_iso(user.deleted_at),
    }


def _refresh_token_values(refresh_token: RefreshToken) -> dict:
    return {
        "expires_at": _to_iso(refresh_token.expires_at),
        "is_revoked": 1 if refresh_token.revoked else 0,
        "revoked_at": _to_iso(refresh_token.revoked_at),
        "updated_at": _to_iso(refresh_token.updated_at),
        "deleted_at": _to_iso(refresh_token.deleted_at),
    }


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        password_hash=row.password_hash,
        salt=row.salt,
        first_name=row.first_name,
        last_name=row.last_name,
        phone=row.phone,
        status=UserStatus(row.status),
        role_id=row.role_id,
        login_attempts=row.login_attempts,
        locked_until=_from_iso(row.locked_until),
        last_login_at=_from_iso(row.last_login_at),
        version=row.version,
        created_at=_from_iso(row.created_at),
        updated_at=_from_iso(row.updated_at),
        deleted_at=_from_iso(row.deleted_at),
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        user_id=row.user_id,
        token=row.token,
        expires_at=_from_iso(row.expires_at),
        revoked=bool(row.is_revoked),
        revoked_at=_from_iso(row.revoked_at),
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        version=row.version,
        created_at=_from_iso(row.created_at),
        updated_at=_from_iso(row.updated_at),
        deleted_at=_from_iso(row.deleted_at),
    )
