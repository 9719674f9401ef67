"""
tests/test_models.py -- Unit tests for the lockout and revocation state in auth/models.py.

Covers:
  - record_failed_login counts up and opens the lock window at the threshold
  - is_locked is true only while locked_until is in the future
  - An expired lock keeps the counter, so the next failure re-locks at once
  - record_login and unlock reset counter and window
  - RefreshToken validity: expiry boundary and one-way revocation
  - to_public never exposes hash or salt
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from auth.models import LockoutPolicy, RefreshToken, User, UserStatus

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
POLICY = LockoutPolicy(threshold=5, duration=timedelta(minutes=30))


def _user(**fields) -> User:
    return User(username="alice", email="alice@example.com", status=UserStatus.ACTIVE, **fields)


class TestLockout:
    def test_below_threshold_not_locked(self) -> None:
        user = _user()
        for _ in range(4):
            user.record_failed_login(NOW, POLICY)
        assert user.login_attempts == 4
        assert user.locked_until is None
        assert not user.is_locked(NOW)

    def test_threshold_opens_window(self) -> None:
        user = _user()
        for _ in range(5):
            user.record_failed_login(NOW, POLICY)
        assert user.locked_until == NOW + timedelta(minutes=30)
        assert user.is_locked(NOW)
        assert user.is_locked(NOW + timedelta(minutes=29, seconds=59))

    def test_window_elapses(self) -> None:
        user = _user(login_attempts=5, locked_until=NOW)
        assert not user.is_locked(NOW)
        assert not user.is_locked(NOW + timedelta(seconds=1))

    def test_failure_after_expired_window_relocks(self) -> None:
        user = _user(login_attempts=5, locked_until=NOW - timedelta(minutes=1))
        user.record_failed_login(NOW, POLICY)
        assert user.login_attempts == 6
        assert user.is_locked(NOW)

    def test_record_login_resets(self) -> None:
        user = _user(login_attempts=3)
        user.record_login(NOW)
        assert user.login_attempts == 0
        assert user.locked_until is None
        assert user.last_login_at == NOW

    def test_unlock_clears_without_login(self) -> None:
        user = _user(login_attempts=7, locked_until=NOW + timedelta(hours=1))
        user.unlock(NOW)
        assert user.login_attempts == 0
        assert not user.is_locked(NOW)
        assert user.last_login_at is None

    def test_custom_threshold(self) -> None:
        user = _user()
        user.record_failed_login(NOW, LockoutPolicy(threshold=1, duration=timedelta(seconds=10)))
        assert user.locked_until == NOW + timedelta(seconds=10)


class TestRefreshTokenRecord:
    def test_valid_until_expiry(self) -> None:
        row = RefreshToken.issue("user-1", "tok", NOW + timedelta(days=7), now=NOW)
        assert row.is_valid(NOW)
        assert row.is_valid(NOW + timedelta(days=7) - timedelta(microseconds=1))
        assert not row.is_valid(NOW + timedelta(days=7))

    def test_revoke_is_one_way(self) -> None:
        row = RefreshToken.issue("user-1", "tok", NOW + timedelta(days=7), now=NOW)
        row.revoke(NOW)
        assert row.revoked
        assert row.revoked_at == NOW
        assert not row.is_valid(NOW)


def test_to_public_hides_credentials() -> None:
    user = _user(password_hash="$2b$04$hash", salt="$2b$04$salt", first_name="Alice")
    public = user.to_public()
    assert public.username == "alice"
    assert public.status == "ACTIVE"
    assert not hasattr(public, "password_hash")
    assert not hasattr(public, "salt")
