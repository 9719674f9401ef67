"""
tests/test_cli.py -- Tests for the administrative commands in main.py.

Each test points the CLI at the same named in-memory database the store
fixtures use, via --db-url, and inspects the result through those stores.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from auth.models import RefreshToken, UserStatus
from auth.passwords import PasswordHasher
from auth.store import RefreshTokenStore, UserStore
from main import main


class TestCreateUser:
    def test_with_password(self, db_url: str, user_store: UserStore, hasher: PasswordHasher, capsys) -> None:
        rc = main(["--db-url", db_url, "create-user", "bob", "bob@example.com",
                   "--password", "CorrectHorse1!", "--first-name", "Bob"])
        assert rc == 0
        user = user_store.get_by_username("bob")
        assert user.status is UserStatus.ACTIVE
        assert user.first_name == "Bob"
        assert hasher.verify_password("CorrectHorse1!", user.password_hash, user.salt)
        assert "Generated password" not in capsys.readouterr().out

    def test_generated_password_printed_once(self, db_url: str, user_store: UserStore, hasher, capsys) -> None:
        rc = main(["--db-url", db_url, "create-user", "carol", "carol@example.com", "--status", "PENDING"])
        assert rc == 0
        out = capsys.readouterr().out
        password = out.split("Generated password (shown once): ", 1)[1].strip()
        assert len(password) == 16
        user = user_store.get_by_username("carol")
        assert user.status is UserStatus.PENDING
        assert hasher.verify_password(password, user.password_hash, user.salt)

    def test_duplicate_username(self, db_url: str, make_user, capsys) -> None:
        make_user("bob")
        rc = main(["--db-url", db_url, "create-user", "bob", "other@example.com", "--password", "x"])
        assert rc == 1
        assert "already exists" in capsys.readouterr().out

    def test_unknown_status_rejected(self, db_url: str) -> None:
        with pytest.raises(SystemExit):
            main(["--db-url", db_url, "create-user", "bob", "bob@example.com", "--status", "ROOT"])


class TestUnlock:
    def test_unlock(self, db_url: str, make_user, user_store: UserStore) -> None:
        user = make_user("alice", login_attempts=5, locked_until=datetime.now(timezone.utc) + timedelta(minutes=30))
        assert main(["--db-url", db_url, "unlock", "alice"]) == 0
        stored = user_store.get_by_id(user.id)
        assert stored.login_attempts == 0
        assert stored.locked_until is None

    def test_unknown_user(self, db_url: str, user_store: UserStore, capsys) -> None:
        assert main(["--db-url", db_url, "unlock", "nobody"]) == 1
        assert "No user named" in capsys.readouterr().out


class TestSessions:
    def test_revoke_sessions(self, db_url: str, make_user, refresh_token_store: RefreshTokenStore, capsys) -> None:
        user = make_user("alice")
        expires = datetime.now(timezone.utc) + timedelta(days=1)
        refresh_token_store.create(RefreshToken.issue(user.id, "t1", expires))
        refresh_token_store.create(RefreshToken.issue(user.id, "t2", expires))

        assert main(["--db-url", db_url, "revoke-sessions", "alice"]) == 0
        assert "Revoked 2" in capsys.readouterr().out
        assert refresh_token_store.get_by_token("t1").revoked is True

    def test_cleanup_tokens(self, db_url: str, refresh_token_store: RefreshTokenStore, capsys) -> None:
        now = datetime.now(timezone.utc)
        refresh_token_store.create(RefreshToken.issue("user-1", "old", now - timedelta(days=1)))
        refresh_token_store.create(RefreshToken.issue("user-1", "new", now + timedelta(days=1)))

        assert main(["--db-url", db_url, "cleanup-tokens"]) == 0
        assert "Removed 1" in capsys.readouterr().out
        assert refresh_token_store.get_by_token("old") is None
        assert refresh_token_store.get_by_token("new") is not None
