#!/usr/bin/env python3
"""
staffdesk -- administrative maintenance commands.

Usage:
  python main.py create-user alice alice@example.com --first-name Alice --last-name Liddell
  python main.py create-user bob bob@example.com --password 'CorrectHorse1!' --status PENDING
  python main.py unlock alice
  python main.py revoke-sessions alice
  python main.py cleanup-tokens
  python main.py --db-url sqlite:///other.db cleanup-tokens

create-user prints a generated password once when --password is omitted.
cleanup-tokens soft-deletes expired refresh-token rows; schedule it (cron,
systemd timer) when the API's own background cleanup is not running.

Environment variables: see core/config.py (DATABASE_URL, BCRYPT_ROUNDS, ...).
"""

import argparse
import logging
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.errors import VersionConflict
from auth.models import User, UserStatus
from auth.passwords import PasswordHasher, generate_random_password
from auth.store import RefreshTokenStore, UserStore
from core.config import get_settings

logger = logging.getLogger("staffdesk.cli")

_GENERATED_PASSWORD_LENGTH = 16


def _create_user(args: argparse.Namespace, db_url: str) -> int:
    settings = get_settings()
    password = args.password or generate_random_password(_GENERATED_PASSWORD_LENGTH)
    try:
        password_hash, salt = PasswordHasher(rounds=settings.bcrypt_rounds).hash_password(password)
    except ValueError as e:
        print(f"  [!] Could not hash password: {e}")
        return 1

    user = User(
        username=args.username,
        email=args.email,
        password_hash=password_hash,
        salt=salt,
        first_name=args.first_name,
        last_name=args.last_name,
        status=UserStatus(args.status),
        role_id=args.role_id,
    )
    store = UserStore(db_url)
    try:
        store.create_user(user)
    except IntegrityError:
        print(f"  [!] A user with username '{args.username}' or email '{args.email}' already exists.")
        return 1
    finally:
        store.close()

    print(f"  Created user {user.username} ({user.id}), status {user.status.value}")
    if not args.password:
        print(f"  Generated password (shown once): {password}")
    return 0


def _unlock(args: argparse.Namespace, db_url: str) -> int:
    store = UserStore(db_url)
    try:
        user = store.get_by_username(args.username)
        if user is None:
            print(f"  [!] No user named '{args.username}'.")
            return 1
        user.unlock()
        try:
            store.update(user)
        except VersionConflict:
            print("  [!] User was modified concurrently. Try again.")
            return 1
    finally:
        store.close()
    print(f"  Unlocked {args.username}")
    return 0


def _revoke_sessions(args: argparse.Namespace, db_url: str) -> int:
    users = UserStore(db_url)
    tokens = RefreshTokenStore(db_url)
    try:
        user = users.get_by_username(args.username)
        if user is None:
            print(f"  [!] No user named '{args.username}'.")
            return 1
        count = tokens.revoke_all_for_user(user.id)
    finally:
        users.close()
        tokens.close()
    print(f"  Revoked {count} refresh token(s) for {args.username}")
    return 0


def _cleanup_tokens(args: argparse.Namespace, db_url: str) -> int:
    tokens = RefreshTokenStore(db_url)
    try:
        count = tokens.cleanup_expired()
    finally:
        tokens.close()
    print(f"  Removed {count} expired refresh token(s)")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="staffdesk",
        description="staffdesk administrative commands",
    )
    parser.add_argument("--db-url", metavar="URL", help="Database URL (default: DATABASE_URL setting)")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-user", help="Create a user account")
    create.add_argument("username")
    create.add_argument("email")
    create.add_argument("--password", help="Initial password (generated when omitted)")
    create.add_argument("--first-name", default="")
    create.add_argument("--last-name", default="")
    create.add_argument("--role-id", default=None)
    create.add_argument(
        "--status",
        choices=[s.value for s in UserStatus],
        default=UserStatus.ACTIVE.value,
        help="Initial account status (default: ACTIVE)",
    )
    create.set_defaults(handler=_create_user)

    unlock = sub.add_parser("unlock", help="Reset failed login attempts and clear the lock window")
    unlock.add_argument("username")
    unlock.set_defaults(handler=_unlock)

    revoke = sub.add_parser("revoke-sessions", help="Revoke every refresh token of a user")
    revoke.add_argument("username")
    revoke.set_defaults(handler=_revoke_sessions)

    cleanup = sub.add_parser("cleanup-tokens", help="Soft-delete expired refresh tokens")
    cleanup.set_defaults(handler=_cleanup_tokens)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    logging.basicConfig(level=logging.WARNING, format="%(levelname)-5s %(name)s %(message)s")
    args = _build_parser().parse_args(argv)
    db_url = args.db_url or get_settings().database_url
    return args.handler(args, db_url)


if __name__ == "__main__":
    sys.exit(main())
