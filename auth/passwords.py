"""
auth/passwords.py -- Credential hashing and random password generation.

Security design decisions:
  bcrypt, used directly (no passlib wrapper). Its cost factor makes offline
  brute force expensive, which is the property a fast digest such as a single
  SHA-256 pass lacks. The cost is configuration (BCRYPT_ROUNDS): each +1
  doubles the work. 12 is the default; tests drop to 4 (bcrypt's minimum).

  The salt is stored in its own column. bcrypt.gensalt() draws 16 random
  bytes from os.urandom and encodes them together with the cost, so a stored
  (hash, salt) pair can be re-verified even after BCRYPT_ROUNDS changes.

  Verification recomputes the hash under the stored salt and compares with
  hmac.compare_digest, so the comparison time does not depend on where the
  first differing byte is.

  Passwords over 72 bytes: bcrypt cannot take them. hash_password() raises
  ValueError; verify_password() returns False. The API layer caps password
  fields at 72 characters of input.

  _DUMMY_PASSWORD / verify_dummy(): timing equalization [C1]. Login calls
  verify_dummy() when the username does not exist so an unknown user costs
  the same bcrypt work as a wrong password.
"""

from __future__ import annotations

import hmac
import logging
import secrets
import string

import bcrypt

logger = logging.getLogger("staffdesk.auth.passwords")

PASSWORD_ALPHABET = string.ascii_letters + string.digits + "!@#$%^&*"

_DUMMY_PASSWORD = "staffdesk_timing_dummy"


class PasswordHasher:
    """Salted bcrypt hashing with a configurable work factor.

    Usage:
        hasher = PasswordHasher(rounds=12)
        password_hash, salt = hasher.hash_password("CorrectHorse1!")
        hasher.verify_password("CorrectHorse1!", password_hash, salt)  # True
    """

    def __init__(self, rounds: int = 12) -> None:
        if not 4 <= rounds <= 31:
            raise ValueError("bcrypt rounds must be between 4 and 31")
        self.rounds = rounds
        # Computed once so the first unknown-username login is not measurably
        # slower than later ones.
        self._dummy_hash, self._dummy_salt = self.hash_password(_DUMMY_PASSWORD)

    def hash_password(self, password: str) -> tuple[str, str]:
        """Return (hash, salt) for a plaintext password under a fresh random salt."""
        salt = bcrypt.gensalt(rounds=self.rounds)
        digest = bcrypt.hashpw(password.encode("utf-8"), salt)
        return digest.decode("utf-8"), salt.decode("utf-8")

    def verify_password(self, password: str, password_hash: str, salt: str) -> bool:
        """Return True iff password hashes to password_hash under salt."""
        if not password_hash or not salt:
            return False
        try:
            digest = bcrypt.hashpw(password.encode("utf-8"), salt.encode("utf-8"))
        except ValueError:
            # Over-long password or a salt that is not a bcrypt salt.
            return False
        return hmac.compare_digest(digest, password_hash.encode("utf-8"))

    def verify_dummy(self, password: str) -> None:
        """Spend one verification's worth of work against a throwaway hash [C1]."""
        self.verify_password(password, self._dummy_hash, self._dummy_salt)


def generate_random_password(length: int = 16) -> str:
    """Return a password of `length` characters drawn uniformly from PASSWORD_ALPHABET.

    secrets.choice uses the OS CSPRNG and avoids the modulo bias of reducing
    a random byte onto a 70-character alphabet.
    """
    if length < 1:
        raise ValueError("password length must be at least 1")
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))
