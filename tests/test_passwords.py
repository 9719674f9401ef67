"""
tests/test_passwords.py -- Unit tests for auth/passwords.py.

Covers:
  - hash_password returns a bcrypt hash and its salt; verify_password accepts
    the right password and rejects a wrong one
  - Fresh salt per call: the same password never hashes twice to the same value
  - verify_password returns False (never raises) on empty or foreign inputs
  - Cost factor bounds
  - generate_random_password length and alphabet
"""

from __future__ import annotations

import pytest

from auth.passwords import PASSWORD_ALPHABET, PasswordHasher, generate_random_password


class TestPasswordHasher:
    def test_hash_and_verify(self, hasher: PasswordHasher) -> None:
        password_hash, salt = hasher.hash_password("CorrectHorse1!")
        assert password_hash.startswith("$2")
        assert password_hash.startswith(salt)
        assert hasher.verify_password("CorrectHorse1!", password_hash, salt) is True

    def test_wrong_password_rejected(self, hasher: PasswordHasher) -> None:
        password_hash, salt = hasher.hash_password("CorrectHorse1!")
        assert hasher.verify_password("WrongHorse1!", password_hash, salt) is False

    def test_fresh_salt_per_hash(self, hasher: PasswordHasher) -> None:
        first = hasher.hash_password("same-password")
        second = hasher.hash_password("same-password")
        assert first[1] != second[1]
        assert first[0] != second[0]

    def test_hash_does_not_contain_plaintext(self, hasher: PasswordHasher) -> None:
        password_hash, _ = hasher.hash_password("CorrectHorse1!")
        assert "CorrectHorse1!" not in password_hash

    @pytest.mark.parametrize(
        "password_hash,salt",
        [("", "$2b$04$abcdefghijklmnopqrstuu"), ("$2b$04$x", ""), ("not-a-hash", "not-a-salt")],
    )
    def test_bad_stored_values_return_false(self, hasher: PasswordHasher, password_hash: str, salt: str) -> None:
        assert hasher.verify_password("anything", password_hash, salt) is False

    def test_hash_from_other_cost_still_verifies(self, hasher: PasswordHasher) -> None:
        """The stored salt carries its own cost, so a rounds change does not break old hashes."""
        password_hash, salt = PasswordHasher(rounds=5).hash_password("CorrectHorse1!")
        assert hasher.verify_password("CorrectHorse1!", password_hash, salt) is True
        assert salt.startswith("$2b$05$")

    def test_verify_dummy_does_not_raise(self, hasher: PasswordHasher) -> None:
        assert hasher.verify_dummy("whatever") is None

    @pytest.mark.parametrize("rounds", [3, 32])
    def test_rounds_out_of_range(self, rounds: int) -> None:
        with pytest.raises(ValueError):
            PasswordHasher(rounds=rounds)


class TestGenerateRandomPassword:
    def test_default_length(self) -> None:
        assert len(generate_random_password()) == 16

    def test_custom_length_and_alphabet(self) -> None:
        password = generate_random_password(40)
        assert len(password) == 40
        assert set(password) <= set(PASSWORD_ALPHABET)

    def test_passwords_differ(self) -> None:
        assert generate_random_password(24) != generate_random_password(24)

    def test_zero_length_rejected(self) -> None:
        with pytest.raises(ValueError):
            generate_random_password(0)
