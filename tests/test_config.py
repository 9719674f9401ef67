"""
tests/test_config.py -- Tests for core/config.py Settings validation.

Settings is constructed directly with _env_file=None so a developer's .env
never leaks into these tests; keyword arguments override the DEBUG=true set
in conftest.py.
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from pydantic import ValidationError

from auth.flows import build_auth_service
from auth.tokens import TokenConfig
from core.config import Settings

KEY = "k" * 32


def test_defaults() -> None:
    settings = Settings(_env_file=None, debug=False, secret_key=KEY)
    assert settings.jwt_algorithm == "HS256"
    assert settings.access_token_expire_seconds == 900
    assert settings.refresh_token_expire_seconds == 7 * 24 * 3600
    assert settings.lockout_threshold == 5
    assert settings.lockout_duration_seconds == 1800
    assert settings.bcrypt_rounds in range(4, 32)


def test_production_requires_secret() -> None:
    with pytest.raises(ValidationError, match="SECRET_KEY is required"):
        Settings(_env_file=None, debug=False, secret_key="")


def test_debug_generates_secret() -> None:
    settings = Settings(_env_file=None, debug=True, secret_key="")
    assert len(settings.secret_key) >= 32


def test_short_secret_rejected() -> None:
    with pytest.raises(ValidationError, match="at least 32"):
        Settings(_env_file=None, debug=True, secret_key="short")


@pytest.mark.parametrize("algorithm", ["RS256", "none", "ES256"])
def test_non_hmac_algorithm_rejected(algorithm: str) -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, secret_key=KEY, jwt_algorithm=algorithm)


@pytest.mark.parametrize("rounds", [3, 32])
def test_bcrypt_rounds_bounds(rounds: int) -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, secret_key=KEY, bcrypt_rounds=rounds)


def test_token_config_from_settings() -> None:
    settings = Settings(_env_file=None, secret_key=KEY, access_token_expire_seconds=60, token_leeway_seconds=5)
    config = TokenConfig.from_settings(settings)
    assert config.secret == KEY
    assert config.access_ttl == timedelta(seconds=60)
    assert config.leeway == timedelta(seconds=5)


def test_build_auth_service(user_store, refresh_token_store) -> None:
    settings = Settings(_env_file=None, secret_key=KEY, bcrypt_rounds=4, access_token_expire_seconds=120)
    service = build_auth_service(settings, user_store, refresh_token_store)
    assert service.token_service.access_ttl_seconds == 120
