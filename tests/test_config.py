"""
tests/test_config.py -- Signing-key policy enforced by Settings.
"""

from __future__ import annotations

import pytest

from core.config import Settings

KEY_A = "a" * 32
KEY_B = "b" * 32


def test_production_requires_keys() -> None:
    with pytest.raises(ValueError, match="SECRET_KEY is required"):
        Settings(debug=False, secret_key="", refresh_secret_key=KEY_B)
    with pytest.raises(ValueError, match="REFRESH_SECRET_KEY is required"):
        Settings(debug=False, secret_key=KEY_A, refresh_secret_key="")


def test_debug_generates_distinct_keys() -> None:
    settings = Settings(debug=True, secret_key="", refresh_secret_key="")
    assert len(settings.secret_key) >= 32
    assert len(settings.refresh_secret_key) >= 32
    assert settings.secret_key != settings.refresh_secret_key


def test_short_key_rejected() -> None:
    with pytest.raises(ValueError, match="at least 32 characters"):
        Settings(debug=True, secret_key="short", refresh_secret_key=KEY_B)


def test_shared_key_rejected() -> None:
    """Access and refresh tokens must live in different signing domains."""
    with pytest.raises(ValueError, match="must differ"):
        Settings(debug=False, secret_key=KEY_A, refresh_secret_key=KEY_A)


def test_defaults() -> None:
    settings = Settings(debug=False, secret_key=KEY_A, refresh_secret_key=KEY_B)
    assert settings.access_token_expire_seconds == 900
    assert settings.refresh_token_expire_seconds == 604800
    assert settings.max_login_attempts == 5
    assert settings.lockout_seconds == 1800
    assert settings.max_refresh_tokens == 5
    assert settings.password_reset_expire_seconds == 600
    assert settings.rotate_refresh_tokens is False
