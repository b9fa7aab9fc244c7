"""
tests/test_api_models.py -- Request model validation.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from api.models import PasswordResetRequestBody, RegisterRequest, UpdateProfileRequest


def _register(email: str) -> RegisterRequest:
    return RegisterRequest(email=email, password="abc", firstName="Jo", lastName="Doe")


@pytest.mark.parametrize("email", ["a@b..c", "<x>@evil.com", "a@b.c.", 'a"b@x.io', "not-an-email", "@example.com"])
def test_malformed_email_rejected(email: str) -> None:
    with pytest.raises(ValidationError):
        _register(email)


def test_email_is_lower_cased() -> None:
    assert _register("Jane.Doe@Example.COM").email == "jane.doe@example.com"


def test_profile_email_uses_same_rules() -> None:
    """Profile updates apply the same validation and normalization as registration."""
    assert UpdateProfileRequest(email="New@Example.com").email == "new@example.com"
    assert UpdateProfileRequest(firstName="Renamed").email is None
    with pytest.raises(ValidationError):
        UpdateProfileRequest(email="a@b..c")


def test_reset_request_rejects_malformed_email() -> None:
    with pytest.raises(ValidationError):
        PasswordResetRequestBody(email="a@b.c.")


def test_password_byte_limit() -> None:
    """bcrypt reads 72 bytes at most; longer passwords are refused."""
    with pytest.raises(ValidationError):
        RegisterRequest(email="a@example.com", password="é" * 37, firstName="Jo", lastName="Doe")
