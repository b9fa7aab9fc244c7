"""
API request and response models for SessionVault REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Wire format: JSON keys are camelCase (firstName, refreshToken, ...). Requests
also accept the snake_case field names.

Every response uses the envelope {success, message, data?}. Errors add a
stable machine-readable code.
"""

from typing import Annotated, Any, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

from auth.models import Role

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

NAME_PATTERN = r"^[a-zA-Z\s]+$"

# bcrypt only reads the first 72 bytes of a password.
_BCRYPT_MAX_BYTES = 72


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


def _normalize_email(value: str) -> str:
    return value.strip().lower()


def _check_password_bytes(value: str) -> str:
    if len(value.encode("utf-8")) > _BCRYPT_MAX_BYTES:
        raise ValueError(f"Password must be at most {_BCRYPT_MAX_BYTES} bytes.")
    return value


Email = Annotated[EmailStr, AfterValidator(_normalize_email)]
Password = Annotated[str, Field(min_length=3), AfterValidator(_check_password_bytes)]


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(_CamelModel):
    """Request body for POST /api/v1/auth/register.

    role defaults to "user". Elevated roles are only honoured when an admin
    makes the call; the route enforces that.
    """

    email: Email
    password: Password
    first_name: str = Field(min_length=2, max_length=50, pattern=NAME_PATTERN)
    last_name: str = Field(min_length=2, max_length=50, pattern=NAME_PATTERN)
    role: Role = Role.user


class LoginRequest(_CamelModel):
    email: Email
    password: str = Field(min_length=1)


class RefreshRequest(_CamelModel):
    refresh_token: str = Field(min_length=1)


class LogoutRequest(_CamelModel):
    """Omit refreshToken to sign out every device."""

    refresh_token: Optional[str] = None


class PasswordResetRequestBody(_CamelModel):
    email: Email


class ResetPasswordRequest(_CamelModel):
    token: str = Field(min_length=1)
    password: Password


class ChangePasswordRequest(_CamelModel):
    """New passwords need 8+ chars with upper, lower, digit and one of @$!%*?&."""

    current_password: str = Field(min_length=1)
    new_password: str = Field(min_length=8)

    @field_validator("new_password")
    @classmethod
    def check_complexity(cls, value: str) -> str:
        checks = (
            any(c.islower() for c in value),
            any(c.isupper() for c in value),
            any(c.isdigit() for c in value),
            any(c in "@$!%*?&" for c in value),
        )
        if not all(checks):
            raise ValueError(
                "New password must contain at least one uppercase letter, one lowercase letter, "
                "one number, and one special character"
            )
        return _check_password_bytes(value)


class UpdateProfileRequest(_CamelModel):
    first_name: Optional[str] = Field(default=None, min_length=2, max_length=50, pattern=NAME_PATTERN)
    last_name: Optional[str] = Field(default=None, min_length=2, max_length=50, pattern=NAME_PATTERN)
    email: Optional[Email] = None


class VerifyEmailRequest(_CamelModel):
    token: str = Field(min_length=1)


class UserPatch(_CamelModel):
    """Request body for PATCH /api/v1/auth/users/{id}. Admin only."""

    role: Optional[Role] = None
    is_active: Optional[bool] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(_CamelModel):
    """Client-safe view of an identity record. Never includes digests."""

    id: str
    email: str
    first_name: str
    last_name: str
    role: str
    is_active: bool
    email_verified: bool
    last_login: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class TokensResponse(_CamelModel):
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "bearer"
    expires_in: int


class ApiResponse(BaseModel):
    """Success envelope."""

    success: bool = True
    message: str
    data: Optional[dict[str, Any]] = None


class ErrorResponse(BaseModel):
    """Error envelope returned by every exception handler."""

    success: bool = False
    message: str
    code: str
    errors: Optional[list[dict[str, Any]]] = None


class HealthResponse(BaseModel):
    status: str = "healthy"
    version: str
    components: dict[str, str]
