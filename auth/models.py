"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores and the
session manager do the work.

Timestamps are ISO 8601 UTC strings, the same representation the store
persists, so mappers never convert.

Layer rule: stdlib only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Role(str, Enum):
    user = "user"
    moderator = "moderator"
    admin = "admin"


@dataclass
class RefreshTokenEntry:
    """One persisted refresh token. Only the HMAC digest of the token is kept.

    Expiry is implicit: created_at + REFRESH_TOKEN_EXPIRE_SECONDS.
    """

    token_digest: str
    created_at: str
    user_agent: str | None = None
    ip: str | None = None


@dataclass
class User:
    """An identity record.

    email is stored lower-cased and trimmed; uniqueness is case-insensitive.
    hashed_password is a bcrypt digest and must never leave the server --
    use public_view() for anything returned to a client.

    version increments on every save. The store uses it for the conditional
    write that makes counter and refresh-list updates atomic.
    """

    email: str
    hashed_password: str
    first_name: str
    last_name: str
    role: str = Role.user.value
    id: str | None = None
    is_active: bool = True
    login_attempts: int = 0
    lock_until: str | None = None
    last_login: str | None = None
    email_verified: bool = False
    email_verification_digest: str | None = None
    password_reset_digest: str | None = None
    password_reset_expires: str | None = None
    refresh_tokens: list[RefreshTokenEntry] = field(default_factory=list)
    created_at: str | None = None
    updated_at: str | None = None
    version: int = 0

    def public_view(self) -> dict:
        """Client-safe projection: no digests, counters, or token lists."""
        return {
            "id": self.id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "role": self.role,
            "is_active": self.is_active,
            "email_verified": self.email_verified,
            "last_login": self.last_login,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class IdentityContext:
    """Read-only identity attached after a successful access decision."""

    user_id: str
    email: str
    role: str

    def has_role(self, role: str) -> bool:
        """True for an exact role match or for admins (admin override)."""
        return self.role == role or self.role == Role.admin.value


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str | None = None
    token_type: str = "bearer"
