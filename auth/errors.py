"""
auth/errors.py -- Business error taxonomy for the session lifecycle.

Every failure a SessionManager operation can report is one of these classes.
Each carries a stable machine-readable code, the HTTP status the API layer
maps it to, and a user-safe message. The API layer renders them; auth/ never
imports fastapi for error reporting.

Security:
  [C2] InvalidCredentialsError, InvalidTokenError and InvalidOrExpiredTokenError
       share one generic message so a client cannot tell which check failed.
  Messages never contain passwords, tokens, or signing keys.

Layer rule: stdlib only.
"""

from __future__ import annotations

GENERIC_AUTH_MESSAGE = "Invalid credentials or token."


class AuthError(Exception):
    """Base class for session lifecycle failures."""

    code: str = "auth_error"
    status_code: int = 400
    default_message: str = "Request could not be completed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class DuplicateEmailError(AuthError):
    code = "duplicate_email"
    status_code = 409
    default_message = "User already exists with this email."


class InvalidCredentialsError(AuthError):
    code = "invalid_credentials"
    status_code = 401
    default_message = GENERIC_AUTH_MESSAGE


class AccountLockedError(AuthError):
    """Raised while lock_until is in the future. Carries the lock expiry for logging."""

    code = "account_locked"
    status_code = 423
    default_message = "Account is temporarily locked due to too many failed login attempts."

    def __init__(self, message: str | None = None, lock_until: str | None = None) -> None:
        super().__init__(message)
        self.lock_until = lock_until


class AccountDeactivatedError(AuthError):
    code = "account_deactivated"
    status_code = 403
    default_message = "Account is deactivated."


class InvalidTokenError(AuthError):
    code = "invalid_token"
    status_code = 401
    default_message = GENERIC_AUTH_MESSAGE


class TokenRevokedError(AuthError):
    code = "token_revoked"
    status_code = 401
    default_message = "Refresh token has been revoked."


class InvalidOrExpiredTokenError(AuthError):
    code = "invalid_or_expired_token"
    status_code = 400
    default_message = GENERIC_AUTH_MESSAGE


class EmailTakenError(AuthError):
    code = "email_taken"
    status_code = 409
    default_message = "Email is already taken."


class NotFoundError(AuthError):
    code = "not_found"
    status_code = 404
    default_message = "User not found."


class TransientInfrastructureError(AuthError):
    """Storage or cache unavailable. Never reported as an auth failure."""

    code = "service_unavailable"
    status_code = 503
    default_message = "Service temporarily unavailable."
