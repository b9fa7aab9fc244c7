"""
api/routes/v1/auth.py -- Session lifecycle REST endpoints.

Routes:
  POST  /api/v1/auth/register                -- create account; 201 + token pair
  POST  /api/v1/auth/login                   -- email/password login; token pair
  POST  /api/v1/auth/refresh-token           -- refresh token -> new access token
  POST  /api/v1/auth/request-password-reset  -- always the same generic reply
  POST  /api/v1/auth/reset-password          -- consume a one-time reset token
  POST  /api/v1/auth/verify-email            -- consume the email verification token
  GET   /api/v1/auth/profile                 -- current user (requires auth)
  PUT   /api/v1/auth/profile                 -- update name/email (requires auth)
  PUT   /api/v1/auth/change-password         -- requires auth; revokes refresh tokens
  POST  /api/v1/auth/logout                  -- requires auth; one device or all
  PATCH /api/v1/auth/users/{id}              -- role / active flag (admin only)

Security:
  [H2] login, register and password-reset routes are rate-limited per IP.
  [C2] SessionManager errors carry user-safe messages; api/main.py renders them.
  [M4] PATCH /users/{id} blocks self-deactivation and last-admin-deactivation.
  [M5] Cache-Control: no-store on every response that can carry a token.
  Tokens travel in the response body only -- no cookies.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    ApiResponse,
    ChangePasswordRequest,
    LoginRequest,
    LogoutRequest,
    PasswordResetRequestBody,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokensResponse,
    UpdateProfileRequest,
    UserPatch,
    UserResponse,
    VerifyEmailRequest,
)
from auth.dependencies import get_identity, require_admin, try_get_identity
from auth.models import IdentityContext, Role, TokenPair, User
from auth.sessions import SessionManager
from core.config import get_settings

logger = logging.getLogger("sessionvault.api")

_settings = get_settings()

# Auth policy:
# - register, login, refresh-token, request-password-reset, reset-password,
#   verify-email:                 public
# - profile (GET/PUT), change-password, logout:   requires auth (get_identity)
# - PATCH users/{id}:             requires admin (require_admin)
router = APIRouter()


def _manager(request: Request) -> SessionManager:
    return request.app.state.session_manager


def _client_meta(request: Request) -> dict[str, Optional[str]]:
    return {
        "user_agent": request.headers.get("User-Agent"),
        "ip": request.client.host if request.client else None,
    }


def _ok(message: str, data: dict[str, Any] | None = None, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(
        status_code=status_code,
        content=ApiResponse(message=message, data=data).model_dump(exclude_none=True),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _user_data(user: User) -> dict[str, Any]:
    return UserResponse(**user.public_view()).model_dump(by_alias=True)


def _tokens_data(tokens: TokenPair) -> dict[str, Any]:
    return TokensResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        expires_in=_settings.access_token_expire_seconds,
    ).model_dump(by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(_settings.register_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an account and sign it in.

    Anyone may register as "user". Registering with an elevated role requires
    an admin caller.
    """
    if body.role != Role.user:
        caller = try_get_identity(request)
        if caller is None or caller.role != Role.admin.value:
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": "Only admins can assign elevated roles."},
            )

    result = _manager(request).register(
        body.email,
        body.password,
        body.first_name,
        body.last_name,
        role=body.role.value,
        **_client_meta(request),
    )
    return _ok(
        "User registered successfully",
        {
            "user": _user_data(result.user),
            "tokens": _tokens_data(result.tokens),
            "emailVerificationToken": result.email_verification_token,
        },
        status_code=201,
    )


@limiter.limit(_settings.login_rate_limit)  # [H2]
@router.post("/auth/login")
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; return a token pair."""
    result = _manager(request).login(body.email, body.password, **_client_meta(request))
    return _ok("Login successful", {"user": _user_data(result.user), "tokens": _tokens_data(result.tokens)})


@router.post("/auth/refresh-token")
def refresh_token(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a listed refresh token for a new access token."""
    tokens = _manager(request).refresh(body.refresh_token, **_client_meta(request))
    return _ok("Token refreshed successfully", {"tokens": _tokens_data(tokens)})


@limiter.limit(_settings.password_reset_rate_limit)  # [H2]
@router.post("/auth/request-password-reset")
def request_password_reset(request: Request, body: PasswordResetRequestBody) -> JSONResponse:
    """Start a password reset. The reply is identical whether or not the email exists.

    No mail delivery is wired in. In DEBUG mode the one-time token is written
    to the server log so the flow can be exercised locally.
    """
    outcome = _manager(request).request_password_reset(body.email)
    if outcome.token is not None and _settings.debug:
        logger.warning("DEBUG password reset token for %s: %s", body.email, outcome.token)
    return _ok(outcome.message)


@limiter.limit(_settings.password_reset_rate_limit)  # [H2]
@router.post("/auth/reset-password")
def reset_password(request: Request, body: ResetPasswordRequest) -> JSONResponse:
    _manager(request).reset_password(body.token, body.password)
    return _ok("Password reset successful")


@router.post("/auth/verify-email")
def verify_email(request: Request, body: VerifyEmailRequest) -> JSONResponse:
    user = _manager(request).verify_email(body.token)
    return _ok("Email verified successfully", {"user": _user_data(user)})


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/profile")
def get_profile(request: Request, identity: IdentityContext = Depends(get_identity)) -> JSONResponse:
    user = _manager(request).get_profile(identity)
    return _ok("Profile retrieved successfully", {"user": _user_data(user)})


@router.put("/auth/profile")
def update_profile(
    request: Request,
    body: UpdateProfileRequest,
    identity: IdentityContext = Depends(get_identity),
) -> JSONResponse:
    """Update first name, last name and/or email. 409 if the email belongs to someone else."""
    user = _manager(request).update_profile(
        identity,
        first_name=body.first_name,
        last_name=body.last_name,
        email=body.email,
    )
    return _ok("Profile updated successfully", {"user": _user_data(user)})


@router.put("/auth/change-password")
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    identity: IdentityContext = Depends(get_identity),
) -> JSONResponse:
    """Change password. Every refresh token is revoked; access tokens expire naturally."""
    _manager(request).change_password(identity, body.current_password, body.new_password)
    return _ok("Password changed successfully")


@router.post("/auth/logout")
def logout(
    request: Request,
    body: Optional[LogoutRequest] = None,
    identity: IdentityContext = Depends(get_identity),
) -> JSONResponse:
    """Revoke the given refresh token, or all of the caller's refresh tokens."""
    _manager(request).logout(identity, body.refresh_token if body else None)
    return _ok("Logout successful")


# ---------------------------------------------------------------------------
# User management (admin only)
# ---------------------------------------------------------------------------


@router.patch("/auth/users/{user_id}")
def update_user(
    request: Request,
    user_id: str,
    body: UserPatch,
    identity: IdentityContext = Depends(require_admin),
) -> JSONResponse:
    """Update a user's role or active status. Admin only.

    [M4] Prevents:
      - Self-deactivation (admin accidentally locking themselves out).
      - Demoting or deactivating the last active admin.
    """
    if body.role is None and body.is_active is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    if body.is_active is False and user_id == identity.user_id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deactivation", "message": "You cannot deactivate your own account."},
        )

    manager = _manager(request)
    target = manager.repository.get_by_id(user_id)
    if target is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )
    losing_admin = target.role == Role.admin.value and (
        body.is_active is False or (body.role is not None and body.role != Role.admin)
    )
    if losing_admin and target.is_active and manager.repository.count_active_admins() <= 1:
        raise HTTPException(
            status_code=400,
            detail={"code": "last_admin", "message": "Cannot remove the last active admin account."},
        )

    user = manager.set_account_status(
        user_id,
        is_active=body.is_active,
        role=body.role.value if body.role is not None else None,
    )
    return _ok("User updated successfully", {"user": _user_data(user)})
