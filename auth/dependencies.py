"""
auth/dependencies.py -- FastAPI Depends() helpers for protected routes.

Two identity sources are checked in priority order:
  1. Gateway context -- when running behind API Gateway with the edge
     authorizer, the proxied event (ASGI scope "aws.event", as set by Lambda
     ASGI adapters) already carries the verified identity.
  2. Authorization: Bearer <access token> -- verified in-process.

try_get_identity() is the soft variant (returns None on failure).
get_identity() wraps it and raises HTTP 401 if unauthenticated.
require_role(role) wraps get_identity() and raises HTTP 403 unless the caller
holds that role or is an admin.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import HTTPException, Request

from auth.decision import identity_from_gateway_event
from auth.errors import InvalidTokenError
from auth.models import IdentityContext
from auth.tokens import verify_access_token


def try_get_identity(request: Request) -> IdentityContext | None:
    """Return the caller's identity, or None. Never raises."""
    event = request.scope.get("aws.event")
    if isinstance(event, dict):
        identity = identity_from_gateway_event(event)
        if identity is not None:
            return identity

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        try:
            return verify_access_token(auth_header[7:].strip())
        except InvalidTokenError:
            return None
    return None


def get_identity(request: Request) -> IdentityContext:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(identity: IdentityContext = Depends(get_identity)): ...
    """
    identity = try_get_identity(request)
    if identity is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return identity


def require_role(role: str) -> Callable[[Request], IdentityContext]:
    """Build a dependency that admits `role` or admin.

        @router.patch("/admin-only")
        async def route(identity: IdentityContext = Depends(require_role("admin"))): ...
    """

    def dependency(request: Request) -> IdentityContext:
        identity = get_identity(request)
        if not identity.has_role(role):
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": "Insufficient permissions."},
            )
        return identity

    return dependency


require_admin = require_role("admin")
