"""
auth/decision.py -- Edge access decision function (API Gateway authorizer).

authorize(event) turns an inbound gateway event into an IAM-style policy:

    {
      "principalId": "<user id>" | "user",
      "policyDocument": {                       # only if effect and resource are known
        "Version": "2012-10-17",
        "Statement": [{"Action": "execute-api:Invoke", "Effect": "Allow"|"Deny", "Resource": "<arn>"}]
      },
      "context": {"userId": ..., "email": ..., "role": ...}   # Allow only
    }

Credential sources, first non-empty wins:
  1. event["identitySource"]   (HTTP API v2 list; first non-empty element)
  2. event["authorizationToken"]  (REST TOKEN authorizer)
  3. event["headers"]["Authorization"]  (REST REQUEST authorizer, any case)
A leading "Bearer " is stripped.

Uniform deny: a missing, malformed, expired or badly signed credential all
produce the same Deny document. The cause goes to the log only [C2].

The function holds no state and performs no I/O besides logging.
"""

from __future__ import annotations

import logging
from typing import Any

from auth.errors import InvalidTokenError
from auth.models import IdentityContext
from auth.tokens import verify_access_token

logger = logging.getLogger("sessionvault.authorizer")

POLICY_VERSION = "2012-10-17"
INVOKE_ACTION = "execute-api:Invoke"
DENY_PRINCIPAL = "user"


def _usable(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def extract_token(event: dict[str, Any]) -> str | None:
    """Return the bearer credential from the first non-empty source, or None.

    Values that are not strings are skipped like empty ones.
    """
    sources = event.get("identitySource")
    candidates = list(sources) if isinstance(sources, (list, tuple)) else []
    candidates.append(event.get("authorizationToken"))
    headers = event.get("headers")
    if isinstance(headers, dict):
        candidates.extend(v for k, v in headers.items() if isinstance(k, str) and k.lower() == "authorization")

    candidate = next((c for c in candidates if _usable(c)), None)
    if candidate is None:
        return None
    candidate = candidate.lstrip()
    if candidate.startswith("Bearer "):
        candidate = candidate[len("Bearer ") :]
    return candidate.strip() or None


def generate_policy(
    principal_id: str,
    effect: str | None = None,
    resource: str | None = None,
    context: dict[str, str] | None = None,
) -> dict[str, Any]:
    policy: dict[str, Any] = {"principalId": principal_id}
    if effect and resource:
        policy["policyDocument"] = {
            "Version": POLICY_VERSION,
            "Statement": [{"Action": INVOKE_ACTION, "Effect": effect, "Resource": resource}],
        }
    if context:
        policy["context"] = context
    return policy


def authorize(event: dict[str, Any]) -> dict[str, Any]:
    """Return an Allow policy with identity context, or the uniform Deny."""
    resource = event.get("routeArn") or event.get("methodArn")
    token = extract_token(event)
    if token is None:
        logger.info("Deny %s: no credential", resource)
        return generate_policy(DENY_PRINCIPAL, "Deny", resource)
    try:
        identity = verify_access_token(token)
    except InvalidTokenError as exc:
        logger.info("Deny %s: %s", resource, exc.__cause__ or exc)
        return generate_policy(DENY_PRINCIPAL, "Deny", resource)

    return generate_policy(
        identity.user_id,
        "Allow",
        resource,
        context={"userId": identity.user_id, "email": identity.email, "role": identity.role or "user"},
    )


def handler(event: dict[str, Any], context: Any = None) -> dict[str, Any]:
    """Lambda entry point for the gateway authorizer."""
    return authorize(event)


def identity_from_gateway_event(event: dict[str, Any]) -> IdentityContext | None:
    """Read the identity an upstream authorizer attached to a proxied request.

    Looks at requestContext.authorizer in the shapes the gateway produces:
    "lambda" (HTTP API), flat context (REST API) and "jwt.claims" (JWT
    authorizer). Returns None when no usable identity is present.
    """
    authorizer = (event.get("requestContext") or {}).get("authorizer") or {}
    for ctx in (authorizer.get("lambda"), authorizer, (authorizer.get("jwt") or {}).get("claims")):
        if not isinstance(ctx, dict):
            continue
        user_id = ctx.get("userId") or ctx.get("sub")
        email = ctx.get("email")
        if user_id and email:
            return IdentityContext(user_id=str(user_id), email=str(email), role=str(ctx.get("role") or "user"))
    return None
