"""
auth/tokens.py -- Token codec, password hashing, and opaque secure tokens.

Security design decisions:
  JWT: python-jose with HS256. Two independent signing domains: access tokens
       are signed with SECRET_KEY, refresh tokens with REFRESH_SECRET_KEY, so
       one kind can never be replayed as the other. Both carry sub, email,
       role, iss, aud, iat, exp and a random jti. The jti keeps two tokens
       issued for the same user in the same second distinct, which the
       refresh list relies on.

       Verification raises InvalidTokenError for every failure (expired,
       malformed, bad signature, wrong issuer/audience, missing claims) so
       callers cannot leak which check failed [C2].

  Passwords: bcrypt, used directly. The work factor comes from BCRYPT_ROUNDS.
       needs_rehash() lets login upgrade digests created with a lower factor.
       The _DUMMY_HASH constant enables timing equalization so response time
       does not reveal whether an email is registered [C1].

  Opaque tokens: secrets.token_hex() for email-verification and password-reset
       tokens. Only HMAC-SHA256(SECRET_KEY, raw) is persisted. The raw value is
       returned exactly once. Refresh tokens are persisted the same way.

Layer rule: no imports from api/ or cache/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from auth.errors import InvalidTokenError
from auth.models import IdentityContext
from core.config import Settings, get_settings

logger = logging.getLogger("sessionvault.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int | None = None) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates input at 72 bytes; the API layer caps password length
    well below that.
    """
    salt = bcrypt.gensalt(rounds=rounds or _settings.bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        # Malformed digest
        return False


def needs_rehash(hashed: str, rounds: int | None = None) -> bool:
    """Return True if the digest was created with fewer rounds than configured.

    bcrypt digests look like $2b$12$<salt+hash>; the second field is the cost.
    """
    try:
        current = int(hashed.split("$")[2])
    except (IndexError, ValueError):
        return True
    return current < (rounds or _settings.bcrypt_rounds)


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("sessionvault_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run a bcrypt comparison whose result is discarded [C1].

    Called on paths that reject a login before reaching the real password
    check, so every rejection costs the same wall-clock time.
    """
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def _encode(
    user_id: str, email: str, role: str, key: str, expire_seconds: int, now: datetime | None, settings: Settings
) -> str:
    issued = now or datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "email": email,
        "role": role,
        "iss": settings.token_issuer,
        "aud": settings.token_audience,
        "iat": int(issued.timestamp()),
        "exp": issued + timedelta(seconds=expire_seconds),
        "jti": secrets.token_hex(8),
    }
    return jwt.encode(payload, key, algorithm=_ALGORITHM)


def _decode(token: str, key: str, kind: str, settings: Settings) -> IdentityContext:
    try:
        payload = jwt.decode(
            token,
            key,
            algorithms=[_ALGORITHM],
            audience=settings.token_audience,
            issuer=settings.token_issuer,
        )
    except JWTError as exc:
        logger.debug("%s token rejected: %s", kind, exc)
        raise InvalidTokenError() from exc
    sub, email, role = payload.get("sub"), payload.get("email"), payload.get("role")
    if not sub or not email or not role:
        logger.debug("%s token rejected: missing identity claims", kind)
        raise InvalidTokenError()
    return IdentityContext(user_id=str(sub), email=str(email), role=str(role))


def issue_access_token(
    user_id: str, email: str, role: str, now: datetime | None = None, settings: Settings | None = None
) -> str:
    """Encode a short-lived access token in the access signing domain."""
    s = settings or _settings
    return _encode(user_id, email, role, s.secret_key, s.access_token_expire_seconds, now, s)


def issue_refresh_token(
    user_id: str, email: str, role: str, now: datetime | None = None, settings: Settings | None = None
) -> str:
    """Encode a long-lived refresh token in the refresh signing domain."""
    s = settings or _settings
    return _encode(user_id, email, role, s.refresh_secret_key, s.refresh_token_expire_seconds, now, s)


def verify_access_token(token: str, settings: Settings | None = None) -> IdentityContext:
    """Verify signature, expiry, issuer and audience. Raises InvalidTokenError."""
    s = settings or _settings
    return _decode(token, s.secret_key, "access", s)


def verify_refresh_token(token: str, settings: Settings | None = None) -> IdentityContext:
    """Verify a refresh token's signature and claims only.

    A refresh token is usable only if it is ALSO present in the owner's
    refresh list; SessionManager.refresh() checks that part.
    """
    s = settings or _settings
    return _decode(token, s.refresh_secret_key, "refresh", s)


# ---------------------------------------------------------------------------
# Opaque secure tokens
# ---------------------------------------------------------------------------


def generate_secure_token(length: int = 32) -> str:
    """Return `length` random bytes from the OS CSPRNG as a hex string.

    The default of 32 bytes gives 256 bits of entropy.
    """
    return secrets.token_hex(length)


def digest_token(raw: str, settings: Settings | None = None) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw) as a hex string.

    Deterministic, so stores can look a token up by digest. A leaked database
    alone does not let an attacker forge a matching token.
    """
    return hmac.new(
        (settings or _settings).secret_key.encode(),
        raw.encode(),
        hashlib.sha256,
    ).hexdigest()
