"""
tests/test_tokens.py -- Token codec, password hashing and opaque token helpers.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from auth.errors import InvalidTokenError
from auth.tokens import (
    digest_token,
    generate_secure_token,
    hash_password,
    issue_access_token,
    issue_refresh_token,
    needs_rehash,
    verify_access_token,
    verify_password,
    verify_refresh_token,
)
from core.config import get_settings


class TestSigningDomains:
    def test_access_token_round_trip(self) -> None:
        """A fresh access token verifies and carries the identity claims."""
        identity = verify_access_token(issue_access_token("u1", "a@b.io", "moderator"))
        assert (identity.user_id, identity.email, identity.role) == ("u1", "a@b.io", "moderator")

    def test_claims_include_issuer_and_audience(self) -> None:
        settings = get_settings()
        claims = jwt.get_unverified_claims(issue_access_token("u1", "a@b.io", "user"))
        assert claims["iss"] == settings.token_issuer
        assert claims["aud"] == settings.token_audience
        assert claims["exp"] - claims["iat"] == settings.access_token_expire_seconds

    def test_refresh_lifetime_is_seven_days(self) -> None:
        claims = jwt.get_unverified_claims(issue_refresh_token("u1", "a@b.io", "user"))
        assert claims["exp"] - claims["iat"] == 7 * 24 * 3600

    def test_domains_do_not_cross(self) -> None:
        """An access token fails refresh verification and vice versa."""
        with pytest.raises(InvalidTokenError):
            verify_refresh_token(issue_access_token("u1", "a@b.io", "user"))
        with pytest.raises(InvalidTokenError):
            verify_access_token(issue_refresh_token("u1", "a@b.io", "user"))

    def test_tokens_issued_together_are_distinct(self) -> None:
        """Two tokens for the same user in the same second still differ (jti)."""
        now = datetime.now(timezone.utc)
        assert issue_refresh_token("u1", "a@b.io", "user", now=now) != issue_refresh_token(
            "u1", "a@b.io", "user", now=now
        )


class TestRejection:
    def test_expired(self) -> None:
        past = datetime.now(timezone.utc) - timedelta(hours=1)
        with pytest.raises(InvalidTokenError):
            verify_access_token(issue_access_token("u1", "a@b.io", "user", now=past))

    def test_tampered_signature(self) -> None:
        """Claims re-signed with a foreign key are rejected."""
        claims = jwt.get_unverified_claims(issue_access_token("u1", "a@b.io", "user"))
        claims["role"] = "admin"
        forged = jwt.encode(claims, "f" * 64, algorithm="HS256")
        with pytest.raises(InvalidTokenError):
            verify_access_token(forged)

    def test_malformed(self) -> None:
        with pytest.raises(InvalidTokenError):
            verify_access_token("definitely.not.a-token")

    def test_wrong_audience(self) -> None:
        settings = get_settings()
        token = jwt.encode(
            {
                "sub": "u1",
                "email": "a@b.io",
                "role": "user",
                "iss": settings.token_issuer,
                "aud": "someone-else",
                "exp": datetime.now(timezone.utc) + timedelta(minutes=5),
            },
            settings.secret_key,
            algorithm="HS256",
        )
        with pytest.raises(InvalidTokenError):
            verify_access_token(token)

    def test_missing_identity_claims(self) -> None:
        settings = get_settings()
        token = jwt.encode(
            {
                "sub": "u1",
                "iss": settings.token_issuer,
                "aud": settings.token_audience,
                "exp": datetime.now(timezone.utc) + timedelta(minutes=5),
            },
            settings.secret_key,
            algorithm="HS256",
        )
        with pytest.raises(InvalidTokenError):
            verify_access_token(token)

    def test_failures_share_one_message(self) -> None:
        """Expired and malformed tokens are reported identically."""
        past = datetime.now(timezone.utc) - timedelta(hours=1)
        with pytest.raises(InvalidTokenError) as expired:
            verify_access_token(issue_access_token("u1", "a@b.io", "user", now=past))
        with pytest.raises(InvalidTokenError) as malformed:
            verify_access_token("garbage")
        assert expired.value.message == malformed.value.message


class TestPasswords:
    def test_hash_and_verify(self) -> None:
        hashed = hash_password("hunter2!")
        assert hashed != "hunter2!"
        assert verify_password("hunter2!", hashed)
        assert not verify_password("hunter3!", hashed)

    def test_malformed_digest_does_not_verify(self) -> None:
        assert verify_password("anything", "not-a-bcrypt-hash") is False

    def test_needs_rehash(self) -> None:
        weak = hash_password("pw", rounds=4)
        assert needs_rehash(weak, rounds=5)
        assert not needs_rehash(weak, rounds=4)
        assert needs_rehash("garbage", rounds=4)


class TestSecureTokens:
    def test_default_length_is_32_bytes(self) -> None:
        token = generate_secure_token()
        assert len(token) == 64
        int(token, 16)

    def test_custom_length(self) -> None:
        assert len(generate_secure_token(16)) == 32

    def test_tokens_are_unique(self) -> None:
        assert len({generate_secure_token() for _ in range(50)}) == 50

    def test_digest_is_deterministic_and_not_the_token(self) -> None:
        raw = generate_secure_token()
        assert digest_token(raw) == digest_token(raw)
        assert digest_token(raw) != raw
        assert len(digest_token(raw)) == 64
