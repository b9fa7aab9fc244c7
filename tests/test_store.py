"""
tests/test_store.py -- UserStore persistence, conditional writes and failure mapping.
"""

from __future__ import annotations

import pytest
from sqlalchemy.exc import IntegrityError

from auth.errors import NotFoundError, TransientInfrastructureError
from auth.models import RefreshTokenEntry, User
from auth.store import CONNECTION_STATUS_KEY, ConcurrentUpdateError, UserStore


def _user(email: str = "store@example.com") -> User:
    return User(email=email, hashed_password="$2b$04$notarealhash", first_name="Sto", last_name="Re")


class TestQueries:
    def test_create_and_fetch(self, store: UserStore) -> None:
        user_id = store.create_user(_user())
        fetched = store.get_by_id(user_id)
        assert fetched.email == "store@example.com"
        assert fetched.version == 0
        assert fetched.created_at is not None

    def test_email_lookup_is_case_insensitive(self, store: UserStore) -> None:
        store.create_user(_user("Case@Example.com"))
        assert store.get_by_email("  CASE@example.COM ").email == "case@example.com"

    def test_duplicate_email_raises_integrity_error(self, store: UserStore) -> None:
        store.create_user(_user())
        with pytest.raises(IntegrityError):
            store.create_user(_user("STORE@example.com"))

    def test_missing_returns_none(self, store: UserStore) -> None:
        assert store.get_by_id("nope") is None
        assert store.get_by_email("nope@example.com") is None
        assert store.get_by_refresh_token("nope") is None

    def test_refresh_entries_round_trip_in_order(self, store: UserStore) -> None:
        """Entries are persisted and reloaded oldest first."""
        user = _user()
        user.refresh_tokens = [
            RefreshTokenEntry(token_digest=f"d{i}", created_at=f"2026-01-0{i}T00:00:00+00:00") for i in range(1, 4)
        ]
        user_id = store.create_user(user)
        assert [e.token_digest for e in store.get_by_id(user_id).refresh_tokens] == ["d1", "d2", "d3"]
        assert store.get_by_refresh_token("d2").id == user_id

    def test_lookup_by_reset_and_verification_digest(self, store: UserStore) -> None:
        user = _user()
        user.password_reset_digest = "reset-digest"
        user.email_verification_digest = "verify-digest"
        user_id = store.create_user(user)
        assert store.get_by_reset_digest("reset-digest").id == user_id
        assert store.get_by_verification_digest("verify-digest").id == user_id


class TestConditionalWrites:
    def test_save_bumps_version(self, store: UserStore) -> None:
        user = store.get_by_id(store.create_user(_user()))
        user.login_attempts = 2
        store.save(user)
        reloaded = store.get_by_id(user.id)
        assert reloaded.login_attempts == 2
        assert reloaded.version == 1

    def test_stale_save_is_rejected(self, store: UserStore) -> None:
        """Two copies loaded at the same version: the second save loses."""
        user_id = store.create_user(_user())
        first, second = store.get_by_id(user_id), store.get_by_id(user_id)
        first.login_attempts = 1
        store.save(first)
        second.login_attempts = 9
        with pytest.raises(ConcurrentUpdateError):
            store.save(second)
        assert store.get_by_id(user_id).login_attempts == 1

    def test_update_retries_after_conflict(self, store: UserStore) -> None:
        """A concurrent write during the first attempt is not lost; the mutator reruns."""
        user_id = store.create_user(_user())
        calls = []

        def mutate(u: User) -> int:
            calls.append(u.version)
            if len(calls) == 1:
                store.update(user_id, lambda other: setattr(other, "first_name", "Concurrent"))
            u.login_attempts += 1
            return u.login_attempts

        assert store.update(user_id, mutate) == 1
        reloaded = store.get_by_id(user_id)
        assert calls == [0, 1]
        assert reloaded.first_name == "Concurrent"
        assert reloaded.login_attempts == 1

    def test_update_missing_record(self, store: UserStore) -> None:
        with pytest.raises(NotFoundError):
            store.update("missing", lambda u: None)

    def test_save_rewrites_refresh_list(self, store: UserStore) -> None:
        user = _user()
        user.refresh_tokens = [RefreshTokenEntry(token_digest="old", created_at="2026-01-01T00:00:00+00:00")]
        user_id = store.create_user(user)

        def mutate(u: User) -> None:
            u.refresh_tokens = [RefreshTokenEntry(token_digest="new", created_at="2026-01-02T00:00:00+00:00")]

        store.update(user_id, mutate)
        assert store.get_by_refresh_token("old") is None
        assert store.get_by_refresh_token("new").id == user_id


class TestConnectionState:
    def test_probe_sets_warm_flag(self, store: UserStore, state_cache) -> None:
        assert state_cache.get(CONNECTION_STATUS_KEY) is None
        assert store.is_connected() is True
        assert state_cache.get(CONNECTION_STATUS_KEY) == "connected"

    def test_warm_flag_skips_probe(self, store: UserStore, state_cache, monkeypatch) -> None:
        """With a fresh flag the database is not touched."""
        state_cache.set(CONNECTION_STATUS_KEY, "connected")

        def boom():
            raise AssertionError("database probed despite warm flag")

        monkeypatch.setattr(store.engine, "connect", boom)
        assert store.is_connected() is True

    def test_failed_probe_clears_flag(self, store: UserStore, state_cache, monkeypatch) -> None:
        from sqlalchemy.exc import OperationalError

        def down():
            raise OperationalError("SELECT 1", {}, Exception("server gone"))

        monkeypatch.setattr(store.engine, "connect", down)
        assert store.is_connected() is False
        assert state_cache.get(CONNECTION_STATUS_KEY) is None

    def test_unreachable_database_is_transient(self, tmp_path) -> None:
        """Storage that cannot be opened surfaces as TransientInfrastructureError."""
        missing_dir = tmp_path / "does-not-exist" / "auth.db"
        with pytest.raises(TransientInfrastructureError):
            UserStore(db_url=f"sqlite:///{missing_dir}")
