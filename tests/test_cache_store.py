"""
tests/test_cache_store.py -- ConnectionStateCache TTL semantics.
"""

from __future__ import annotations

import time

from cache.store import ConnectionStateCache


def test_set_then_get(state_cache: ConnectionStateCache) -> None:
    state_cache.set("db:connection:status", "connected")
    assert state_cache.get("db:connection:status") == "connected"


def test_missing_key(state_cache: ConnectionStateCache) -> None:
    assert state_cache.get("absent") is None


def test_expired_entry_is_dropped(state_cache: ConnectionStateCache) -> None:
    """An entry past its TTL reads as missing."""
    state_cache.set("flag", "connected", ttl=0)
    assert state_cache.get("flag") is None


def test_set_replaces_existing(state_cache: ConnectionStateCache) -> None:
    state_cache.set("flag", "a")
    state_cache.set("flag", "b")
    assert state_cache.get("flag") == "b"


def test_delete(state_cache: ConnectionStateCache) -> None:
    state_cache.set("flag", "connected")
    state_cache.delete("flag")
    assert state_cache.get("flag") is None


def test_purge_expired_counts_removed_rows(state_cache: ConnectionStateCache) -> None:
    state_cache.set("old-1", "x", ttl=0)
    state_cache.set("old-2", "x", ttl=0)
    state_cache.set("fresh", "x", ttl=300)
    time.sleep(0.01)
    assert state_cache.purge_expired() == 2
    assert state_cache.get("fresh") == "x"


def test_file_backed_cache_persists(tmp_path) -> None:
    """Values survive reopening the same file."""
    path = tmp_path / "state.db"
    first = ConnectionStateCache(db_path=path)
    first.set("flag", "connected")
    first.close()
    second = ConnectionStateCache(db_path=path)
    try:
        assert second.get("flag") == "connected"
    finally:
        second.close()
