"""
cache/store.py -- SQLite-backed TTL flag store for connection state.

Holds the warm-connection flag the data-access layer consults before paying
for a database round-trip: once a connection has been verified, the flag
"db:connection:status" = "connected" is written with a 5 minute TTL. While
the flag is fresh, health checks and UserStore.is_connected() skip the probe.

Usage:
    cache = ConnectionStateCache()
    cache.set("db:connection:status", "connected")
    cache.get("db:connection:status")   # returns "connected" or None
    cache.purge_expired()               # call periodically to trim old entries
"""

import sqlite3
import time
from pathlib import Path
from typing import Optional, Union

_DEFAULT_DB = Path(__file__).parent / "sessionvault_state.db"
_DEFAULT_TTL = 300  # 5 minutes in seconds

_DDL = """
CREATE TABLE IF NOT EXISTS state_cache (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    expires_at  REAL NOT NULL
);
"""


class ConnectionStateCache:
    def __init__(
        self,
        db_path: Union[Path, str] = _DEFAULT_DB,
        ttl: int = _DEFAULT_TTL,
        timeout: float = 10.0,
    ) -> None:
        self.ttl = ttl
        self._conn = sqlite3.connect(str(db_path), timeout=timeout, check_same_thread=False)
        if str(db_path) != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_DDL)
        self._conn.commit()

    def get(self, key: str) -> Optional[str]:
        """Return the value for key if it exists and hasn't expired."""
        row = self._conn.execute(
            "SELECT value, expires_at FROM state_cache WHERE key = ?",
            (key,),
        ).fetchone()
        if row is None:
            return None
        value, expires_at = row
        if time.time() >= expires_at:
            self._delete(key)
            return None
        return value

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        """Store value for key with a TTL (defaults to the cache TTL)."""
        expires_at = time.time() + (self.ttl if ttl is None else ttl)
        self._conn.execute(
            "INSERT OR REPLACE INTO state_cache (key, value, expires_at) VALUES (?, ?, ?)",
            (key, value, expires_at),
        )
        self._conn.commit()

    def delete(self, key: str) -> None:
        self._delete(key)

    def purge_expired(self) -> int:
        """Delete all expired entries. Returns number of rows removed."""
        cursor = self._conn.execute("DELETE FROM state_cache WHERE expires_at <= ?", (time.time(),))
        self._conn.commit()
        return cursor.rowcount

    def _delete(self, key: str) -> None:
        self._conn.execute("DELETE FROM state_cache WHERE key = ?", (key,))
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()
