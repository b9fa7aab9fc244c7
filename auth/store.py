"""
auth/store.py -- SQLAlchemy Core persistence layer for identity records.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user / _row_to_entry are the mappers.
SessionManager code never touches SQL directly; it depends on the
UserRepository protocol so tests and alternative engines can stand in.

Atomicity:
  Every users row carries a version column. save() is a conditional write
  (UPDATE ... WHERE id = :id AND version = :expected) that also rewrites the
  refresh_tokens child rows, all inside one transaction. update() wraps
  load -> mutate -> save in a retry loop, so lockout counters and refresh lists
  are never lost to a concurrent writer and never partially written.

Failure mapping:
  OperationalError (locked DB, unreachable server, connect timeout) and pool
  timeouts are raised as TransientInfrastructureError. IntegrityError is left
  to the caller: it is the signal for a duplicate email [M1].

Warm-connection bookkeeping:
  is_connected() consults the optional ConnectionStateCache flag first and
  only probes the database when the flag is missing or stale.

Security:
  All queries use bound parameters. No f-strings in SQL.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, TypeVar

from sqlalchemy import Column, ForeignKey, Integer, MetaData, String, Table, Text, create_engine, event, select, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from auth.errors import NotFoundError, TransientInfrastructureError
from auth.models import RefreshTokenEntry, User

if TYPE_CHECKING:
    from cache.store import ConnectionStateCache

logger = logging.getLogger("sessionvault.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'sessionvault_auth.db'}"

CONNECTION_STATUS_KEY = "db:connection:status"

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(254), nullable=False, unique=True),  # lower-cased
    Column("hashed_password", Text, nullable=False),
    Column("first_name", String(50), nullable=False),
    Column("last_name", String(50), nullable=False),
    Column("role", String(20), nullable=False, server_default="user"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("login_attempts", Integer, nullable=False, server_default="0"),
    Column("lock_until", String(32)),
    Column("last_login", String(32)),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("email_verification_digest", String(64), index=True),
    Column("password_reset_digest", String(64), index=True),
    Column("password_reset_expires", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("version", Integer, nullable=False, server_default="0"),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),  # insertion order = FIFO order
    Column("user_id", String(32), ForeignKey("users.id"), nullable=False, index=True),
    Column("token_digest", String(64), nullable=False, unique=True),
    Column("created_at", String(32), nullable=False),
    Column("user_agent", String(255)),
    Column("ip", String(45)),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_email(email: str) -> str:
    return email.strip().lower()


class ConcurrentUpdateError(Exception):
    """A conditional write found a newer version than the one it loaded."""


@contextmanager
def _translate_errors() -> Iterator[None]:
    try:
        yield
    except (OperationalError, PoolTimeoutError, sqlite3.OperationalError) as exc:
        logger.error("Storage unavailable: %s", exc)
        raise TransientInfrastructureError() from exc


# ---------------------------------------------------------------------------
# Repository contract
# ---------------------------------------------------------------------------


class UserRepository(Protocol):
    def create_user(self, user: User) -> str: ...

    def get_by_email(self, email: str) -> User | None: ...

    def get_by_id(self, user_id: str) -> User | None: ...

    def get_by_refresh_token(self, token_digest: str) -> User | None: ...

    def get_by_reset_digest(self, digest: str) -> User | None: ...

    def get_by_verification_digest(self, digest: str) -> User | None: ...

    def save(self, user: User) -> None: ...

    def update(self, user_id: str, mutator: Callable[[User], T]) -> T: ...

    def count_active_admins(self) -> int: ...

    def is_connected(self) -> bool: ...


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """SQLAlchemy Core implementation of UserRepository.

    Usage:
        store = UserStore()
        user_id = store.create_user(User(email="a@b.io", hashed_password=..., first_name="A", last_name="B"))
        store.update(user_id, lambda u: setattr(u, "login_attempts", 0))
        store.close()
    """

    MAX_UPDATE_RETRIES = 5

    def __init__(
        self,
        db_url: str = _DEFAULT_DB_URL,
        timeout: int = 10,
        state_cache: ConnectionStateCache | None = None,
    ) -> None:
        connect_args: dict = {}
        engine_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = timeout
        else:
            connect_args["connect_timeout"] = timeout
            engine_args["pool_timeout"] = timeout
        self.engine: Engine = create_engine(db_url, connect_args=connect_args, **engine_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        self.state_cache = state_cache
        with _translate_errors():
            _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> str:
        """Insert a new record and return its id.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        SessionManager turns that into DuplicateEmailError [M1].
        """
        user.id = user.id or uuid.uuid4().hex
        user.email = normalize_email(user.email)
        user.created_at = user.created_at or _now_iso()
        user.updated_at = user.created_at
        user.version = 0
        with _translate_errors(), self.engine.connect() as conn:
            conn.execute(
                _users.insert().values(
                    id=user.id,
                    created_at=user.created_at,
                    updated_at=user.updated_at,
                    version=0,
                    **_user_columns(user),
                )
            )
            _write_entries(conn, user)
            conn.commit()
        return user.id

    def get_by_email(self, email: str) -> User | None:
        """Case-insensitive lookup. Returns None if not found."""
        return self._get_one(_users.c.email == normalize_email(email))

    def get_by_id(self, user_id: str) -> User | None:
        return self._get_one(_users.c.id == user_id)

    def get_by_refresh_token(self, token_digest: str) -> User | None:
        """Return the owner of a refresh token digest, or None if no record holds it."""
        owner = select(_refresh_tokens.c.user_id).where(_refresh_tokens.c.token_digest == token_digest)
        return self._get_one(_users.c.id.in_(owner.scalar_subquery()))

    def get_by_reset_digest(self, digest: str) -> User | None:
        return self._get_one(_users.c.password_reset_digest == digest)

    def get_by_verification_digest(self, digest: str) -> User | None:
        return self._get_one(_users.c.email_verification_digest == digest)

    def count_active_admins(self) -> int:
        """Used by the admin PATCH route to keep at least one admin active."""
        with _translate_errors(), self.engine.connect() as conn:
            result = conn.execute(text("SELECT COUNT(*) FROM users WHERE role = 'admin' AND is_active = 1")).scalar()
        return result or 0

    def _get_one(self, clause) -> User | None:
        with _translate_errors(), self.engine.connect() as conn:
            row = conn.execute(_users.select().where(clause)).fetchone()
            if row is None:
                return None
            entries = conn.execute(
                _refresh_tokens.select().where(_refresh_tokens.c.user_id == row.id).order_by(_refresh_tokens.c.id)
            ).fetchall()
        return _row_to_user(row, [_row_to_entry(e) for e in entries])

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def save(self, user: User) -> None:
        """Conditionally write the record and its refresh list in one transaction.

        Raises ConcurrentUpdateError if the stored version is no longer the one
        this User was loaded at, NotFoundError if the record is gone, and
        IntegrityError if an email change collides with another record.
        """
        updated_at = _now_iso()
        with _translate_errors(), self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user.id) & (_users.c.version == user.version))
                .values(updated_at=updated_at, version=user.version + 1, **_user_columns(user))
            )
            if result.rowcount == 0:
                conn.rollback()
                exists = conn.execute(select(_users.c.id).where(_users.c.id == user.id)).fetchone()
                if exists is None:
                    raise NotFoundError()
                raise ConcurrentUpdateError(user.id)
            conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.user_id == user.id))
            _write_entries(conn, user)
            conn.commit()
        user.version += 1
        user.updated_at = updated_at

    def update(self, user_id: str, mutator: Callable[[User], T]) -> T:
        """Load, mutate and conditionally save a record; retry on version conflict.

        The mutator receives a fresh User on every attempt and must be free of
        side effects outside that object. Its return value is passed through.
        Raises NotFoundError if the record does not exist.
        """
        for attempt in range(1, self.MAX_UPDATE_RETRIES + 1):
            user = self.get_by_id(user_id)
            if user is None:
                raise NotFoundError()
            result = mutator(user)
            try:
                self.save(user)
            except ConcurrentUpdateError:
                logger.info("Version conflict on user %s (attempt %d); retrying", user_id, attempt)
                continue
            return result
        logger.error("Gave up updating user %s after %d conflicts", user_id, self.MAX_UPDATE_RETRIES)
        raise TransientInfrastructureError()

    # ------------------------------------------------------------------
    # Connection state
    # ------------------------------------------------------------------

    def is_connected(self) -> bool:
        """Return True if the database is reachable.

        A fresh "connected" flag in the state cache short-circuits the probe.
        A successful probe refreshes the flag; a failed one clears it.
        """
        if self.state_cache is not None:
            with _translate_errors():
                if self.state_cache.get(CONNECTION_STATUS_KEY) == "connected":
                    return True
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except (OperationalError, PoolTimeoutError) as exc:
            logger.warning("Database probe failed: %s", exc)
            if self.state_cache is not None:
                with _translate_errors():
                    self.state_cache.delete(CONNECTION_STATUS_KEY)
            return False
        if self.state_cache is not None:
            with _translate_errors():
                self.state_cache.set(CONNECTION_STATUS_KEY, "connected")
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _user_columns(user: User) -> dict:
    """Mutable column values for INSERT/UPDATE. id, created_at and version are managed by the store."""
    return {
        "email": normalize_email(user.email),
        "hashed_password": user.hashed_password,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "role": user.role,
        "is_active": 1 if user.is_active else 0,
        "login_attempts": user.login_attempts,
        "lock_until": user.lock_until,
        "last_login": user.last_login,
        "email_verified": 1 if user.email_verified else 0,
        "email_verification_digest": user.email_verification_digest,
        "password_reset_digest": user.password_reset_digest,
        "password_reset_expires": user.password_reset_expires,
    }


def _write_entries(conn: Connection, user: User) -> None:
    if not user.refresh_tokens:
        return
    conn.execute(
        _refresh_tokens.insert(),
        [
            {
                "user_id": user.id,
                "token_digest": e.token_digest,
                "created_at": e.created_at,
                "user_agent": e.user_agent,
                "ip": e.ip,
            }
            for e in user.refresh_tokens
        ],
    )


def _row_to_user(row, entries: list[RefreshTokenEntry]) -> User:
    return User(
        id=row.id,
        email=row.email,
        hashed_password=row.hashed_password,
        first_name=row.first_name,
        last_name=row.last_name,
        role=row.role,
        is_active=bool(row.is_active),
        login_attempts=row.login_attempts,
        lock_until=row.lock_until,
        last_login=row.last_login,
        email_verified=bool(row.email_verified),
        email_verification_digest=row.email_verification_digest,
        password_reset_digest=row.password_reset_digest,
        password_reset_expires=row.password_reset_expires,
        refresh_tokens=entries,
        created_at=row.created_at,
        updated_at=row.updated_at,
        version=row.version,
    )


def _row_to_entry(row) -> RefreshTokenEntry:
    return RefreshTokenEntry(
        token_digest=row.token_digest,
        created_at=row.created_at,
        user_agent=row.user_agent,
        ip=row.ip,
    )
