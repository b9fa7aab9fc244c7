#!/usr/bin/env python3
"""
SessionVault -- administrative command line.

Usage:
  python main.py create-admin --email admin@example.com --first-name Ada --last-name Admin
  python main.py set-active user@example.com --inactive
  python main.py set-role user@example.com moderator
  python main.py unlock user@example.com
  python main.py purge-cache

Configuration comes from the environment / .env exactly as for the API
(DATABASE_URL, SECRET_KEY, REFRESH_SECRET_KEY, ...).
"""

import argparse
import getpass
import sys
from typing import Optional

from auth.errors import AuthError
from auth.models import Role, User
from auth.sessions import SessionManager
from auth.store import UserStore
from cache.store import ConnectionStateCache
from core.config import get_settings


def _open_store() -> UserStore:
    settings = get_settings()
    return UserStore(db_url=settings.database_url, timeout=settings.db_timeout_seconds)


def _read_password(prompt: str = "Password: ") -> str:
    password = getpass.getpass(prompt)
    if password != getpass.getpass("Repeat password: "):
        raise SystemExit("  [!] Passwords do not match.")
    if len(password) < 8:
        raise SystemExit("  [!] Password must be at least 8 characters.")
    return password


def create_admin(store: UserStore, email: str, first_name: str, last_name: str, password: Optional[str]) -> User:
    """Register an admin account. The issued tokens are discarded."""
    manager = SessionManager(store)
    result = manager.register(email, password or _read_password(), first_name, last_name, role=Role.admin.value)
    return result.user


def _require(store: UserStore, email: str) -> User:
    user = store.get_by_email(email)
    if user is None:
        raise SystemExit(f"  [!] No user with email '{email}'.")
    return user


def unlock(store: UserStore, email: str) -> None:
    """Clear the lockout counter and lock for one account."""

    def mutate(u: User) -> None:
        u.login_attempts = 0
        u.lock_until = None

    store.update(_require(store, email).id, mutate)


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="sessionvault",
        description="Administer SessionVault accounts.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_admin = sub.add_parser("create-admin", help="Create an admin account")
    p_admin.add_argument("--email", required=True)
    p_admin.add_argument("--first-name", required=True)
    p_admin.add_argument("--last-name", required=True)
    p_admin.add_argument("--password", help="Read from a prompt when omitted")

    p_active = sub.add_parser("set-active", help="Activate or deactivate an account")
    p_active.add_argument("email")
    group = p_active.add_mutually_exclusive_group(required=True)
    group.add_argument("--active", dest="active", action="store_true")
    group.add_argument("--inactive", dest="active", action="store_false")

    p_role = sub.add_parser("set-role", help="Change an account's role")
    p_role.add_argument("email")
    p_role.add_argument("role", choices=[r.value for r in Role])

    p_unlock = sub.add_parser("unlock", help="Clear a lockout")
    p_unlock.add_argument("email")

    sub.add_parser("purge-cache", help="Delete expired connection-state cache entries")

    args = parser.parse_args(argv)

    if args.command == "purge-cache":
        settings = get_settings()
        cache = ConnectionStateCache(db_path=settings.state_cache_path, ttl=settings.connection_state_ttl_seconds)
        try:
            print(f"  Purged {cache.purge_expired()} expired entries.")
        finally:
            cache.close()
        return 0

    store = _open_store()
    try:
        if args.command == "create-admin":
            user = create_admin(store, args.email, args.first_name, args.last_name, args.password)
            print(f"  Created admin {user.email} ({user.id}).")
        elif args.command == "set-active":
            user = SessionManager(store).set_account_status(_require(store, args.email).id, is_active=args.active)
            print(f"  {user.email} is now {'active' if user.is_active else 'inactive'}.")
        elif args.command == "set-role":
            user = SessionManager(store).set_account_status(_require(store, args.email).id, role=args.role)
            print(f"  {user.email} now has role {user.role}.")
        elif args.command == "unlock":
            unlock(store, args.email)
            print(f"  {args.email} unlocked.")
    except AuthError as exc:
        print(f"  [!] {exc.message}", file=sys.stderr)
        return 1
    finally:
        store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
