#!/usr/bin/env python3
"""
Gatekeeper -- admin command line for the authentication core.

Usage:
  python main.py create-user alice alice@example.com
  python main.py create-user root root@example.com --admin --2fa
  python main.py unlock alice
  python main.py cleanup
  python main.py stats
  python main.py --database-url sqlite:////tmp/gk.db stats

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the credential store (default: ./gatekeeper.db)
  SECRET_KEY    Required unless DEBUG=true. See core/config.py.
"""

import argparse
import getpass
import sys
from datetime import timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.codes import VerificationCodeManager
from auth.lockout import LockoutGuard
from auth.models import User
from auth.sessions import SessionManager
from auth.store import UserStore
from auth.tokens import hash_password
from core.config import get_settings
from core.db import create_db_engine

_MIN_PASSWORD = 8


def _create_user(store: UserStore, args: argparse.Namespace) -> int:
    password = getpass.getpass("  Password: ")
    if len(password) < _MIN_PASSWORD:
        print(f"  [!] Password must be at least {_MIN_PASSWORD} characters.")
        return 1
    if getpass.getpass("  Confirm:  ") != password:
        print("  [!] Passwords do not match.")
        return 1

    user = User(
        username=args.username,
        email=args.email,
        hashed_password=hash_password(password),
        role="admin" if args.admin else "user",
    )
    try:
        user_id = store.create_user(user)
    except IntegrityError:
        print(f"  [!] A user with username '{args.username}' or that email already exists.")
        return 1
    if args.two_factor:
        store.update_security_settings(user_id, two_factor_enabled=True)
    print(f"  Created {user.role} '{args.username}' (id={user_id}, 2fa={'on' if args.two_factor else 'off'}).")
    return 0


def _unlock(store: UserStore, lockout: LockoutGuard, username: str) -> int:
    user = store.get_by_username(username)
    if user is None:
        print(f"  [!] No such user '{username}'.")
        return 1
    lockout.unlock_account(user.id)
    print(f"  Unlocked '{username}'.")
    return 0


def _cleanup(codes: VerificationCodeManager, sessions: SessionManager, lockout: LockoutGuard) -> int:
    settings = get_settings()
    # Keep issuance events for at least the longest window that counts them.
    keep = timedelta(minutes=max(settings.code_rate_limit_window_minutes, 60))
    print(f"  Expired codes removed:      {codes.cleanup_expired()}")
    print(f"  Issuance events pruned:     {codes.prune_issuance_log(older_than=keep)}")
    print(f"  Expired sessions closed:    {sessions.cleanup_expired_sessions()}")
    print(f"  Stale failure streaks reset: {lockout.reset_stale_failures()}")
    return 0


def _stats(store: UserStore, codes: VerificationCodeManager, sessions: SessionManager) -> int:
    print("\nSessions")
    print("─" * 40)
    for key, value in sessions.get_session_statistics().items():
        print(f"  {key.replace('_', ' '):<28} {value}")
    print("\nAccounts")
    print("─" * 40)
    for key, value in store.security_stats().items():
        print(f"  {key.replace('_', ' '):<28} {value}")
    print("\nVerification codes (30 days)")
    print("─" * 40)
    rows = codes.verification_stats()
    if not rows:
        print("  none")
    for row in rows:
        print(
            f"  {row['purpose']:<16} total={row['total_codes']} used={row['used_codes']} "
            f"expired={row['expired_codes']} burned={row['max_attempts_exceeded']}"
        )
    print()
    return 0


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="gatekeeper",
        description="Admin commands for the Gatekeeper authentication store.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--database-url",
        metavar="URL",
        default=None,
        help="SQLAlchemy database URL (default: DATABASE_URL from the environment)",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    create = sub.add_parser("create-user", help="Create a user; the password is prompted for")
    create.add_argument("username")
    create.add_argument("email")
    create.add_argument("--admin", action="store_true", help="Give the user the admin role")
    create.add_argument("--2fa", dest="two_factor", action="store_true", help="Enable email two-factor login")

    unlock = sub.add_parser("unlock", help="Lift a temporary lockout and clear the failure streak")
    unlock.add_argument("username")

    sub.add_parser("cleanup", help="Remove expired codes and sessions, prune old issuance events")
    sub.add_parser("stats", help="Print session, account, and verification code statistics")

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    settings = get_settings()
    engine = create_db_engine(args.database_url or settings.database_url)
    store = UserStore(engine)
    lockout = LockoutGuard(
        engine,
        threshold=settings.max_failed_attempts,
        lockout_duration=timedelta(minutes=settings.lockout_duration_minutes),
    )
    codes = VerificationCodeManager(engine, max_attempts=settings.code_max_attempts)
    sessions = SessionManager(
        engine,
        ttl=timedelta(hours=settings.session_ttl_hours),
        max_sessions=settings.max_sessions_per_user,
    )

    try:
        if args.command == "create-user":
            return _create_user(store, args)
        if args.command == "unlock":
            return _unlock(store, lockout, args.username)
        if args.command == "cleanup":
            return _cleanup(codes, sessions, lockout)
        return _stats(store, codes, sessions)
    finally:
        engine.dispose()


if __name__ == "__main__":
    sys.exit(main())
