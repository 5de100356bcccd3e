#!/usr/bin/env python3
"""
Hosting panel auth -- operator command line.

Usage:
  python main.py create-user admin admin@example.com --role admin
  python main.py create-role reseller --display-name "Reseller"
  python main.py grant reseller domain create
  python main.py revoke-grant reseller domain create
  python main.py assign-role alice reseller
  python main.py remove-role alice reseller
  python main.py permissions alice
  python main.py unlock alice
  python main.py disable alice
  python main.py events --user alice

Users are addressed by username or email. Passwords are read with getpass
(or from --password for scripted bootstraps) and are checked against the
same strength policy as self-registration.

Configuration comes from the environment / .env exactly as for the API
(DATABASE_URL, REDIS_URL, SECRET_KEY, ...).
"""

import argparse
import getpass
import sys
from typing import Optional

from auth.models import User
from auth.service import AuthService
from auth.store import AuthStore
from cache.store import build_session_cache
from core.config import get_settings
from core.errors import AuthError


def _build_service() -> AuthService:
    settings = get_settings()
    store = AuthStore(settings.database_url, connect_timeout=settings.db_connect_timeout)
    return AuthService.build(settings, store, build_session_cache(settings))


def _find_user(auth: AuthService, identifier: str) -> Optional[User]:
    user = auth.find_user(identifier)
    if user is None:
        print(f"  [!] No user matches '{identifier}'.")
    return user


def _read_password(args: argparse.Namespace) -> str:
    if args.password:
        return args.password
    first = getpass.getpass("  Password: ")
    second = getpass.getpass("  Repeat password: ")
    if first != second:
        raise SystemExit("  [!] Passwords do not match.")
    return first


def cmd_create_user(auth: AuthService, args: argparse.Namespace) -> int:
    user = auth.register(args.username, args.email, _read_password(args), args.first_name, args.last_name)
    for role_name in args.role or []:
        auth.ensure_role(role_name, is_system=role_name in ("admin", "user"))
        auth.assign_role(user.id, role_name)
    print(f"  Created user {user.username} ({user.id}) roles={', '.join(auth.role_names(user.id))}")
    return 0


def cmd_create_role(auth: AuthService, args: argparse.Namespace) -> int:
    role = auth.ensure_role(args.name, args.display_name, args.description or "")
    print(f"  Role {role.name} ({role.id})")
    return 0


def cmd_grant(auth: AuthService, args: argparse.Namespace) -> int:
    added = auth.grant(args.role, args.resource, args.action)
    state = "granted" if added else "already granted"
    print(f"  {args.resource}.{args.action} {state} to {args.role}")
    return 0


def cmd_revoke_grant(auth: AuthService, args: argparse.Namespace) -> int:
    removed = auth.revoke_grant(args.role, args.resource, args.action)
    state = "revoked from" if removed else "was not granted to"
    print(f"  {args.resource}.{args.action} {state} {args.role}")
    return 0


def cmd_assign_role(auth: AuthService, args: argparse.Namespace) -> int:
    user = _find_user(auth, args.user)
    if user is None:
        return 1
    added = auth.assign_role(user.id, args.role)
    print(f"  {user.username}: {args.role} {'assigned' if added else 'already assigned'}")
    return 0


def cmd_remove_role(auth: AuthService, args: argparse.Namespace) -> int:
    user = _find_user(auth, args.user)
    if user is None:
        return 1
    removed = auth.remove_role(user.id, args.role)
    print(f"  {user.username}: {args.role} {'removed' if removed else 'was not assigned'}")
    return 0


def cmd_permissions(auth: AuthService, args: argparse.Namespace) -> int:
    user = _find_user(auth, args.user)
    if user is None:
        return 1
    roles = auth.role_names(user.id)
    print(f"\n  {user.username} -- roles: {', '.join(roles) or '(none)'}")
    if "admin" in roles:
        print("  admin role: every permission check passes")
    perms = sorted(auth.permissions_of(user.id))
    if not perms:
        print("  no explicit grants\n")
        return 0
    print("  " + "─" * 38)
    for resource, action in perms:
        print(f"  {resource:<20} {action}")
    print()
    return 0


def cmd_unlock(auth: AuthService, args: argparse.Namespace) -> int:
    user = _find_user(auth, args.user)
    if user is None:
        return 1
    auth.unlock(user.id)
    print(f"  Unlocked {user.username} (was {user.failed_login_count} failed attempt(s))")
    return 0


def cmd_disable(auth: AuthService, args: argparse.Namespace) -> int:
    user = _find_user(auth, args.user)
    if user is None:
        return 1
    auth.set_active(user.id, False)
    print(f"  Disabled {user.username}; open sessions revoked")
    return 0


def cmd_events(auth: AuthService, args: argparse.Namespace) -> int:
    user_id = None
    if args.user:
        user = _find_user(auth, args.user)
        if user is None:
            return 1
        user_id = user.id
    for ev in auth.security_events(user_id=user_id, limit=args.limit):
        stamp = ev.created_at.strftime("%Y-%m-%d %H:%M:%S") if ev.created_at else "-"
        print(f"  {stamp}  {ev.severity:<8} {ev.event_type:<15} {ev.ip_address or '-':<15} {ev.description}")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hostpanel-auth",
        description="Manage panel users, roles and permissions.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("create-user", help="Register a user (password policy applies)")
    p.add_argument("username")
    p.add_argument("email")
    p.add_argument("--password", help="Password (prompted for when omitted)")
    p.add_argument("--first-name", default="")
    p.add_argument("--last-name", default="")
    p.add_argument("--role", action="append", metavar="ROLE", help="Extra role to assign; repeatable")
    p.set_defaults(func=cmd_create_user)

    p = sub.add_parser("create-role", help="Create a role if it does not exist")
    p.add_argument("name")
    p.add_argument("--display-name")
    p.add_argument("--description")
    p.set_defaults(func=cmd_create_role)

    for name, func, help_text in (
        ("grant", cmd_grant, "Grant RESOURCE ACTION to ROLE"),
        ("revoke-grant", cmd_revoke_grant, "Remove a grant from ROLE"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("role")
        p.add_argument("resource")
        p.add_argument("action")
        p.set_defaults(func=func)

    for name, func, help_text in (
        ("assign-role", cmd_assign_role, "Assign ROLE to USER"),
        ("remove-role", cmd_remove_role, "Remove ROLE from USER"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("user", help="Username or email")
        p.add_argument("role")
        p.set_defaults(func=func)

    for name, func, help_text in (
        ("permissions", cmd_permissions, "Show a user's roles and effective permissions"),
        ("unlock", cmd_unlock, "Clear a user's failed-login lockout"),
        ("disable", cmd_disable, "Deactivate a user and revoke their sessions"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("user", help="Username or email")
        p.set_defaults(func=func)

    p = sub.add_parser("events", help="List recent security events")
    p.add_argument("--user", help="Only events for this username or email")
    p.add_argument("--limit", type=int, default=50)
    p.set_defaults(func=cmd_events)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 0

    auth = _build_service()
    try:
        return args.func(auth, args)
    except AuthError as exc:
        print(f"  [!] {exc.message}")
        return 1
    except LookupError as exc:
        print(f"  [!] {exc}")
        return 1
    finally:
        auth.close()


if __name__ == "__main__":
    sys.exit(main())
