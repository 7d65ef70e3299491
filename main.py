#!/usr/bin/env python3
"""
Storefront auth -- management CLI.

Usage:
  python main.py init-db
  python main.py init-db --roles-file roles.json
  python main.py create-account --email ops@example.com --name "Ops" --role super_admin
  python main.py assign-role --email ops@example.com --role support
  python main.py list-roles

Environment variables:
  DATABASE_URL           SQLAlchemy URL of the auth database (default: ./storefront_auth.db)
  SECRET_KEY             Required unless DEBUG=true
  ROLE_PERMISSIONS_FILE  JSON override for the default role -> permissions mapping
"""

import argparse
import getpass
import logging
import re
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from api.models import EMAIL_PATTERN, MAX_PASSWORD_LENGTH, MIN_PASSWORD_LENGTH
from auth.models import Account
from auth.permissions import seed_defaults
from auth.store import AccountStore, get_store
from auth.tokens import hash_password
from core.config import get_settings

logger = logging.getLogger("storefront.cli")


def _read_password(given: Optional[str]) -> Optional[str]:
    """Return the password from --password or an interactive prompt; None if unusable."""
    if given is None:
        given = getpass.getpass("  Password: ")
        if getpass.getpass("  Confirm:  ") != given:
            print("  [!] Passwords do not match.")
            return None
    if not MIN_PASSWORD_LENGTH <= len(given) <= MAX_PASSWORD_LENGTH:
        print(f"  [!] Password must be {MIN_PASSWORD_LENGTH}-{MAX_PASSWORD_LENGTH} characters.")
        return None
    return given


def _missing_roles(store: AccountStore, role_keys: list[str]) -> list[str]:
    found = {r.key for r in store.get_roles_by_keys(role_keys)}
    return sorted(set(role_keys) - found)


def cmd_init_db(store: AccountStore, args: argparse.Namespace) -> int:
    roles_file = args.roles_file or get_settings().role_permissions_file or None
    written = seed_defaults(store, roles_file, overwrite=bool(args.roles_file))
    print(f"  Permission catalog seeded; {written} role(s) written.")
    return 0


def cmd_create_account(store: AccountStore, args: argparse.Namespace) -> int:
    if not re.match(EMAIL_PATTERN, args.email):
        print(f"  [!] '{args.email}' doesn't look like an email address.")
        return 1
    missing = _missing_roles(store, args.role)
    if missing:
        print(f"  [!] Unknown role(s): {', '.join(missing)}. Run 'init-db' first or check 'list-roles'.")
        return 1
    password = _read_password(args.password)
    if password is None:
        return 1
    try:
        account_id = store.create_account(
            Account(
                email=args.email,
                name=args.name,
                hashed_password=hash_password(password),
                role_keys=args.role,
                is_verified=True,
            )
        )
    except IntegrityError:
        print(f"  [!] An account with email '{args.email}' already exists.")
        return 1
    logger.info("Account %s created from CLI", account_id)
    print(f"  Created account {account_id} ({args.email}) with role(s): {', '.join(args.role) or 'none'}.")
    return 0


def cmd_assign_role(store: AccountStore, args: argparse.Namespace) -> int:
    account = store.get_by_email(args.email)
    if account is None or account.deleted_at is not None:
        print(f"  [!] No account with email '{args.email}'.")
        return 1
    if _missing_roles(store, [args.role]):
        print(f"  [!] Unknown role '{args.role}'.")
        return 1
    if args.role in account.role_keys:
        print(f"  {args.email} already holds '{args.role}'.")
        return 0
    store.set_account_roles(account.id, [*account.role_keys, args.role])
    logger.info("Role %s assigned to account %s from CLI", args.role, account.id)
    print(f"  Assigned '{args.role}' to {args.email}.")
    return 0


def cmd_list_roles(store: AccountStore, args: argparse.Namespace) -> int:
    roles = store.list_roles()
    if not roles:
        print("  No roles stored. Run 'init-db' first.")
        return 0
    width = max(len(r.key) for r in roles)
    for role in roles:
        print(f"  {role.key:<{width}}  {', '.join(role.permissions) or '-'}")
    return 0


_COMMANDS = {
    "init-db": cmd_init_db,
    "create-account": cmd_create_account,
    "assign-role": cmd_assign_role,
    "list-roles": cmd_list_roles,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="storefront-auth",
        description="Manage accounts and roles for the storefront auth service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py init-db
  python main.py create-account --email ops@example.com --name Ops --role super_admin
  python main.py assign-role --email ops@example.com --role support
  python main.py list-roles
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    init_db = sub.add_parser("init-db", help="Create tables, seed the permission catalog and default roles")
    init_db.add_argument(
        "--roles-file",
        metavar="PATH",
        help="JSON file of role -> permissions; re-applies defaults plus these overrides to stored roles",
    )

    create = sub.add_parser("create-account", help="Create an account")
    create.add_argument("--email", required=True, help="Login email (stored lower-cased)")
    create.add_argument("--name", default="", help="Display name")
    create.add_argument(
        "--role",
        action="append",
        default=[],
        metavar="KEY",
        help="Role key to grant; repeat for several roles",
    )
    create.add_argument(
        "--password",
        default=None,
        help="Password (prompted for when omitted; avoid on shared shells)",
    )

    assign = sub.add_parser("assign-role", help="Grant a role to an existing account")
    assign.add_argument("--email", required=True)
    assign.add_argument("--role", required=True, metavar="KEY")

    sub.add_parser("list-roles", help="List stored roles and their permissions")
    return parser


def main(argv: Optional[list[str]] = None, store: Optional[AccountStore] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 2

    logging.basicConfig(level=logging.WARNING, format="%(levelname)-5s %(name)s %(message)s")
    store = store or get_store()
    return _COMMANDS[args.command](store, args)


if __name__ == "__main__":
    sys.exit(main())
