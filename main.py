#!/usr/bin/env python3
"""
Keyward -- operator CLI for the identity core.

Usage:
  python main.py bootstrap --username owner --email owner@example.com --first Ada --last Lovelace
  python main.py token eyJhbGciOiJIUzI1NiIs...
  python main.py roles

Environment variables:
  SECRET_KEY    Token signing key, at least 32 characters. Required unless DEBUG=true.
  DATABASE_URL  SQLAlchemy URL of the account store (default: sqlite file next to the code).
"""

import argparse
import getpass
import json
import logging
import sys
from typing import Optional

from pydantic import ValidationError

from auth.accounts import AccountService, account_summary
from auth.models import ROLE_NAMES
from auth.store import AccountStore
from auth.tokens import TokenIssuer
from core.config import Settings, get_settings
from core.errors import FatalError, KeywardError
from core.results import OperationResult

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("keyward.cli")


def _print_result(result: OperationResult) -> None:
    print(json.dumps(result.model_dump(mode="json"), indent=2))


def _load_settings() -> Optional[Settings]:
    """Return Settings, or print a fatal result and return None if the environment is unusable."""
    try:
        return get_settings()
    except ValidationError as exc:
        problems = "; ".join(err["msg"] for err in exc.errors())
        _print_result(OperationResult.from_error(FatalError(f"Invalid configuration: {problems}")))
        return None


def _read_password(given: Optional[str]) -> str:
    """Prompt twice unless a password was passed on the command line."""
    if given:
        return given
    first = getpass.getpass("Owner password: ")
    second = getpass.getpass("Repeat password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        sys.exit(2)
    if len(first) < 8:
        print("  [!] Password must be at least 8 characters.")
        sys.exit(2)
    return first


def cmd_bootstrap(args: argparse.Namespace) -> int:
    settings = _load_settings()
    if settings is None:
        return 1
    store = AccountStore(settings.database_url, timeout_seconds=settings.store_timeout_seconds)
    service = AccountService(store, TokenIssuer.from_settings(settings))
    try:
        owner = service.bootstrap_owner(
            firstname=args.first,
            lastname=args.last,
            username=args.username,
            email=args.email,
            password=_read_password(args.password),
        )
    except KeywardError as exc:
        _print_result(OperationResult.from_error(exc))
        return 1
    finally:
        store.close()
    _print_result(OperationResult.ok("Owner account created.", data=account_summary(owner)))
    return 0


def cmd_token(args: argparse.Namespace) -> int:
    settings = _load_settings()
    if settings is None:
        return 1
    issuer = TokenIssuer.from_settings(settings)
    try:
        claims = issuer.validate(args.token)
    except KeywardError as exc:
        _print_result(OperationResult.from_error(exc))
        return 1
    _print_result(
        OperationResult.ok(
            "Token is valid.",
            data={
                "account_id": claims.account_id,
                "role": claims.role,
                "role_name": ROLE_NAMES[claims.role],
                "issued_at": claims.issued_at.isoformat(),
                "expires_at": claims.expires_at.isoformat(),
            },
        )
    )
    return 0


def cmd_roles(args: argparse.Namespace) -> int:
    for number, name in sorted(ROLE_NAMES.items()):
        print(f"  {int(number)}  {name}")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="keyward",
        description="Operator tools for the Keyward identity core.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  DEBUG=true python main.py bootstrap --username owner --email owner@example.com --first Ada --last Lovelace
  python main.py token "$TOKEN"
  python main.py roles
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    boot = sub.add_parser("bootstrap", help="Create the first Owner account on an empty store")
    boot.add_argument("--username", required=True)
    boot.add_argument("--email", required=True)
    boot.add_argument("--first", required=True, metavar="FIRSTNAME")
    boot.add_argument("--last", required=True, metavar="LASTNAME")
    boot.add_argument(
        "--password",
        default=None,
        help="Owner password. Prompted for when omitted (preferred: keeps it out of shell history).",
    )
    boot.set_defaults(func=cmd_bootstrap)

    tok = sub.add_parser("token", help="Validate a bearer token and print its claims")
    tok.add_argument("token", metavar="JWT")
    tok.set_defaults(func=cmd_token)

    roles = sub.add_parser("roles", help="List the role hierarchy")
    roles.set_defaults(func=cmd_roles)

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
