"""Operator commands for provisioning admins outside the HTTP API.

    branch-crm bootstrap-admin --name "Admin" --email admin@example.com --password ...
    branch-crm promote-admin <user_id>
"""
from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Sequence

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from app.core.config import CrmConfig, get_settings
from app.core.database import Base
from app.crm.errors import CrmError
from app.crm.roles import Role
from app.crm.service import CrmServices, build_services
from app.identity.sql import SqlIdentityProvider
from app.logging import configure_logging
from app.store.base import DocumentNotFoundError
from app.store.query import Query
from app.store.sql import SqlDocumentStore


logger = logging.getLogger("app.cli")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="branch-crm", description="Branch CRM admin provisioning")
    parser.add_argument("--database-url", help="Defaults to DATABASE_URL from the environment")
    commands = parser.add_subparsers(dest="command", required=True)

    bootstrap = commands.add_parser("bootstrap-admin", help="Create the first admin account")
    bootstrap.add_argument("--name", required=True)
    bootstrap.add_argument("--email", required=True)
    bootstrap.add_argument("--password", required=True)
    bootstrap.add_argument(
        "--allow-existing",
        action="store_true",
        help="Create the admin even when another admin already exists",
    )

    promote = commands.add_parser("promote-admin", help="Turn an existing user into an admin")
    promote.add_argument("user_id")
    return parser


def _bootstrap_admin(services: CrmServices, args: argparse.Namespace) -> int:
    existing = services.users.users.list([Query.equal("role", Role.ADMIN.value)])
    if existing and not args.allow_existing:
        logger.error("cli.bootstrap_refused", extra={"target_id": existing[0].id, "role": Role.ADMIN.value})
        print(f"An admin already exists ({existing[0].email}); pass --allow-existing to add another.", file=sys.stderr)
        return 1
    if len(args.password) < 8:
        print("Password must be at least 8 characters.", file=sys.stderr)
        return 2

    user = services.users.bootstrap_admin(name=args.name, email=args.email, password=args.password)
    print(user.model_dump_json())
    return 0


def _promote_admin(services: CrmServices, args: argparse.Namespace) -> int:
    try:
        user = services.users.promote_to_admin(args.user_id)
    except DocumentNotFoundError:
        print(f"User {args.user_id} not found.", file=sys.stderr)
        return 1
    print(user.model_dump_json())
    return 0


_COMMANDS = {
    "bootstrap-admin": _bootstrap_admin,
    "promote-admin": _promote_admin,
}


def main(argv: Sequence[str] | None = None) -> int:
    configure_logging(stream=sys.stderr)
    args = _build_parser().parse_args(argv)
    settings = get_settings()

    engine = create_engine(args.database_url or settings.database_url, future=True)
    Base.metadata.create_all(bind=engine)
    try:
        with Session(engine) as session:
            services = build_services(
                SqlDocumentStore(session),
                SqlIdentityProvider(session),
                CrmConfig.from_settings(settings),
            )
            try:
                return _COMMANDS[args.command](services, args)
            except CrmError as exc:
                logger.error("cli.command_failed", extra={"error": str(exc)})
                print(str(exc), file=sys.stderr)
                return 1
    finally:
        engine.dispose()


if __name__ == "__main__":
    raise SystemExit(main())
