"""Command-line interface for the users service."""

from __future__ import annotations
import argparse
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Sequence

from pydantic import ValidationError

from usersvc.config import ConfigurationError, Settings, load_settings
from usersvc.database import Database, DatabaseError, UserConflictError

logger = logging.getLogger("usersvc.main")

KNOWN_COMMANDS = {"serve", "init-db", "list-users", "add-user"}


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        default=None,
        help="Path to a YAML configuration file (defaults to USERSVC_CONFIG)",
    )
    common.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy connection string (defaults to USERSVC_DATABASE_URL)",
    )

    parser = argparse.ArgumentParser(description="Users service utilities")
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    serve_parser = subparsers.add_parser(
        "serve", parents=[common], help="Start the HTTP users service"
    )
    serve_parser.add_argument("--host", default=None, help="Bind address (default: 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, default=None, help="Listen port (default: 3000)")

    subparsers.add_parser("init-db", parents=[common], help="Create the users table and exit")
    subparsers.add_parser("list-users", parents=[common], help="Print every stored user")

    add_parser = subparsers.add_parser("add-user", parents=[common], help="Insert a new user")
    add_parser.add_argument("name", help="Display name for the user")
    add_parser.add_argument("email", help="Unique email address")

    args_list = list(argv) if argv is not None else sys.argv[1:]

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in KNOWN_COMMANDS:
            args_list = ["serve", *args_list]

    return parser.parse_args(args_list)


def _resolve_settings(args: argparse.Namespace) -> Settings:
    config_path = Path(args.config).expanduser() if getattr(args, "config", None) else None

    overrides = {}
    if getattr(args, "database_url", None):
        overrides["database_url"] = args.database_url
    if getattr(args, "host", None):
        overrides["host"] = args.host
    if getattr(args, "port", None) is not None:
        overrides["port"] = args.port

    try:
        settings = load_settings(config_path)
        return replace(settings, **overrides) if overrides else settings
    except ConfigurationError as exc:
        raise SystemExit(f"Invalid configuration: {exc}") from exc


def _initialise_database(database: Database) -> None:
    database.initialize()
    logger.info("Database schema initialized at %s", database.url)


def _serve(settings: Settings, database: Database) -> None:
    from usersvc.api import create_app
    import uvicorn

    logger.info("Starting users service on http://%s:%s", settings.host, settings.port)

    app = create_app(database=database, settings=settings)
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
        lifespan="on",
    )


def _list_users(database: Database) -> None:
    users = database.list_users()
    if not users:
        print("No users are currently registered.")
        return

    print(f"{len(users)} user(s) found:")
    print(f"{'ID':>4}  {'Name':<24}  {'Email':<32}  Created")
    print("-" * 80)
    for user in users:
        created = user.created_at.strftime("%Y-%m-%d %H:%M:%S") if user.created_at else "-"
        print(f"{user.id:>4}  {user.name:<24}  {user.email:<32}  {created}")


def _add_user(database: Database, name: str, email: str) -> int:
    from usersvc.api import CreateUserRequest

    try:
        payload = CreateUserRequest(name=name.strip(), email=email.strip())
    except ValidationError as exc:
        print(f"Invalid user details: {exc.errors()[0]['msg']}", file=sys.stderr)
        return 1

    try:
        user = database.create_user(payload.name, payload.email)
    except UserConflictError as exc:
        print(f"Failed to create user: {exc}", file=sys.stderr)
        return 1

    print(f"Created user #{user.id}: {user.name} <{user.email}>")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for CLI usage."""

    args = _parse_args(argv)
    settings = _resolve_settings(args)

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
    )

    try:
        database = Database(settings.database_url, pool=settings.pool)
    except DatabaseError as exc:
        logger.error("%s", exc)
        return 1

    try:
        if args.command == "serve":
            _serve(settings, database)
            return 0

        _initialise_database(database)
        if args.command == "init-db":
            print("Database initialisation complete.")
            return 0
        if args.command == "list-users":
            _list_users(database)
            return 0
        return _add_user(database, args.name, args.email)
    except DatabaseError as exc:
        logger.error("%s", exc)
        return 1
    finally:
        database.dispose()


if __name__ == "__main__":
    raise SystemExit(main())
