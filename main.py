"""
ProfileHub Command-Line Entry Point.

Builds the dependency graph via constructor injection, initialises the
local SQLite schema and runs one command.  No module-level globals.

Usage::

    python main.py migrate
    python main.py resolve <account_id>
    python main.py bootstrap <account_id> <email> [--name NAME] [--profile-name NAME]
    python main.py sync
"""

from __future__ import annotations

import argparse
import atexit
import json
import sys
from typing import Optional

from profilehub.auth import SessionManager
from profilehub.config import AppConfig, get_config
from profilehub.database import DatabaseManager
from profilehub.logger import StructuredLogger, get_logger
from profilehub.schema import initialize_schema
from profilehub.services import ServiceContainer, create_services


def _build(config: AppConfig, elevated: bool) -> tuple[DatabaseManager, ServiceContainer]:
    key = (
        config.SUPABASE_SERVICE_ROLE_KEY.get_secret_value()
        if elevated
        else config.SUPABASE_ANON_KEY.get_secret_value()
    )
    db = DatabaseManager(
        supabase_url=config.SUPABASE_URL,
        supabase_key=key,
        sqlite_path=config.SQLITE_PATH,
        logger=StructuredLogger(name="database"),
    )
    # close() is idempotent; this covers exits that skip the finally below.
    atexit.register(db.close)

    initialize_schema(db.sqlite, StructuredLogger(name="schema"))
    services = create_services(db=db, config=config, session=SessionManager())
    return db, services


def _cmd_migrate(services: ServiceContainer, _args: argparse.Namespace) -> int:
    report = services["migration"].run()
    print(report.model_dump_json(indent=2))
    return 0 if report.complete else 2


def _cmd_resolve(services: ServiceContainer, args: argparse.Namespace) -> int:
    state = services["session_synchronizer"].resolve(args.account_id)
    print(json.dumps(
        {
            "account_id": args.account_id,
            "active_profile": (
                state.active_profile.model_dump(mode="json") if state.active_profile else None
            ),
            "source": state.source,
            "is_degraded": state.is_degraded,
            "error": state.error,
        },
        indent=2,
    ))
    return 1 if state.is_degraded else 0


def _cmd_bootstrap(services: ServiceContainer, args: argparse.Namespace) -> int:
    metadata = {"initial_profile_name": args.profile_name} if args.profile_name else None
    result = services["account_bootstrap"].ensure_provisioned(
        args.account_id, args.email, args.name or "", metadata,
    )
    print(result.model_dump_json(indent=2))
    return 0


def _cmd_sync(services: ServiceContainer, _args: argparse.Namespace) -> int:
    synced = services["sync_worker"].sync_now()
    print(f"{synced} queued write(s) synced")
    return 0


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="profilehub", description=__doc__.split("\n\n")[0])
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("migrate", help="move every account onto normalized profiles")

    resolve = commands.add_parser("resolve", help="print the active profile of an account")
    resolve.add_argument("account_id")

    bootstrap = commands.add_parser("bootstrap", help="provision an account and its first profile")
    bootstrap.add_argument("account_id")
    bootstrap.add_argument("email")
    bootstrap.add_argument("--name", default="")
    bootstrap.add_argument("--profile-name", default=None)

    commands.add_parser("sync", help="push queued local writes to Supabase once")
    return parser


_COMMANDS = {
    "migrate": _cmd_migrate,
    "resolve": _cmd_resolve,
    "bootstrap": _cmd_bootstrap,
    "sync": _cmd_sync,
}


def main(argv: Optional[list[str]] = None) -> int:
    """Parse *argv*, run the command and return its exit code."""
    args = _parser().parse_args(argv)
    logger: StructuredLogger = get_logger("main")
    config = get_config()

    elevated = args.command == "migrate"
    if elevated:
        config.validate_service_role()

    db, services = _build(config, elevated)
    try:
        logger.info("Running command: %s", args.command)
        return _COMMANDS[args.command](services, args)
    finally:
        db.close()


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        sys.exit(130)
    except Exception as exc:
        sys.stderr.write(f"FATAL: {type(exc).__name__}: {exc}\n")
        sys.exit(1)
