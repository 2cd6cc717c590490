"""
Operator CLI for the progression engine

    python -m ceplatform.cli db init
    python -m ceplatform.cli db verify --enrollment-id 42
    python -m ceplatform.cli policy show -j FL

Settings come from the environment (DATABASE_URL, FL_*, DEFAULT_*) or from
the file given with --env-file.
"""
import sys
import argparse
import logging
from typing import List, Optional

from ceplatform.cli.db_commands import DbCommand
from ceplatform.cli.policy_commands import PolicyCommand
from ceplatform.config.settings import load_settings

COMMANDS = {
    "db": DbCommand,
    "policy": PolicyCommand,
}

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper()), format=LOG_FORMAT)


def _add_db_commands(subparsers) -> None:
    db = subparsers.add_parser("db", help="Schema and data checks")
    actions = db.add_subparsers(dest="db_action")
    actions.add_parser("init", help="Create tables for every mapped model")
    verify = actions.add_parser("verify", help="Run the integrity report for one enrollment")
    verify.add_argument("--enrollment-id", type=int, required=True)


def _add_policy_commands(subparsers) -> None:
    policy = subparsers.add_parser("policy", help="Retake rules per jurisdiction")
    actions = policy.add_subparsers(dest="policy_action")
    show = actions.add_parser("show", help="Print the resolved policy as JSON")
    show.add_argument("-j", "--jurisdiction", default=None, help="two-letter state code")


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ceplatform",
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version="%(prog)s 1.0.0")
    parser.add_argument(
        "--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"]
    )
    parser.add_argument("--env-file", default=None, help="read settings from a dotenv file")
    parser.add_argument(
        "--dry-run", action="store_true", help="report intended changes and leave the database alone"
    )

    subparsers = parser.add_subparsers(dest="command")
    _add_db_commands(subparsers)
    _add_policy_commands(subparsers)
    return parser


def main(args: Optional[List[str]] = None) -> int:
    parser = create_parser()
    parsed = parser.parse_args(args)

    command_cls = COMMANDS.get(parsed.command)
    if command_cls is None:
        parser.print_help()
        return 1

    setup_logging(parsed.log_level)
    settings = load_settings(parsed.env_file)
    return command_cls(settings, dry_run=parsed.dry_run).execute(parsed)


if __name__ == "__main__":
    sys.exit(main())
