"""
Stagecraft command line.

    stagecraft deploy a --infraprofile P --targetprofile P --prefix X --region R --vpc V
    stagecraft deploy b --domains example.com www.example.com
    stagecraft deploy c
    stagecraft deploy d
    stagecraft deploy e
    stagecraft rollback b --mode full --fallback
    stagecraft status a
"""

from __future__ import annotations

import argparse
import sys
from typing import Sequence

from stagecraft import __version__
from stagecraft.cli.context import ContextFactory, load_settings
from stagecraft.cli.ux import confirmation, error
from stagecraft.config.loader import load_defaults
from stagecraft.core.errors import ConfigurationError, ExitCode, format_error_message
from stagecraft.logging import configure_logging
from stagecraft.orchestration.rollback import RollbackMode

STAGE_LETTERS = ("a", "b", "c", "d", "e")


def _add_yes(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--yes",
        "-y",
        action="store_true",
        help="Answer yes to conflict and fallback confirmations",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stagecraft",
        description="Staged provisioning of a static site, its certificate and its API",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level for structured logs (default: WARNING)",
    )
    parser.add_argument("--log-json", action="store_true", help="Emit logs as JSON")
    parser.add_argument("--config", help="Defaults file (default: .stagecraft/config.yaml)")
    parser.add_argument("--data-dir", help="Artifact directory (default: $STAGECRAFT_DATA_DIR)")

    subparsers = parser.add_subparsers(dest="command")

    deploy_parser = subparsers.add_parser(
        "deploy", help="Deploy a stage (resumes where it left off)"
    )
    deploy_stages = deploy_parser.add_subparsers(dest="stage")

    stage_a = deploy_stages.add_parser("a", help="Static content distribution")
    stage_a.add_argument("--infraprofile", help="Credential profile for the infrastructure account")
    stage_a.add_argument("--targetprofile", help="Credential profile for the target account")
    stage_a.add_argument("--prefix", help="Kebab-case resource name prefix")
    stage_a.add_argument("--region", help="Target region (e.g. us-east-1)")
    stage_a.add_argument("--vpc", help="Target VPC id")
    _add_yes(stage_a)

    stage_b = deploy_stages.add_parser("b", help="TLS certificate and custom domains")
    stage_b.add_argument("--domains", nargs="+", help="Custom domain names for the distribution")
    _add_yes(stage_b)

    stage_c = deploy_stages.add_parser("c", help="Serverless API function")
    _add_yes(stage_c)

    stage_d = deploy_stages.add_parser("d", help="Single-page application")
    _add_yes(stage_d)

    stage_e = deploy_stages.add_parser("e", help="Route /api/* to the function")
    _add_yes(stage_e)

    rollback_parser = subparsers.add_parser("rollback", help="Roll back a stage")
    rollback_parser.add_argument("stage", choices=STAGE_LETTERS)
    rollback_parser.add_argument(
        "--mode",
        default=RollbackMode.FULL.value,
        choices=[mode.value for mode in RollbackMode],
        help=(
            "full (default), resources-only (keep inputs, mark not ready) "
            "or data-only (artifacts only)"
        ),
    )
    rollback_parser.add_argument(
        "--fallback",
        action="store_true",
        help="Offer a full rollback of the previous stage if this one cannot finish",
    )
    _add_yes(rollback_parser)

    status_parser = subparsers.add_parser("status", help="Show a stage's progress")
    status_parser.add_argument("stage", choices=STAGE_LETTERS)

    return parser


def run(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None or (args.command == "deploy" and args.stage is None):
        parser.print_help()
        return int(ExitCode.CONFIG_ERROR)

    configure_logging(args.log_level, json_output=args.log_json)

    try:
        settings = load_settings(args.data_dir)
        defaults = load_defaults(args.config)
    except ConfigurationError as exc:
        error(format_error_message(exc))
        return int(exc.exit_code)

    factory = ContextFactory(settings, confirm=confirmation(getattr(args, "yes", False)))

    if args.command == "deploy":
        from stagecraft.cli.deploy import deploy_command

        return deploy_command(args.stage, vars(args), factory=factory, defaults=defaults)

    if args.command == "rollback":
        from stagecraft.cli.rollback import rollback_command

        return rollback_command(
            args.stage, factory=factory, mode=args.mode, fallback=args.fallback
        )

    from stagecraft.cli.status import status_command

    return status_command(args.stage, factory=factory)


def main(argv: Sequence[str] | None = None) -> None:
    sys.exit(run(argv))


if __name__ == "__main__":
    main()
