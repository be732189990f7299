from __future__ import annotations

import argparse
import sys
from typing import Any, Dict, Sequence

from stackweave import __version__
from stackweave.config.settings import load_settings
from stackweave.logging import configure_logging
from stackweave.providers import list_providers


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("stack_file", help="Path to stack YAML file")
    parser.add_argument("--state-file", help="State file (default: $STACKWEAVE_STATE_FILE or ./stackweave.state.json)")
    parser.add_argument(
        "--provider",
        default="local",
        choices=[spec.name for spec in list_providers()],
        help="Provider backend",
    )
    parser.add_argument("--output", choices=["text", "json"], default="text", help="Output format")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show detailed information")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="stackweave", description="Declarative resource orchestration")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--log-level", help="Log level (default: $STACKWEAVE_LOG_LEVEL or INFO)")
    subparsers = parser.add_subparsers(dest="command")

    plan_parser = subparsers.add_parser("plan", help="Show the graph and the actions an apply would take")
    _add_common_arguments(plan_parser)

    apply_parser = subparsers.add_parser("apply", help="Create or update resources in dependency order")
    _add_common_arguments(apply_parser)
    apply_parser.add_argument("--dry-run", action="store_true", help="Preview without applying")
    apply_parser.add_argument("--concurrency", type=int, help="Maximum resources applied at once")
    apply_parser.add_argument("--fail-fast", action="store_true", default=None, help="Stop dispatching after the first failure")

    destroy_parser = subparsers.add_parser("destroy", help="Delete resources, dependents first")
    _add_common_arguments(destroy_parser)

    return parser


def _overrides(args: argparse.Namespace) -> Dict[str, Any]:
    return {
        "state_file": args.state_file,
        "concurrency": getattr(args, "concurrency", None),
        "fail_fast": getattr(args, "fail_fast", None),
    }


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    configure_logging(args.log_level or load_settings().log_level)

    if args.command == "plan":
        from stackweave.cli.plan import plan_command

        sys.exit(plan_command(
            args.stack_file,
            output_format=args.output,
            verbose=args.verbose,
            provider=args.provider,
            overrides=_overrides(args),
        ))

    if args.command == "apply":
        from stackweave.cli.apply import apply_command

        sys.exit(apply_command(
            args.stack_file,
            dry_run=args.dry_run,
            verbose=args.verbose,
            output_format=args.output,
            provider=args.provider,
            overrides=_overrides(args),
        ))

    if args.command == "destroy":
        from stackweave.cli.destroy import destroy_command

        sys.exit(destroy_command(
            args.stack_file,
            output_format=args.output,
            provider=args.provider,
            overrides=_overrides(args),
        ))


if __name__ == "__main__":  # pragma: no cover
    main()
