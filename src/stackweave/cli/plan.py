"""
CLI command for planning (dry-run) a stack.
"""

import json
from pathlib import Path
from typing import Any, Dict, Optional

from rich.markup import escape

from stackweave.cli.ux import console, error, header, warning
from stackweave.core.errors import ExitCode, main_with_error_handling
from stackweave.orchestration.results import PlanResult
from stackweave.orchestrator import StackOrchestrator

ACTION_STYLES = {
    "create": ("success", "+"),
    "update": ("warning", "~"),
    "secret-rotation": ("orange", "↻"),
    "no-op": ("muted", "="),
}


def print_plan_summary(plan: PlanResult, verbose: bool = False) -> None:
    """Print plan summary."""
    header(f"Plan: {plan.stack}")
    console.print()

    if plan.errors:
        error("Errors:")
        for err in plan.errors:
            console.print(f"   [error]•[/error] {escape(err)}")
        console.print()
        return

    for change in plan.changes:
        if change.action == "no-op" and not verbose:
            continue
        style, marker = ACTION_STYLES[change.action]
        line = f"  [{style}]{marker} {change.node_id}[/{style}] [muted]({change.type})[/muted]"
        if change.changed_keys:
            line += f"  changed: {', '.join(change.changed_keys)}"
        if change.reason:
            line += f"  [muted]{escape(change.reason)}[/muted]"
        console.print(line)
        if verbose and change.depends_on:
            console.print(f"     [muted]└ after {', '.join(change.depends_on)}[/muted]")

    for message in plan.warnings:
        warning(message)

    console.print()
    console.print(
        f"[bold]Plan:[/bold] {plan.count('create')} to create, "
        f"{plan.count('update')} to update, "
        f"{plan.count('secret-rotation')} to redeploy for rotated secrets, "
        f"{plan.count('no-op')} unchanged"
    )
    if plan.has_changes:
        console.print()
        console.print("[muted]To apply these changes, run:[/muted]")
        console.print(f"  [info]stackweave apply {plan.stack_file}[/info]")
    console.print()


def print_plan_json(plan: PlanResult) -> None:
    """Print plan in JSON format."""
    print(json.dumps(plan.to_dict(), indent=2, default=str))


@main_with_error_handling()
def plan_command(
    stack_file: str,
    output_format: str = "text",
    verbose: bool = False,
    provider: str = "local",
    overrides: Optional[Dict[str, Any]] = None,
) -> int:
    """
    Preview the actions an apply would take (dry-run).

    Args:
        stack_file: Path to stack YAML file
        output_format: Output format (text, json)
        verbose: Also list unchanged resources and their dependencies
        provider: Provider backend name
        overrides: Settings overrides from the command line

    Returns:
        Exit code (0 for success, 12 for validation failure)
    """
    orchestrator = StackOrchestrator(Path(stack_file), provider=provider, overrides=overrides)
    result = orchestrator.plan()

    if output_format == "json":
        print_plan_json(result)
    else:
        print_plan_summary(result, verbose=verbose)

    return int(ExitCode.SUCCESS) if result.success else int(ExitCode.VALIDATION_ERROR)
