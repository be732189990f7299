"""
CLI command for applying a stack.
"""

import asyncio
import json
import signal
from pathlib import Path
from typing import Any, Dict, Optional

from rich.markup import escape

from stackweave.cli.plan import plan_command
from stackweave.cli.ux import console, print_key_value
from stackweave.core.errors import main_with_error_handling
from stackweave.orchestration.graph import NodeStatus
from stackweave.orchestration.results import ApplyReport, NodeReport
from stackweave.orchestration.scheduler import CancellationToken
from stackweave.orchestrator import StackOrchestrator


def _node_line(report: NodeReport) -> str:
    if report.status is NodeStatus.APPLIED:
        detail = "unchanged" if report.skipped else f"applied ({report.attempts} attempt(s))"
        return f"  [green]✓ {report.node_id:<28}[/green] {detail}"
    if report.timed_out:
        return f"  [yellow]⏳ {report.node_id:<27}[/yellow] awaiting external confirmation"
    if report.blocked_by:
        return f"  [yellow]… {report.node_id:<28}[/yellow] blocked by {report.blocked_by}"
    if report.status is NodeStatus.PENDING:
        return f"  [dim]- {report.node_id:<28}[/dim] not started"
    return f"  [red]✗ {report.node_id:<28}[/red] {escape(report.error or 'failed')}"


def print_apply_summary(result: ApplyReport, verbose: bool = False) -> None:
    """Print apply summary with rich formatting."""
    console.print()

    for report in sorted(result.nodes.values(), key=lambda r: r.node_id):
        if report.skipped and not verbose:
            continue
        console.print(_node_line(report))

    console.print()
    duration = f" in {result.duration_seconds:.1f}s" if result.duration_seconds > 0 else ""
    applied = len(result.applied)
    if result.success:
        console.print(
            f"[bold green]Applied {applied} resources{duration}[/bold green] "
            f"({len(result.skipped)} unchanged)"
        )
    elif result.timed_out and result.exit_code == 2:
        console.print(
            f"[bold yellow]Applied {applied}/{len(result.nodes)} resources{duration}; "
            f"waiting on external confirmation[/bold yellow]"
        )
        console.print("[muted]Re-run apply once the confirmation has propagated.[/muted]")
    else:
        state = "cancelled" if result.cancelled else "with errors"
        console.print(
            f"[bold red]Applied {applied}/{len(result.nodes)} resources {state}{duration}[/bold red]"
        )

    if result.exports:
        print_key_value({name: str(value) for name, value in result.exports.items()}, title="Exports")
    console.print()


def print_apply_json(result: ApplyReport) -> None:
    """Print apply result in JSON format."""
    print(json.dumps(result.to_dict(), indent=2, default=str))


async def _run_apply(orchestrator: StackOrchestrator) -> ApplyReport:
    token: CancellationToken = orchestrator.cancel_token
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel, "interrupted")
    except (NotImplementedError, RuntimeError):
        pass  # No loop signal handlers on this platform; Ctrl-C raises KeyboardInterrupt
    try:
        return await orchestrator.apply()
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass


@main_with_error_handling()
def apply_command(
    stack_file: str,
    dry_run: bool = False,
    verbose: bool = False,
    output_format: str = "text",
    provider: str = "local",
    overrides: Optional[Dict[str, Any]] = None,
) -> int:
    """
    Apply a stack.

    Args:
        stack_file: Path to stack YAML file
        dry_run: Preview without applying (same as plan)
        verbose: Also list unchanged resources
        output_format: Output format (text, json)
        provider: Provider backend name
        overrides: Settings overrides from the command line

    Returns:
        Exit code (0 all applied, 1 any failed, 2 awaiting external confirmation)
    """
    if dry_run:
        return plan_command(
            stack_file, output_format=output_format, verbose=verbose, provider=provider, overrides=overrides
        )

    orchestrator = StackOrchestrator(Path(stack_file), provider=provider, overrides=overrides)
    result = asyncio.run(_run_apply(orchestrator))

    if output_format == "json":
        print_apply_json(result)
    else:
        print_apply_summary(result, verbose=verbose)

    return int(result.exit_code)
