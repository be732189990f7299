"""
CLI command for tearing a stack down.
"""

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, Optional

from rich.markup import escape

from stackweave.cli.ux import console
from stackweave.core.errors import main_with_error_handling
from stackweave.orchestration.results import DestroyReport
from stackweave.orchestrator import StackOrchestrator


def print_destroy_summary(result: DestroyReport) -> None:
    console.print()
    for node_id in result.deleted:
        console.print(f"  [green]✓ {node_id:<28}[/green] deleted")
    for node_id in result.absent:
        console.print(f"  [dim]- {node_id:<28}[/dim] already gone")
    for node_id, reason in result.failed.items():
        console.print(f"  [red]✗ {node_id:<28}[/red] {escape(reason)}")
    for node_id, reason in result.blocked.items():
        console.print(f"  [yellow]… {node_id:<28}[/yellow] {escape(reason)}")

    console.print()
    removed = len(result.deleted) + len(result.absent)
    if result.success:
        console.print(f"[bold green]Destroyed {removed} resources[/bold green]")
    else:
        console.print(
            f"[bold red]Destroyed {removed} resources; "
            f"{len(result.failed) + len(result.blocked)} remain[/bold red]"
        )
    console.print()


@main_with_error_handling()
def destroy_command(
    stack_file: str,
    output_format: str = "text",
    provider: str = "local",
    overrides: Optional[Dict[str, Any]] = None,
) -> int:
    """
    Delete every resource recorded for a stack, dependents first.

    Returns:
        Exit code (0 when everything is gone, 1 otherwise)
    """
    orchestrator = StackOrchestrator(Path(stack_file), provider=provider, overrides=overrides)
    result = asyncio.run(orchestrator.destroy())

    if output_format == "json":
        print(json.dumps(result.to_dict(), indent=2))
    else:
        print_destroy_summary(result)

    return int(result.exit_code)
