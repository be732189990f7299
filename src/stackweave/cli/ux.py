"""
CLI UX utilities built on rich.

Environment handling:
- Automatically detects TTY vs pipe/CI
- Respects NO_COLOR and FORCE_COLOR environment variables
- Falls back to plain text in non-interactive environments
"""

from __future__ import annotations

import os
import sys

from rich.console import Console
from rich.panel import Panel
from rich.theme import Theme

# Nord color palette (https://www.nordtheme.com/)
STACKWEAVE_THEME = Theme(
    {
        "info": "#88C0D0",  # Nord frost - light blue
        "success": "#A3BE8C",  # Nord aurora - green
        "warning": "#EBCB8B",  # Nord aurora - yellow
        "error": "#BF616A bold",  # Nord aurora - red
        "highlight": "#B48EAD",  # Nord aurora - purple
        "muted": "#D8DEE9",  # Nord snow storm - light grey
        "frost": "#81A1C1",  # Nord frost - blue
        "orange": "#D08770",  # Nord aurora - orange
    }
)


def _is_interactive() -> bool:
    """Check if we're in an interactive terminal environment."""
    ci_vars = ["CI", "GITHUB_ACTIONS", "JENKINS_URL", "GITLAB_CI", "CIRCLECI", "TRAVIS"]
    if any(os.environ.get(var) for var in ci_vars):
        return False
    return sys.stdout.isatty()


console = Console(
    theme=STACKWEAVE_THEME,
    force_terminal=os.environ.get("FORCE_COLOR") is not None,
    no_color=os.environ.get("NO_COLOR") is not None,
)

# Errors go to stderr so JSON on stdout stays parseable
error_console = Console(
    theme=STACKWEAVE_THEME,
    stderr=True,
    no_color=os.environ.get("NO_COLOR") is not None,
)


def error(message: str) -> None:
    """Print an error message."""
    error_console.print(f"[error]✗ {message}[/error]")


def warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[warning]⚠ {message}[/warning]")


def header(title: str) -> None:
    """Print a section header."""
    console.print()
    if _is_interactive():
        console.print(Panel(f"[bold]{title}[/bold]", border_style="cyan"))
    else:
        console.print(f"[bold]{title}[/bold]")


def print_key_value(items: dict[str, str], title: str | None = None) -> None:
    """Print key-value pairs in a nice format."""
    if title:
        console.print(f"\n[bold]{title}[/bold]")

    for key, value in items.items():
        console.print(f"  [cyan]{key}:[/cyan] {value}")
