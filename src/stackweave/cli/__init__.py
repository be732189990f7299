"""CLI commands: plan, apply, destroy."""

from stackweave.cli.apply import apply_command
from stackweave.cli.destroy import destroy_command
from stackweave.cli.plan import plan_command

__all__ = ["apply_command", "destroy_command", "plan_command"]
