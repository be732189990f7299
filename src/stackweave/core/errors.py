"""
Unified error handling for Stackweave.

This module provides the error taxonomy shared by the orchestration core
and the standardized exit codes used by the CLI commands.

Exit Codes:
- 0: Success (every node applied)
- 1: Failed (at least one node failed, or the apply was cancelled)
- 2: Awaiting external action (a gate timed out; dependents are blocked)
- 10: Configuration error
- 11: Provider error (external service failure)
- 12: Validation error
- 127: Unknown/internal error
"""

from __future__ import annotations

import functools
import sys
import traceback
from enum import IntEnum
from typing import Any, Callable, Sequence, TypeVar

import structlog

logger = structlog.get_logger()


class ExitCode(IntEnum):
    """Standardized exit codes for CLI commands."""

    SUCCESS = 0
    FAILED = 1
    AWAITING_EXTERNAL = 2
    CONFIG_ERROR = 10
    PROVIDER_ERROR = 11
    VALIDATION_ERROR = 12
    UNKNOWN_ERROR = 127


class StackweaveError(Exception):
    """Base exception for Stackweave errors with exit code support."""

    exit_code: ExitCode = ExitCode.UNKNOWN_ERROR
    show_traceback: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(StackweaveError):
    """Raised for configuration-related errors."""

    exit_code = ExitCode.CONFIG_ERROR


class StackParseError(ConfigurationError):
    """Raised when a stack file cannot be parsed into declarations."""


class ValidationError(StackweaveError):
    """Raised when the declared graph fails validation before any apply."""

    exit_code = ExitCode.VALIDATION_ERROR


class DuplicateNodeError(ValidationError):
    """Raised when two declarations share the same node id."""

    def __init__(self, node_id: str):
        super().__init__(f"Duplicate resource id: {node_id}", {"node_id": node_id})
        self.node_id = node_id


class CycleError(ValidationError):
    """Raised when the dependency graph contains a cycle.

    ``path`` lists every node on the cycle, starting and ending with the same id.
    """

    def __init__(self, path: Sequence[str]):
        self.path = list(path)
        cycle_str = " → ".join(self.path)
        super().__init__(f"Dependency cycle detected: {cycle_str}", {"cycle": cycle_str})

    @property
    def nodes(self) -> set[str]:
        return set(self.path)


class RoutingConflictError(ValidationError):
    """Raised when two routing rules with overlapping hosts share a priority."""


class ProviderError(StackweaveError):
    """Raised when an external provider/service fails."""

    exit_code = ExitCode.PROVIDER_ERROR
    retryable: bool = False


class RetryableProviderError(ProviderError):
    """Transient provider fault (throttling, network). Retried with backoff."""

    retryable = True


class PermanentProviderError(ProviderError):
    """Provider rejected the request (invalid state, authorization). Never retried."""


class ResourceNotFoundError(PermanentProviderError):
    """Raised by providers when a physical resource no longer exists."""


class DependencyError(StackweaveError):
    """A node was not attempted because a prerequisite failed."""

    exit_code = ExitCode.FAILED

    def __init__(self, node_id: str, upstream: str):
        super().__init__(
            f"{node_id} not attempted: dependency {upstream} did not apply",
            {"node_id": node_id, "upstream": upstream},
        )
        self.node_id = node_id
        self.upstream = upstream


class GateTimeoutError(StackweaveError):
    """A confirmation gate did not reach Confirmed before its deadline."""

    exit_code = ExitCode.AWAITING_EXTERNAL


class GateRejectedError(PermanentProviderError):
    """The provider explicitly rejected a gated resource."""


class CancelledError(StackweaveError):
    """The apply was cancelled before this node was started."""

    exit_code = ExitCode.FAILED


# Type variable for decorated functions
F = TypeVar("F", bound=Callable[..., int])


def main_with_error_handling(
    *,
    show_traceback: bool = False,
    log_errors: bool = True,
) -> Callable[[F], F]:
    """
    Decorator for CLI command functions that provides unified error handling.

    Catches exceptions and converts them to appropriate exit codes with
    consistent error reporting.

    Args:
        show_traceback: If True, show full traceback for unexpected errors
        log_errors: If True, log errors to structlog

    Exit codes:
        - StackweaveError subclasses: Uses the error's exit_code
        - KeyboardInterrupt: Returns 130 (standard for SIGINT)
        - Other exceptions: Returns 127 (unknown error)
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> int:
            try:
                return func(*args, **kwargs)
            except StackweaveError as e:
                if log_errors:
                    logger.error(
                        "command_error",
                        error_type=type(e).__name__,
                        message=e.message,
                        exit_code=int(e.exit_code),
                        **e.details,
                    )
                from stackweave.cli.ux import error as print_error

                print_error(format_error_message(e))
                if e.show_traceback or show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return int(e.exit_code)
            except KeyboardInterrupt:
                if log_errors:
                    logger.info("command_interrupted")
                return 130  # Standard exit code for SIGINT
            except Exception as e:
                if log_errors:
                    logger.error(
                        "unexpected_error",
                        error_type=type(e).__name__,
                        message=str(e),
                        exit_code=int(ExitCode.UNKNOWN_ERROR),
                    )
                if show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return int(ExitCode.UNKNOWN_ERROR)

        return wrapper  # type: ignore[return-value]

    return decorator


def format_error_message(error: StackweaveError) -> str:
    """Format an error message for display to users."""
    msg = error.message
    if error.details:
        detail_str = ", ".join(f"{k}={v}" for k, v in error.details.items())
        msg = f"{msg} ({detail_str})"
    return msg
