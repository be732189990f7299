"""Core modules for Stackweave - centralized error definitions."""

from stackweave.core.errors import (
    CancelledError,
    ConfigurationError,
    CycleError,
    DependencyError,
    DuplicateNodeError,
    ExitCode,
    GateRejectedError,
    GateTimeoutError,
    PermanentProviderError,
    ProviderError,
    ResourceNotFoundError,
    RetryableProviderError,
    RoutingConflictError,
    StackParseError,
    StackweaveError,
    ValidationError,
    format_error_message,
    main_with_error_handling,
)

__all__ = [
    "ExitCode",
    "StackweaveError",
    "ConfigurationError",
    "StackParseError",
    "ValidationError",
    "DuplicateNodeError",
    "CycleError",
    "RoutingConflictError",
    "ProviderError",
    "RetryableProviderError",
    "PermanentProviderError",
    "ResourceNotFoundError",
    "DependencyError",
    "GateTimeoutError",
    "GateRejectedError",
    "CancelledError",
    "main_with_error_handling",
    "format_error_message",
]
