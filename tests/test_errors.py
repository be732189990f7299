"""Tests for the error taxonomy and CLI error handling."""

import pytest
from stackweave.core.errors import (
    ConfigurationError,
    CycleError,
    DependencyError,
    ExitCode,
    GateRejectedError,
    GateTimeoutError,
    PermanentProviderError,
    ResourceNotFoundError,
    RetryableProviderError,
    StackParseError,
    format_error_message,
    main_with_error_handling,
)


class TestTaxonomy:
    def test_exit_codes(self):
        assert ConfigurationError("x").exit_code == ExitCode.CONFIG_ERROR
        assert StackParseError("x").exit_code == ExitCode.CONFIG_ERROR
        assert CycleError(["a", "b", "a"]).exit_code == ExitCode.VALIDATION_ERROR
        assert RetryableProviderError("x").exit_code == ExitCode.PROVIDER_ERROR
        assert GateTimeoutError("x").exit_code == ExitCode.AWAITING_EXTERNAL
        assert DependencyError("b", "a").exit_code == ExitCode.FAILED

    def test_retryability(self):
        assert RetryableProviderError("x").retryable
        assert not PermanentProviderError("x").retryable
        assert isinstance(ResourceNotFoundError("x"), PermanentProviderError)
        assert isinstance(GateRejectedError("x"), PermanentProviderError)

    def test_cycle_message_lists_path(self):
        error = CycleError(["a", "b", "c", "a"])
        assert error.message == "Dependency cycle detected: a → b → c → a"
        assert error.nodes == {"a", "b", "c"}

    def test_dependency_error_names_upstream(self):
        error = DependencyError("record", "zone")
        assert error.upstream == "zone"
        assert "record not attempted" in error.message


class TestFormatErrorMessage:
    def test_without_details(self):
        assert format_error_message(ConfigurationError("bad config")) == "bad config"

    def test_with_details(self):
        error = ConfigurationError("bad config", {"file": "stack.yaml", "line": 3})
        assert format_error_message(error) == "bad config (file=stack.yaml, line=3)"


class TestMainWithErrorHandling:
    def test_success_passes_through(self):
        @main_with_error_handling()
        def command():
            return 0

        assert command() == 0

    @pytest.mark.parametrize(
        "error,expected",
        [
            (ConfigurationError("missing"), 10),
            (PermanentProviderError("denied"), 11),
            (CycleError(["a", "a"]), 12),
        ],
    )
    def test_stackweave_errors_map_to_exit_codes(self, error, expected, capsys):
        @main_with_error_handling()
        def command():
            raise error

        assert command() == expected
        assert error.message in capsys.readouterr().err

    def test_keyboard_interrupt(self):
        @main_with_error_handling()
        def command():
            raise KeyboardInterrupt

        assert command() == 130

    def test_unexpected_exception(self):
        @main_with_error_handling(log_errors=False)
        def command():
            raise RuntimeError("boom")

        assert command() == ExitCode.UNKNOWN_ERROR
