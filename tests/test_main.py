"""Tests for the command-line entry point."""

from unittest.mock import patch

import pytest
from stackweave.main import _overrides, build_parser, main


class TestBuildParser:
    def test_apply_options(self):
        args = build_parser().parse_args(
            ["apply", "stack.yaml", "--concurrency", "2", "--fail-fast", "--output", "json", "--state-file", "s.json"]
        )
        assert args.command == "apply"
        assert args.stack_file == "stack.yaml"
        assert args.output == "json"
        assert _overrides(args) == {"state_file": "s.json", "concurrency": 2, "fail_fast": True}

    def test_unset_flags_do_not_override(self):
        args = build_parser().parse_args(["apply", "stack.yaml"])
        assert _overrides(args) == {"state_file": None, "concurrency": None, "fail_fast": None}

    def test_plan_has_no_apply_flags(self):
        args = build_parser().parse_args(["plan", "stack.yaml", "-v"])
        assert args.verbose is True
        assert _overrides(args)["concurrency"] is None

    def test_unknown_provider_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["plan", "stack.yaml", "--provider", "nope"])


class TestMain:
    def test_no_command_prints_help(self, capsys):
        with pytest.raises(SystemExit) as excinfo:
            main([])
        assert excinfo.value.code == 1
        assert "plan" in capsys.readouterr().out

    def test_dispatches_to_command(self):
        with patch("stackweave.main.configure_logging"), patch(
            "stackweave.cli.destroy.destroy_command", return_value=0
        ) as destroy:
            with pytest.raises(SystemExit) as excinfo:
                main(["destroy", "stack.yaml", "--output", "json"])

        assert excinfo.value.code == 0
        destroy.assert_called_once_with(
            "stack.yaml",
            output_format="json",
            provider="local",
            overrides={"state_file": None, "concurrency": None, "fail_fast": None},
        )
