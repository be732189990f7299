"""Tests for CLI destroy command."""

import json
from pathlib import Path

import pytest
from stackweave.cli.apply import apply_command
from stackweave.cli.destroy import destroy_command, print_destroy_summary
from stackweave.core.errors import ExitCode
from stackweave.orchestration.results import DestroyReport

EXAMPLE_STACK = Path(__file__).resolve().parents[1] / "examples" / "web-stack.yaml"


@pytest.fixture
def state_file(tmp_path, monkeypatch):
    monkeypatch.setenv("DB_PASSWORD", "hunter2")
    monkeypatch.setenv("API_KEY", "k-123")
    path = tmp_path / "state.json"
    monkeypatch.setenv("STACKWEAVE_STATE_FILE", str(path))
    return path


def _destroy_json(capsys):
    code = destroy_command(str(EXAMPLE_STACK), output_format="json")
    return code, json.loads(capsys.readouterr().out)


class TestDestroyCommand:
    def test_destroys_everything_dependents_first(self, state_file, capsys):
        assert apply_command(str(EXAMPLE_STACK), output_format="json") == ExitCode.SUCCESS
        capsys.readouterr()

        code, result = _destroy_json(capsys)

        assert code == ExitCode.SUCCESS
        deleted = result["deleted"]
        assert len(deleted) == 18
        assert deleted.index("www") < deleted.index("zone")
        assert deleted.index("web-rule") < deleted.index("https")
        assert deleted.index("https") < deleted.index("lb")
        assert deleted.index("service") < deleted.index("app-secrets")

        saved = json.loads(state_file.read_text())
        assert saved["records"] == {}
        assert saved["provider_data"]["local"]["cloud"]["resources"] == {}

    def test_destroy_without_state_is_a_no_op(self, state_file, capsys):
        code, result = _destroy_json(capsys)

        assert code == ExitCode.SUCCESS
        assert result["deleted"] == []
        assert result["absent"] == []

    def test_destroy_twice(self, state_file, capsys):
        apply_command(str(EXAMPLE_STACK), output_format="json")
        capsys.readouterr()
        _destroy_json(capsys)

        code, result = _destroy_json(capsys)

        assert code == ExitCode.SUCCESS
        assert result["deleted"] == []

    def test_missing_resources_count_as_absent(self, state_file, capsys):
        apply_command(str(EXAMPLE_STACK), output_format="json")
        capsys.readouterr()
        saved = json.loads(state_file.read_text())
        lb_id = saved["records"]["lb"]["physical_id"]
        del saved["provider_data"]["local"]["cloud"]["resources"][lb_id]
        state_file.write_text(json.dumps(saved))

        code, result = _destroy_json(capsys)

        assert code == ExitCode.SUCCESS
        assert result["absent"] == ["lb"]


class TestPrintDestroySummary:
    def test_partial_destroy(self, capsys):
        report = DestroyReport(
            stack="web",
            deleted=["www"],
            failed={"https": "in use"},
            blocked={"lb": "dependent https failed to delete"},
        )

        print_destroy_summary(report)

        output = capsys.readouterr().out
        assert "deleted" in output
        assert "in use" in output
        assert "2 remain" in output
