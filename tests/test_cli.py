"""Tests for the command line interface."""

from __future__ import annotations

import json
import shutil
from pathlib import Path

import click
import pytest
from click.testing import CliRunner

from stackctl.cli import cli, parse_duration, parse_overrides


@pytest.fixture(autouse=True)
def no_log_handlers(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the root logger free of handlers bound to the runner's streams."""
    monkeypatch.setattr("stackctl.main.setup_logging", lambda **_: None)


@pytest.fixture
def env(tmp_path: Path) -> dict[str, str]:
    return {
        "STACKCTL_STACK_NAME": "audit",
        "STACKCTL_STATE_DIR": str(tmp_path / "state"),
        "STACKCTL_LOCAL_PROVIDER_FILE": str(tmp_path / "provider.json"),
        "STACKCTL_RETRY_BACKOFF_BASE": "0",
    }


@pytest.fixture
def template(tmp_path: Path, audit_template: Path) -> Path:
    path = tmp_path / "audit_trail.yaml"
    shutil.copy(audit_template, path)
    return path


class TestParseDuration:
    """Tests for parse_duration()."""

    @pytest.mark.parametrize(
        ("value", "seconds"),
        [("500ms", 0.5), ("30s", 30.0), ("5m", 300.0), ("1h", 3600.0), ("45", 45.0), ("1.5m", 90.0)],
    )
    def test_valid(self, value: str, seconds: float) -> None:
        assert parse_duration(value) == seconds

    @pytest.mark.parametrize("value", ["", "soon", "5d", "-1s", "0"])
    def test_invalid(self, value: str) -> None:
        with pytest.raises(ValueError):
            parse_duration(value)


class TestParseOverrides:
    def test_pairs(self) -> None:
        assert parse_overrides(("A=1", "B=x=y", "C=")) == {"A": "1", "B": "x=y", "C": ""}

    def test_missing_separator(self) -> None:
        with pytest.raises(click.BadParameter):
            parse_overrides(("A",))


class TestPlanCommand:
    """Tests for the plan command exit codes."""

    def test_changes_exit_one(self, template: Path, env: dict[str, str]) -> None:
        result = CliRunner().invoke(cli, ["plan", str(template)], env=env)

        assert result.exit_code == 1, result.output
        assert "Plan: 5 to create, 0 to update, 0 to replace, 0 to delete." in result.output

    def test_no_changes_exit_zero(self, template: Path, env: dict[str, str]) -> None:
        runner = CliRunner()
        assert runner.invoke(cli, ["apply", str(template)], env=env).exit_code == 0

        result = runner.invoke(cli, ["plan", str(template)], env=env)

        assert result.exit_code == 0, result.output
        assert "No changes" in result.output

    def test_invalid_parameter_exit_two(self, template: Path, env: dict[str, str]) -> None:
        result = CliRunner().invoke(cli, ["plan", str(template), "-p", "DaysToExpire=61"], env=env)

        assert result.exit_code == 2

    def test_malformed_parameter_exit_two(self, template: Path, env: dict[str, str]) -> None:
        result = CliRunner().invoke(cli, ["plan", str(template), "-p", "DaysToExpire"], env=env)

        assert result.exit_code == 2

    def test_missing_stack_name_exit_two(self, template: Path, env: dict[str, str]) -> None:
        env["STACKCTL_STACK_NAME"] = ""

        result = CliRunner().invoke(cli, ["plan", str(template)], env=env)

        assert result.exit_code == 2

    def test_json_output(self, template: Path, env: dict[str, str]) -> None:
        result = CliRunner().invoke(cli, ["plan", str(template), "--output", "json"], env=env)

        data = json.loads(result.stdout)
        assert data["action"] == "plan"
        assert data["counts"]["Create"] == 5
        assert data["changes"][0]["logical_id"] == "LogGroup"


class TestApplyCommand:
    """Tests for apply, outputs and destroy."""

    def test_apply_then_outputs(self, template: Path, env: dict[str, str]) -> None:
        runner = CliRunner()

        applied = runner.invoke(cli, ["apply", str(template), "--parallelism", "2", "--timeout", "30s"], env=env)
        outputs = runner.invoke(cli, ["outputs", "--output", "json"], env=env)

        assert applied.exit_code == 0, applied.output
        assert "Apply complete: 5 applied." in applied.output
        assert json.loads(outputs.stdout) == {"CloudTrail": "mycompany"}

    def test_invalid_timeout(self, template: Path, env: dict[str, str]) -> None:
        result = CliRunner().invoke(cli, ["apply", str(template), "--timeout", "soon"], env=env)

        assert result.exit_code == 2
        assert "invalid duration" in result.output

    def test_destroy(self, template: Path, env: dict[str, str]) -> None:
        runner = CliRunner()
        runner.invoke(cli, ["apply", str(template)], env=env)

        result = runner.invoke(cli, ["destroy"], env=env)

        assert result.exit_code == 0, result.output
        assert "Plan: 0 to create, 0 to update, 0 to replace, 5 to delete." in result.output
        assert json.loads(Path(env["STACKCTL_LOCAL_PROVIDER_FILE"]).read_text())["resources"] == {}
