"""Tests for CLI commands.

Tests agentflow CLI commands using Click's CliRunner:
- init: Initialize project
- validate / visualize: Inspect workflow files
- run: Start and drive a workflow
- status: Show executions
- approve / reject: Decide approvals
- pause / resume / cancel: Control executions
- version: Show version information
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from agentflow.cli import main
from agentflow.core.models import ExecutionStatus
from agentflow.core.state import Database

ECHO = [sys.executable, "-c", "import sys, json; print(json.dumps(json.load(sys.stdin)['input']))"]
FAIL = [sys.executable, "-c", "import sys; sys.exit(2)"]

LINEAR = {
    "id": "review-flow",
    "name": "Review Flow",
    "nodes": [
        {"id": "draft", "kind": "agent", "agent_config": {"agent_name": "echo"}},
        {"id": "end", "kind": "end"},
    ],
    "edges": [{"id": "e1", "source": "draft", "target": "end"}],
}

APPROVAL = {
    "id": "gated",
    "name": "Gated",
    "nodes": [
        {"id": "draft", "kind": "agent", "agent_config": {"agent_name": "echo"}},
        {"id": "review", "kind": "approval", "approval_config": {"prompt": "Ship?"}},
        {"id": "end", "kind": "end"},
    ],
    "edges": [
        {"id": "e1", "source": "draft", "target": "review"},
        {"id": "e2", "source": "review", "target": "end"},
    ],
}


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def project(cli_runner):
    """Isolated, initialized project whose agents are local Python commands."""
    with cli_runner.isolated_filesystem():
        result = cli_runner.invoke(main, ["init"])
        assert result.exit_code == 0
        config = {
            "database": "state.db",
            "poll_interval": 0.01,
            "agents": {"echo": {"command": ECHO}, "broken": {"command": FAIL}},
        }
        Path(".agentflow/config.yaml").write_text(yaml.safe_dump(config))
        yield Path.cwd()


def _write(name: str, data: dict) -> str:
    Path(name).write_text(yaml.safe_dump(data))
    return name


class TestInitCommand:
    """Tests for 'agentflow init' command."""

    def test_init_creates_directory_structure(self, cli_runner):
        with cli_runner.isolated_filesystem():
            result = cli_runner.invoke(main, ["init"])

            assert result.exit_code == 0
            assert "Project initialized!" in result.output
            assert Path(".agentflow/config.yaml").exists()
            assert Path(".agentflow/state.db").exists()

    def test_init_twice(self, cli_runner):
        with cli_runner.isolated_filesystem():
            cli_runner.invoke(main, ["init"])
            result = cli_runner.invoke(main, ["init"])
            assert "already initialized" in result.output


class TestValidateAndVisualize:
    """Tests for workflow inspection commands."""

    def test_validate_valid(self, cli_runner):
        with cli_runner.isolated_filesystem():
            result = cli_runner.invoke(main, ["validate", _write("wf.yaml", LINEAR)])
            assert result.exit_code == 0
            assert "validation passed" in result.output

    def test_validate_structural_error(self, cli_runner):
        broken = {**LINEAR, "edges": []}
        with cli_runner.isolated_filesystem():
            result = cli_runner.invoke(main, ["validate", _write("wf.yaml", broken)])
            assert result.exit_code == 1
            assert "Validation errors" in result.output

    def test_schema_error(self, cli_runner):
        broken = {**LINEAR, "nodes": [{"id": "x", "kind": "agent"}]}
        with cli_runner.isolated_filesystem():
            result = cli_runner.invoke(main, ["validate", _write("wf.yaml", broken)])
            assert result.exit_code == 1
            assert "Error validating workflow schema" in result.output

    def test_yaml_syntax_error(self, cli_runner):
        with cli_runner.isolated_filesystem():
            Path("wf.yaml").write_text("nodes: [unclosed\n")
            result = cli_runner.invoke(main, ["validate", "wf.yaml"])
            assert result.exit_code == 1
            assert "Error parsing YAML" in result.output

    def test_steps_format(self, cli_runner):
        steps = {"name": "Steps", "steps": [{"agent_name": "echo"}, {"agent_name": "echo"}]}
        with cli_runner.isolated_filesystem():
            result = cli_runner.invoke(main, ["validate", _write("steps.yaml", steps)])
            assert result.exit_code == 0
            assert "Nodes: 3" in result.output

    def test_visualize(self, cli_runner):
        with cli_runner.isolated_filesystem():
            result = cli_runner.invoke(main, ["visualize", _write("wf.yaml", APPROVAL)])
            assert result.exit_code == 0
            assert "review" in result.output
            assert "Graph is valid" in result.output


class TestRunCommand:
    """Tests for 'agentflow run'."""

    def test_run_to_completion(self, cli_runner, project):
        result = cli_runner.invoke(
            main, ["run", _write("wf.yaml", LINEAR), "--input", '{"doc": "hello"}']
        )

        assert result.exit_code == 0, result.output
        assert "completed" in result.output
        assert "hello" in result.output

    def test_run_failure_exits_non_zero(self, cli_runner, project):
        failing = {
            **LINEAR,
            "nodes": [
                {
                    "id": "draft",
                    "kind": "agent",
                    "agent_config": {"agent_name": "broken", "max_retries": 0},
                },
                {"id": "end", "kind": "end"},
            ],
        }
        result = cli_runner.invoke(main, ["run", _write("wf.yaml", failing)])

        assert result.exit_code == 1
        assert "failed" in result.output

    def test_bad_input_json(self, cli_runner, project):
        result = cli_runner.invoke(main, ["run", _write("wf.yaml", LINEAR), "--input", "{nope"])
        assert result.exit_code == 2
        assert "not valid JSON" in result.output

    def test_requires_init(self, cli_runner):
        with cli_runner.isolated_filesystem():
            result = cli_runner.invoke(main, ["run", _write("wf.yaml", LINEAR)])
            assert result.exit_code == 1
            assert "agentflow init" in result.output


class TestApprovalCommands:
    """Tests for approve / reject and status around an approval gate."""

    def _start(self, cli_runner) -> None:
        result = cli_runner.invoke(
            main, ["run", _write("wf.yaml", APPROVAL), "--execution-id", "run-1", "--input", "1"]
        )
        assert result.exit_code == 0, result.output
        assert "approve" in result.output

    def test_approve_completes_run(self, cli_runner, project):
        self._start(cli_runner)

        result = cli_runner.invoke(main, ["approve", "run-1", "review", "--approver", "alice"])

        assert result.exit_code == 0, result.output
        record = Database(".agentflow/state.db").load_execution("run-1")
        assert record.status == ExecutionStatus.COMPLETED

    def test_reject_without_edge_fails_run(self, cli_runner, project):
        self._start(cli_runner)

        cli_runner.invoke(main, ["reject", "run-1", "review", "-m", "not yet"])

        record = Database(".agentflow/state.db").load_execution("run-1")
        assert record.status == ExecutionStatus.FAILED
        assert "not yet" in record.error

    def test_approve_unknown_node(self, cli_runner, project):
        self._start(cli_runner)
        result = cli_runner.invoke(main, ["approve", "run-1", "draft"])
        assert result.exit_code == 1
        assert "No pending approval" in result.output

    def test_status_views(self, cli_runner, project):
        self._start(cli_runner)

        listing = cli_runner.invoke(main, ["status"])
        assert "run-1" in listing.output
        assert "running" in listing.output

        detail = cli_runner.invoke(main, ["status", "run-1"])
        assert detail.exit_code == 0
        assert "Gated" in detail.output
        assert "Ship?" in detail.output

    def test_status_unknown_execution(self, cli_runner, project):
        result = cli_runner.invoke(main, ["status", "missing"])
        assert result.exit_code == 1


class TestControlCommands:
    """Tests for pause / resume / cancel."""

    def test_pause_resume_cancel(self, cli_runner, project):
        cli_runner.invoke(
            main, ["run", _write("wf.yaml", APPROVAL), "--execution-id", "run-1"]
        )
        db = Database(".agentflow/state.db")

        assert cli_runner.invoke(main, ["pause", "run-1"]).exit_code == 0
        assert db.load_execution("run-1").status == ExecutionStatus.PAUSED

        assert cli_runner.invoke(main, ["resume", "run-1"]).exit_code == 0
        assert db.load_execution("run-1").status == ExecutionStatus.RUNNING

        assert cli_runner.invoke(main, ["cancel", "run-1"]).exit_code == 0
        assert db.load_execution("run-1").status == ExecutionStatus.CANCELLED

        again = cli_runner.invoke(main, ["cancel", "run-1"])
        assert again.exit_code == 1
        assert "already 'cancelled'" in again.output


class TestVersionCommand:
    """Tests for 'agentflow version'."""

    def test_version(self, cli_runner):
        result = cli_runner.invoke(main, ["version"])
        assert result.exit_code == 0
        assert "agentflow v0.1.0" in result.output
