"""Tests for CLI commands.

Tests the blockflow CLI using Click's CliRunner:
- validate: Structural validation of a graph file
- run: Execute a graph file
- workflows add: Store a workflow
- schedules add/list/run-due: Manage recurring schedules
- version: Show version information
"""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from blockflow import __version__
from blockflow.cli import main
from blockflow.core.state import Database

from conftest import build_graph


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def isolated_fs(cli_runner):
    """Create an isolated filesystem for CLI tests."""
    with cli_runner.isolated_filesystem():
        yield Path.cwd()


def write_graph(path: Path, blocks, connections=(), **kwargs) -> str:
    path.write_text(yaml.safe_dump(build_graph(blocks, connections, **kwargs)))
    return str(path)


@pytest.fixture
def echo_file(isolated_fs) -> str:
    """starter -> reply echoing the workflow input."""
    return write_graph(
        isolated_fs / "echo.yaml",
        {
            "starter": "starter",
            "reply": {"kind": "response", "inputs": {"data": "<start.response.input.msg>"}},
        },
        [("starter", "reply")],
    )


class TestVersionCommand:
    def test_version(self, cli_runner):
        result = cli_runner.invoke(main, ["version"])
        assert result.exit_code == 0
        assert f"blockflow {__version__}" in result.output


class TestValidateCommand:
    def test_valid_graph(self, cli_runner, echo_file):
        result = cli_runner.invoke(main, ["validate", echo_file])
        assert result.exit_code == 0
        assert "Graph is valid" in result.output
        assert "Wave 0: starter" in result.output

    def test_invalid_graph(self, cli_runner, isolated_fs):
        path = write_graph(isolated_fs / "bad.yaml", {"a": "agent"})
        result = cli_runner.invoke(main, ["validate", path])
        assert result.exit_code == 1
        assert "Validation Errors" in result.output

    def test_schema_error(self, cli_runner, isolated_fs):
        path = isolated_fs / "bad.yaml"
        path.write_text("blocks:\n  - id: a\n")
        result = cli_runner.invoke(main, ["validate", str(path)])
        assert result.exit_code == 1
        assert "Error validating workflow schema" in result.output

    def test_non_mapping_file(self, cli_runner, isolated_fs):
        path = isolated_fs / "list.yaml"
        path.write_text("- a\n")
        result = cli_runner.invoke(main, ["validate", str(path)])
        assert result.exit_code == 1
        assert "Expected a mapping" in result.output


class TestRunCommand:
    def test_run_succeeds(self, cli_runner, echo_file):
        result = cli_runner.invoke(main, ["run", echo_file, "--input", '{"msg": "hello"}'])
        assert result.exit_code == 0, result.output
        assert '"hello"' in result.output
        assert "Workflow completed successfully" in result.output

    def test_run_failure_exits_nonzero(self, cli_runner, isolated_fs):
        path = write_graph(
            isolated_fs / "fail.yaml",
            {"starter": "starter", "a": {"kind": "agent"}},
            [("starter", "a")],
        )
        result = cli_runner.invoke(main, ["run", path])
        assert result.exit_code == 1
        assert "Workflow failed" in result.output

    def test_unrunnable_graph(self, cli_runner, isolated_fs):
        path = write_graph(isolated_fs / "bad.yaml", {"starter": "starter"})
        result = cli_runner.invoke(main, ["run", path])
        assert result.exit_code == 1
        assert "Workflow is not runnable" in result.output

    def test_invalid_input_json(self, cli_runner, echo_file):
        result = cli_runner.invoke(main, ["run", echo_file, "--input", "{nope"])
        assert result.exit_code == 1
        assert "Invalid --input JSON" in result.output

    def test_debug_steps(self, cli_runner, echo_file):
        result = cli_runner.invoke(main, ["run", echo_file, "--debug"])
        assert result.exit_code == 0, result.output
        assert "Step 1: running reply" in result.output

    def test_sub_workflow_from_database(self, cli_runner, isolated_fs, echo_file):
        db = Database(isolated_fs / "state.db")
        db.save_workflow("echo", "Echo", build_graph(
            {
                "starter": "starter",
                "reply": {"kind": "response", "inputs": {"data": "from child"}},
            },
            [("starter", "reply")],
        ))
        path = write_graph(
            isolated_fs / "parent.yaml",
            {"starter": "starter", "call": {"kind": "workflow", "inputs": {"workflowId": "echo"}}},
            [("starter", "call")],
        )
        result = cli_runner.invoke(main, ["run", path, "--db", "state.db"])
        assert result.exit_code == 0, result.output
        assert '"from child"' in result.output


class TestConfigOption:
    def test_invalid_config_exits(self, cli_runner, isolated_fs):
        (isolated_fs / "config.yaml").write_text("max_parallel: 0\n")
        result = cli_runner.invoke(main, ["--config", "config.yaml", "version"])
        assert result.exit_code == 1
        assert "Invalid config" in result.output


class TestWorkflowsCommand:
    def test_add_stores_workflow(self, cli_runner, isolated_fs, echo_file):
        result = cli_runner.invoke(
            main, ["workflows", "add", echo_file, "--id", "echo", "--db", "state.db"]
        )
        assert result.exit_code == 0, result.output
        assert "Stored workflow echo" in result.output
        assert Database(isolated_fs / "state.db").get_workflow("echo").name == "echo"

    def test_add_rejects_unrunnable(self, cli_runner, isolated_fs):
        path = write_graph(isolated_fs / "bad.yaml", {"starter": "starter"})
        result = cli_runner.invoke(main, ["workflows", "add", path, "--id", "x", "--db", "state.db"])
        assert result.exit_code == 1
        assert Database(isolated_fs / "state.db").get_workflow("x") is None


class TestSchedulesCommand:
    @pytest.fixture
    def stored(self, isolated_fs, echo_file) -> Database:
        db = Database(isolated_fs / "state.db")
        db.save_workflow("echo", "Echo", yaml.safe_load(Path(echo_file).read_text()))
        return db

    def test_add_for_unknown_workflow(self, cli_runner, stored):
        result = cli_runner.invoke(
            main, ["schedules", "add", "--workflow-id", "ghost", "--db", "state.db"]
        )
        assert result.exit_code == 1
        assert "Workflow ghost not found" in result.output

    def test_add_every_minutes(self, cli_runner, stored):
        result = cli_runner.invoke(
            main,
            ["schedules", "add", "--workflow-id", "echo", "--every-minutes", "5", "--db", "state.db"],
        )
        assert result.exit_code == 0, result.output
        assert "Created schedule" in result.output

        [schedule] = stored.list_schedules()
        assert schedule.schedule_type == "minutes"
        assert schedule.time_values.minutes_interval == 5

    def test_add_invalid_cron(self, cli_runner, stored):
        result = cli_runner.invoke(
            main, ["schedules", "add", "--workflow-id", "echo", "--cron", "nope", "--db", "state.db"]
        )
        assert result.exit_code == 1
        assert "Invalid schedule" in result.output

    def test_list(self, cli_runner, stored):
        stored.create_schedule("echo", cron_expression="0 9 * * *", schedule_id="s1")
        result = cli_runner.invoke(main, ["schedules", "list", "--db", "state.db"])
        assert result.exit_code == 0
        assert "s1" in result.output
        assert "active" in result.output

    def test_run_due_nothing(self, cli_runner, stored):
        result = cli_runner.invoke(main, ["schedules", "run-due", "--db", "state.db"])
        assert result.exit_code == 0
        assert "No schedules due" in result.output

    def test_run_due_executes(self, cli_runner, stored):
        past = datetime.now(UTC) - timedelta(minutes=1)
        stored.create_schedule("echo", schedule_type="minutes", next_run_at=past, schedule_id="s1")

        result = cli_runner.invoke(main, ["schedules", "run-due", "--db", "state.db"])

        assert result.exit_code == 0, result.output
        schedule = stored.get_schedule("s1")
        assert schedule.last_ran_at is not None
        assert schedule.next_run_at > past
        [entry] = stored.get_execution_logs("echo")
        assert entry["success"] is True
        assert json.dumps(entry["result"]["output"]) == json.dumps(
            {"response": {"data": None, "status": 200}}
        )

    def test_run_due_loop_with_max_cycles(self, cli_runner, stored):
        (Path("config.yaml")).write_text("scheduler:\n  poll_interval: 0.01\n")
        result = cli_runner.invoke(
            main,
            ["--config", "config.yaml", "schedules", "run-due", "--loop", "--max-cycles", "2",
             "--db", "state.db"],
        )
        assert result.exit_code == 0, result.output
        assert "Polling schedules" in result.output
