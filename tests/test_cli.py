"""Tests for the superralph CLI commands: build, status, validate, plan, logs."""

import json
from pathlib import Path
from unittest.mock import patch

import pytest

from conftest import make_feature, write_prd
from superralph import __version__
from superralph.backends import AgentInvoker, AgentNotFoundError, InvocationResult
from superralph.checkpoint import Checkpoint, CheckpointStore
from superralph.cli import cli
from superralph.logging import RalphLogger
from superralph.prd import load_prd, save_prd

# Wide terminal so rich never wraps assertions across lines
WIDE = {"COLUMNS": "200"}


def read_errors():
    path = Path.home() / ".superralph" / "errors.jsonl"
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text().splitlines() if line]


class ScriptedInvoker(AgentInvoker):
    """Stands in for ClaudeInvoker; ``behavior`` decides each result."""

    def __init__(self, behavior, **kwargs):
        self.behavior = behavior
        self.kwargs = kwargs
        self.requests = []

    @property
    def name(self):
        return "scripted"

    def invoke(self, request, emit):
        self.requests.append(request)
        return self.behavior(request)

    def cancel(self):
        pass


def passes_feature(request):
    prd = load_prd(request.work_dir)
    prd.find(request.feature_id).passes = True
    save_prd(prd, request.work_dir)
    return InvocationResult(output="Implemented and tested.")


@pytest.fixture
def agent():
    """
    Patch the build command's ClaudeInvoker and signal wiring.

    Yields a dict: set ``behavior`` before invoking; after the run,
    ``invoker`` is the instance used and ``token`` the cancel token.
    """
    state = {"behavior": passes_feature}

    def factory(**kwargs):
        state["invoker"] = ScriptedInvoker(state["behavior"], **kwargs)
        return state["invoker"]

    def install(token, on_signal=None):
        state["token"] = token
        return lambda: None

    with patch("superralph.build_commands.ClaudeInvoker", side_effect=factory), \
            patch("superralph.build_commands.install_signal_handlers", side_effect=install), \
            patch("superralph.build_commands.install_pause_handler", return_value=lambda: None):
        yield state


def build(cli_runner, project_dir, *args):
    return cli_runner.invoke(
        cli, ["build", "--project", str(project_dir), "--delay", "0", *args], env=WIDE
    )


class TestVersion:

    def test_version_flag(self, cli_runner):
        """--version prints the package version."""
        result = cli_runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert f"superralph, version {__version__}" in result.output


class TestBuildCommand:
    """Tests for superralph build."""

    def test_complete_exits_zero(self, cli_runner, project_dir, agent):
        """All features passing ends with exit code 0."""
        result = build(cli_runner, project_dir)

        assert result.exit_code == 0, result.output
        assert "All features complete!" in result.output
        assert "3/3 features passing after 2 iteration(s)" in result.output
        assert [r.feature_id for r in agent["invoker"].requests] == ["feat-002", "feat-003"]
        assert read_errors() == []

    def test_invoker_gets_configured_tools(self, cli_runner, project_dir, agent):
        """allowed_bash_commands from config reaches the invoker."""
        config_path = Path.home() / ".superralph" / "config.yaml"
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text("allowed_bash_commands: [make]\n")

        build(cli_runner, project_dir, "--debug")

        kwargs = agent["invoker"].kwargs
        assert kwargs["tool_config"].allowed_bash_commands == ["make"]
        assert kwargs["debug"] is True

    def test_failed_exits_one(self, cli_runner, project_dir, agent):
        """Three failed attempts exit 1 and record INVOCATION_FAILED."""
        agent["behavior"] = lambda request: InvocationResult(output="", exit_code=1)

        result = build(cli_runner, project_dir)

        assert result.exit_code == 1
        assert "Agent failed 3 times on feat-002" in result.output
        errors = read_errors()
        assert errors[-1]["error_type"] == "INVOCATION_FAILED"
        assert errors[-1]["context"]["feature_id"] == "feat-002"

    def test_missing_agent_exits_one(self, cli_runner, project_dir, agent):
        """A missing claude binary is recorded as AGENT_NOT_FOUND."""
        def missing(request):
            raise AgentNotFoundError("claude CLI not found")

        agent["behavior"] = missing
        result = build(cli_runner, project_dir)

        assert result.exit_code == 1
        assert read_errors()[-1]["error_type"] == "AGENT_NOT_FOUND"

    def test_blocked_exits_two(self, cli_runner, tmp_path, agent):
        """A dependency cycle exits 2 without running the agent."""
        write_prd(tmp_path, [
            make_feature("a", depends_on=["b"]),
            make_feature("b", depends_on=["a"]),
        ])

        result = build(cli_runner, tmp_path)

        assert result.exit_code == 2
        assert "blocked" in result.output
        assert agent["invoker"].requests == []
        assert read_errors()[-1]["error_type"] == "BLOCKED"

    def test_budget_exhausted_exits_zero(self, cli_runner, project_dir, agent):
        """Running out of iterations is not a failure."""
        agent["behavior"] = lambda request: InvocationResult(output="partial work")

        result = build(cli_runner, project_dir, "-n", "1")

        assert result.exit_code == 0
        assert "Reached maximum iterations (1)" in result.output
        assert CheckpointStore(project_dir).load().iteration == 2

    def test_cancelled_exits_130(self, cli_runner, project_dir, agent):
        """A cancel during the run exits 130 and leaves a checkpoint."""
        def cancel_then_pass(request):
            agent["token"].cancel("SIGINT")
            return passes_feature(request)

        agent["behavior"] = cancel_then_pass
        result = build(cli_runner, project_dir)

        assert result.exit_code == 130
        assert "Build cancelled (SIGINT)" in result.output
        assert "--resume" in result.output
        assert CheckpointStore(project_dir).load().iteration == 2

    def test_resume_from_checkpoint(self, cli_runner, project_dir, agent):
        """--resume continues the iteration counter."""
        CheckpointStore(project_dir).save(Checkpoint(iteration=6, current_feature_id="feat-002"))

        result = build(cli_runner, project_dir, "--resume")

        assert result.exit_code == 0
        assert "Resuming from iteration 6" in result.output
        assert [r.iteration for r in agent["invoker"].requests] == [6, 7]
        assert CheckpointStore(project_dir).exists() is False

    def test_resume_without_checkpoint(self, cli_runner, project_dir, agent):
        """--resume with nothing saved starts at iteration 1."""
        result = build(cli_runner, project_dir, "--resume")

        assert result.exit_code == 0
        assert "No checkpoint found; starting from iteration 1" in result.output
        assert agent["invoker"].requests[0].iteration == 1

    def test_corrupt_checkpoint(self, cli_runner, project_dir, agent):
        """An unreadable checkpoint is an error, not a silent restart."""
        store = CheckpointStore(project_dir)
        store.path.parent.mkdir(parents=True)
        store.path.write_text("{not json")

        result = build(cli_runner, project_dir, "--resume")

        assert result.exit_code == 1
        assert "Invalid JSON" in result.output
        assert read_errors()[-1]["error_type"] == "CHECKPOINT_CORRUPT"

    def test_missing_prd(self, cli_runner, tmp_path, agent):
        """No prd.json exits 1 and points at `plan`."""
        result = build(cli_runner, tmp_path)

        assert result.exit_code == 1
        assert "superralph plan" in result.output
        assert read_errors()[-1]["error_type"] == "PRD_NOT_FOUND"

    def test_invalid_prd(self, cli_runner, tmp_path, agent):
        """Validation errors are listed and nothing runs."""
        write_prd(tmp_path, [make_feature("a", priority="urgent")])

        result = build(cli_runner, tmp_path)

        assert result.exit_code == 1
        assert "prd.json failed validation" in result.output
        assert "invalid priority 'urgent'" in result.output
        assert "invoker" not in agent
        assert read_errors()[-1]["error_type"] == "PRD_INVALID"

    def test_config_error(self, cli_runner, project_dir, agent):
        """A bad config value exits 1 before loading the PRD."""
        config_path = Path.home() / ".superralph" / "config.yaml"
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text("cancel_policy: abort\n")

        result = build(cli_runner, project_dir)

        assert result.exit_code == 1
        assert "Config error" in result.output
        assert read_errors()[-1]["error_type"] == "CONFIG_ERROR"

    def test_run_is_logged(self, cli_runner, project_dir, agent):
        """Start, events and completion go to the monthly log."""
        build(cli_runner, project_dir)

        logs = list((Path.home() / ".superralph" / "logs").glob("superralph-*.log"))
        assert len(logs) == 1
        content = logs[0].read_text()
        assert "[build] Starting command in" in content
        assert "[build] Phase: EXECUTING" in content
        assert "Command complete: complete" in content

    def test_crash_is_logged(self, cli_runner, project_dir, agent):
        """An unexpected exception is written to both logs and re-raised."""
        def explode(request):
            raise RuntimeError("stream parser blew up")

        agent["behavior"] = explode
        result = build(cli_runner, project_dir)

        assert isinstance(result.exception, RuntimeError)
        assert read_errors()[-1]["error_type"] == "UNEXPECTED_ERROR"
        logs = cli_runner.invoke(cli, ["logs", "--level", "ERROR"], env=WIDE)
        assert "[build] Build crashed: stream parser blew up" in logs.output


class TestLogsCommand:
    """Tests for superralph logs."""

    def test_no_entries(self, cli_runner):
        """An empty log directory says so."""
        result = cli_runner.invoke(cli, ["logs"])
        assert result.exit_code == 0
        assert "No log entries found." in result.output

    def test_shows_build_run_oldest_first(self, cli_runner, project_dir, agent):
        """A build's start, progress and completion are listed in order."""
        build(cli_runner, project_dir)
        result = cli_runner.invoke(cli, ["logs", "--command", "build"], env=WIDE)

        assert result.exit_code == 0
        lines = result.output.splitlines()
        start = next(i for i, line in enumerate(lines) if "Starting command in" in line)
        done = next(i for i, line in enumerate(lines) if "Command complete: complete" in line)
        assert start < done
        assert lines[start].startswith("✓ ")
        assert "   Duration: " in result.output

    def test_limit_and_level(self, cli_runner):
        """--limit keeps the newest entries; --level is case-insensitive."""
        ralph_logger = RalphLogger()
        ralph_logger.log_event("build", "first", {})
        ralph_logger.log_event("build", "second", {}, level="ERROR")
        ralph_logger.log_event("build", "third", {"feature_id": "feat-002"})

        result = cli_runner.invoke(cli, ["logs", "--limit", "1"])
        assert "showing 1 entries" in result.output
        assert "third" in result.output
        assert "   Feature: feat-002" in result.output
        assert "first" not in result.output

        result = cli_runner.invoke(cli, ["logs", "--level", "error"])
        assert "✗ " in result.output
        assert "second" in result.output
        assert "third" not in result.output

    def test_other_command_filtered_out(self, cli_runner):
        """--command matches the bracketed command name exactly."""
        RalphLogger().log_event("build", "only build", {})
        result = cli_runner.invoke(cli, ["logs", "--command", "plan"])
        assert "No log entries found." in result.output


class TestStatusCommand:
    """Tests for superralph status."""

    def test_table_and_next(self, cli_runner, project_dir):
        """Features are tabulated and the next feature is named."""
        result = cli_runner.invoke(cli, ["status", "-p", str(project_dir)], env=WIDE)

        assert result.exit_code == 0
        assert "Test Project" in result.output
        assert "Progress: 1/3 features (33%)" in result.output
        assert "Features" in result.output
        assert "waiting on feat-002" in result.output
        assert 'Next: feat-002 "Feature feat-002"' in result.output

    def test_all_complete(self, cli_runner, tmp_path):
        write_prd(tmp_path, [make_feature("a", passes=True)])
        result = cli_runner.invoke(cli, ["status", "-p", str(tmp_path)], env=WIDE)
        assert "All features complete!" in result.output

    def test_blocked(self, cli_runner, tmp_path):
        """A blocked project says why nothing can run."""
        write_prd(tmp_path, [
            make_feature("a", depends_on=["b"]),
            make_feature("b", depends_on=["a"]),
        ])
        result = cli_runner.invoke(cli, ["status", "-p", str(tmp_path)], env=WIDE)
        assert "Nothing to do:" in result.output
        assert "a (waiting on b)" in result.output

    def test_shows_checkpoint(self, cli_runner, project_dir):
        CheckpointStore(project_dir).save(
            Checkpoint(iteration=4, current_feature_id="feat-002", total_iterations=10)
        )
        result = cli_runner.invoke(cli, ["status", "-p", str(project_dir)], env=WIDE)
        assert "Checkpoint: resume at iteration 4/10 on feat-002" in result.output

    def test_json(self, cli_runner, project_dir):
        """--json emits the machine-readable snapshot."""
        result = cli_runner.invoke(cli, ["status", "-p", str(project_dir), "--json"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["project"] == "Test Project"
        assert data["test_command"] == "pytest"
        assert data["stats"]["passing"] == 1
        assert data["next_feature"] == "feat-002"
        assert data["reason"] == "high priority, dependencies satisfied"
        assert data["checkpoint"] is None
        assert data["features"][2] == {
            "id": "feat-003",
            "priority": "low",
            "category": "functional",
            "passes": False,
            "waiting_on": ["feat-002"],
        }

    def test_missing_prd(self, cli_runner, tmp_path):
        result = cli_runner.invoke(cli, ["status", "-p", str(tmp_path)], env=WIDE)
        assert result.exit_code == 1
        assert "prd.json not found" in result.output


class TestValidateCommand:
    """Tests for superralph validate."""

    def test_valid(self, cli_runner, project_dir):
        result = cli_runner.invoke(cli, ["validate", "-p", str(project_dir)], env=WIDE)

        assert result.exit_code == 0
        assert "✓ prd.json is valid" in result.output
        assert "Project: Test Project" in result.output
        assert "Test Command: pytest" in result.output
        assert "Features: 3 features (1 passing, 2 remaining)" in result.output
        assert "functional" in result.output
        assert 'Next: feat-002 "Feature feat-002"' in result.output

    def test_invalid(self, cli_runner, tmp_path):
        """Every issue is listed and the exit code is 1."""
        write_prd(tmp_path, [
            make_feature("a", category="backend"),
            make_feature("b", depends_on=["zzz"]),
        ])

        result = cli_runner.invoke(cli, ["validate", "-p", str(tmp_path)], env=WIDE)

        assert result.exit_code == 1
        assert "✗ prd.json has validation errors:" in result.output
        assert "features[0].category: invalid category 'backend'" in result.output
        assert "features[1].dependsOn[0]: references unknown feature 'zzz'" in result.output
        assert read_errors()[-1]["subcommand"] == "validate"

    def test_unparseable(self, cli_runner, tmp_path):
        (tmp_path / "prd.json").write_text("{oops")
        result = cli_runner.invoke(cli, ["validate", "-p", str(tmp_path)], env=WIDE)
        assert result.exit_code == 1
        assert "Failed to load prd.json" in result.output


class TestPlanCommand:
    """Tests for superralph plan."""

    @pytest.fixture
    def claude(self):
        with patch("superralph.prd_commands.ClaudeInvoker") as cls:
            yield cls.return_value

    def test_creates_prd(self, cli_runner, tmp_path, claude):
        """A session that writes a valid prd.json succeeds."""
        def session(system_prompt, work_dir, opening):
            write_prd(work_dir, [make_feature("a")], name="Planned")
            return 0

        claude.run_interactive.side_effect = session

        result = cli_runner.invoke(cli, ["plan", "-p", str(tmp_path)], env=WIDE)

        assert result.exit_code == 0, result.output
        assert "✓ prd.json created successfully!" in result.output
        assert "Project: Planned" in result.output
        system_prompt = claude.run_interactive.call_args.args[0]
        assert "prd.json" in system_prompt

    def test_backs_up_existing(self, cli_runner, project_dir, claude):
        """--yes replaces an existing PRD after copying it aside."""
        original = (project_dir / "prd.json").read_text()
        claude.run_interactive.return_value = 0

        result = cli_runner.invoke(cli, ["plan", "-p", str(project_dir), "--yes"], env=WIDE)

        assert result.exit_code == 0
        assert (project_dir / "prd.json.backup").read_text() == original

    def test_declined_overwrite(self, cli_runner, project_dir, claude):
        result = cli_runner.invoke(cli, ["plan", "-p", str(project_dir)], input="n\n", env=WIDE)

        assert result.exit_code == 0
        assert "Cancelled" in result.output
        claude.run_interactive.assert_not_called()

    def test_no_prd_created(self, cli_runner, tmp_path, claude):
        claude.run_interactive.return_value = 0
        result = cli_runner.invoke(cli, ["plan", "-p", str(tmp_path)], env=WIDE)
        assert result.exit_code == 1
        assert "No prd.json was created" in result.output

    def test_invalid_prd_created(self, cli_runner, tmp_path, claude):
        def session(system_prompt, work_dir, opening):
            write_prd(work_dir, [make_feature("a", priority="urgent")])
            return 0

        claude.run_interactive.side_effect = session
        result = cli_runner.invoke(cli, ["plan", "-p", str(tmp_path)], env=WIDE)

        assert result.exit_code == 1
        assert "has validation errors" in result.output

    def test_missing_claude(self, cli_runner, tmp_path, claude):
        claude.run_interactive.side_effect = AgentNotFoundError("claude CLI not found")
        result = cli_runner.invoke(cli, ["plan", "-p", str(tmp_path)], env=WIDE)

        assert result.exit_code == 1
        assert "claude CLI not found" in result.output
        assert read_errors()[-1]["error_type"] == "AGENT_NOT_FOUND"
