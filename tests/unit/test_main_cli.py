"""Unit tests for the patchfleet CLI.

Commands run against a real state store in a temporary data directory;
only the batch driver is patched where a run would need git and a VCS host.
"""

from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from patchfleet.config.settings import FleetSettings
from patchfleet.engine.orchestrator import ItemOutcome, RunResult
from patchfleet.exceptions import ConfigurationError
from patchfleet.main import _NoProcessor, cli, load_processor
from patchfleet.models.domain import IssueState, RunStatus, StopReason, WorkItemStatus
from patchfleet.state.store import StateStore

URL = "https://github.com/acme/widgets/issues/7"

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def cli_runner():
    return CliRunner()


@pytest.fixture
def config_file(tmp_path):
    config = tmp_path / "patchfleet.yaml"
    config.write_text(f"data_dir: {tmp_path / 'data'}\nlogging:\n  level: WARNING\n  json: false\n")
    return config


@pytest.fixture
def seeded_run(config_file):
    """A run with two pending items in the configured store."""
    settings = FleetSettings.from_yaml(config_file)
    with StateStore(settings.database_path) as store:
        store.create_issue(URL, title="Crash on empty cart")
        store.transition(URL, IssueState.QUEUED)
        run = store.create_parallel_run([URL, "https://github.com/acme/widgets/issues/8"], max_concurrent=2)
    return run.id


def invoke(cli_runner, config_file, *args):
    return cli_runner.invoke(cli, ["--config", str(config_file), *args])


# =============================================================================
# Processor loading
# =============================================================================


class TestLoadProcessor:
    def test_class_is_instantiated(self):
        assert isinstance(load_processor("patchfleet.main:_NoProcessor"), _NoProcessor)

    def test_missing_separator(self):
        with pytest.raises(ConfigurationError, match="module:attr"):
            load_processor("patchfleet.main")

    def test_unknown_module(self):
        with pytest.raises(ConfigurationError, match="Cannot load"):
            load_processor("patchfleet.no_such_module:Processor")

    def test_not_a_processor(self):
        with pytest.raises(ConfigurationError, match="not a WorkProcessor"):
            load_processor("patchfleet.main:DEFAULT_CONFIG")


# =============================================================================
# Commands
# =============================================================================


class TestGlobalOptions:
    def test_help(self, cli_runner):
        result = cli_runner.invoke(cli, ["--help"])

        assert result.exit_code == 0
        assert "work" in result.output
        assert "cancel-run" in result.output

    def test_missing_config_file(self, cli_runner, tmp_path):
        result = cli_runner.invoke(cli, ["--config", str(tmp_path / "missing.yaml"), "runs"])

        assert result.exit_code == 1
        assert "Configuration file not found" in result.output


class TestQueries:
    def test_runs_empty(self, cli_runner, config_file):
        result = invoke(cli_runner, config_file, "runs")

        assert result.exit_code == 0
        assert "No runs found" in result.output

    def test_runs_lists_seeded_run(self, cli_runner, config_file, seeded_run):
        result = invoke(cli_runner, config_file, "runs", "--status", "active")

        assert result.exit_code == 0
        assert seeded_run in result.output

    def test_run_status(self, cli_runner, config_file, seeded_run):
        result = invoke(cli_runner, config_file, "run-status", seeded_run)

        assert result.exit_code == 0
        assert URL in result.output
        assert "pending 2" in result.output

    def test_run_status_unknown_run(self, cli_runner, config_file):
        result = invoke(cli_runner, config_file, "run-status", "run-missing")

        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_queue(self, cli_runner, config_file, seeded_run):
        result = invoke(cli_runner, config_file, "queue")

        assert result.exit_code == 0
        assert "acme/widgets#7" in result.output
        assert "Crash on empty cart" in result.output

    def test_status(self, cli_runner, config_file, seeded_run):
        result = invoke(cli_runner, config_file, "status")

        assert result.exit_code == 0
        assert "queued" in result.output
        assert "Today: $0.00 of $50.00" in result.output

    def test_history(self, cli_runner, config_file, seeded_run):
        result = invoke(cli_runner, config_file, "history", "acme/widgets#7", "--type", "issue")

        assert result.exit_code == 0
        assert "discovered -> queued" in result.output

    def test_history_empty(self, cli_runner, config_file):
        result = invoke(cli_runner, config_file, "history", "acme/widgets#99")

        assert result.exit_code == 0
        assert "No transitions recorded" in result.output


class TestControl:
    def test_pause_unpause_cancel(self, cli_runner, config_file, seeded_run):
        assert "paused" in invoke(cli_runner, config_file, "pause-run", seeded_run).output
        assert "not active" in invoke(cli_runner, config_file, "pause-run", seeded_run).output
        assert "unpaused" in invoke(cli_runner, config_file, "unpause-run", seeded_run).output

        result = invoke(cli_runner, config_file, "cancel-run", seeded_run)
        assert result.exit_code == 0
        assert "cancelled" in result.output

        settings = FleetSettings.from_yaml(config_file)
        with StateStore(settings.database_path) as store:
            run = store.get_parallel_run(seeded_run)
        assert run.status == RunStatus.CANCELLED
        assert run.cancelled == 2

        assert "already finished" in invoke(cli_runner, config_file, "cancel-run", seeded_run).output

    def test_cancel_item(self, cli_runner, config_file, seeded_run):
        result = invoke(cli_runner, config_file, "cancel-item", seeded_run, URL)

        assert result.exit_code == 0
        assert f"Cancelled {URL}" in result.output
        assert "already finished" in invoke(cli_runner, config_file, "cancel-item", seeded_run, URL).output

    def test_cleanup_with_nothing_to_remove(self, cli_runner, config_file):
        result = invoke(cli_runner, config_file, "cleanup")

        assert result.exit_code == 0
        assert "Removed 0 worktree(s)" in result.output


class TestWork:
    def test_bad_processor(self, cli_runner, config_file):
        result = invoke(cli_runner, config_file, "work", URL, "--processor", "nope")

        assert result.exit_code == 1
        assert "module:attr" in result.output

    def test_prints_result(self, cli_runner, config_file):
        run_result = RunResult(
            run_id="run-abc",
            status=RunStatus.COMPLETED,
            stop_reason=StopReason.COMPLETED,
            items=[
                ItemOutcome(
                    url=URL,
                    status=WorkItemStatus.COMPLETED,
                    cost_usd=0.4,
                    pr_url="https://github.com/acme/widgets/pull/12",
                )
            ],
            total=1,
            completed=1,
            failed=0,
            cancelled=0,
            pending=0,
            total_cost_usd=0.4,
            duration_ms=1500,
            success=True,
        )

        with patch("patchfleet.main._run_batch", new=AsyncMock(return_value=run_result)) as run_batch:
            result = invoke(
                cli_runner, config_file, "work", URL, "--processor", "patchfleet.main:_NoProcessor", "--dry-run"
            )

        assert result.exit_code == 0
        assert "Run run-abc: completed (completed)" in result.output
        assert "-> https://github.com/acme/widgets/pull/12" in result.output
        run_batch.assert_awaited_once()

    def test_failed_run_exits_nonzero(self, cli_runner, config_file):
        run_result = RunResult(
            run_id="run-abc",
            status=RunStatus.PAUSED,
            stop_reason=StopReason.ERROR,
            items=[ItemOutcome(url=URL, status=WorkItemStatus.FAILED, error="tests failed")],
            total=1,
            completed=0,
            failed=1,
            cancelled=0,
            pending=0,
            total_cost_usd=0.0,
            duration_ms=10,
            success=False,
        )

        with patch("patchfleet.main._run_batch", new=AsyncMock(return_value=run_result)):
            result = invoke(
                cli_runner, config_file, "work", URL, "--processor", "patchfleet.main:_NoProcessor", "--fail-fast"
            )

        assert result.exit_code == 1
        assert "(tests failed)" in result.output
