"""CLI entry point for patchfleet."""

import asyncio
import importlib
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click
import structlog

from patchfleet.config.settings import FleetSettings
from patchfleet.engine.budget import BudgetGovernor
from patchfleet.engine.events import ProgressEvent
from patchfleet.engine.orchestrator import ParallelOrchestrator, RunOptions, RunResult
from patchfleet.engine.processor import ProcessOptions, ProcessResult, WorkProcessor
from patchfleet.exceptions import ConfigurationError, PatchfleetError
from patchfleet.models.domain import EntityType, IssueState, RunStatus
from patchfleet.providers.github_rest import GitHubRestHost
from patchfleet.resilience.layer import GIT_OPERATIONS, VCS_API, build_layer, default_policies
from patchfleet.state.store import StateStore
from patchfleet.utils.logging_config import configure_logging
from patchfleet.workspace.git import GitRunner
from patchfleet.workspace.manager import WorkspaceManager

log = structlog.get_logger(__name__)

DEFAULT_CONFIG = "patchfleet.yaml"


@click.group()
@click.option("--config", default=None, help=f"Path to configuration file (default: ./{DEFAULT_CONFIG} if present)")
@click.option("--log-level", default=None, help="Logging level (overrides logging.level)")
@click.pass_context
def cli(ctx: click.Context, config: str | None, log_level: str | None) -> None:
    """patchfleet: run AI coding agents over many issues in parallel."""
    try:
        settings = _load_settings(config)
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)

    configure_logging(log_level or settings.logging.level, json_output=settings.logging.json_output)
    ctx.obj = {"settings": settings}


def _load_settings(config: str | None) -> FleetSettings:
    if config is not None:
        return FleetSettings.from_yaml(config)
    if Path(DEFAULT_CONFIG).exists():
        return FleetSettings.from_yaml(DEFAULT_CONFIG)
    return FleetSettings()


def _handle_errors(name: str, action: Callable[[], None]) -> None:
    """Run a command body with the CLI's error-to-exit-code mapping."""
    try:
        action()
    except PatchfleetError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug(f"{name}_error", exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)


def _open_store(settings: FleetSettings) -> StateStore:
    return StateStore(settings.database_path)


def load_processor(spec: str) -> WorkProcessor:
    """Import a processor from ``module:attr``.

    ``attr`` may name a WorkProcessor instance, a WorkProcessor subclass
    (instantiated without arguments) or a zero-argument factory.

    Raises:
        ConfigurationError: If the target cannot be imported or is not a processor
    """
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(f"Processor must be given as module:attr, got {spec!r}")
    try:
        target: Any = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot load processor {spec!r}: {e}") from e

    processor = target() if callable(target) and not isinstance(target, WorkProcessor) else target
    if not isinstance(processor, WorkProcessor):
        raise ConfigurationError(f"{spec!r} is not a WorkProcessor")
    return processor


# ---------------------------------------------------------------------- running


@cli.command()
@click.argument("urls", nargs=-1, required=True)
@click.option("--processor", "processor_spec", required=True, help="Work processor as module:attr")
@click.option("--max-concurrent", type=int, default=None, help="Concurrent units (default: from config)")
@click.option("--budget", type=float, default=None, help="Spending ceiling for this run in USD")
@click.option("--fail-fast", is_flag=True, help="Stop scheduling after the first failed item")
@click.option("--skip-conflict-check", is_flag=True, help="Disable file conflict detection")
@click.option("--dry-run", is_flag=True, help="Do not push branches or open pull requests")
@click.pass_context
def work(
    ctx: click.Context,
    urls: tuple[str, ...],
    processor_spec: str,
    max_concurrent: int | None,
    budget: float | None,
    fail_fast: bool,
    skip_conflict_check: bool,
    dry_run: bool,
) -> None:
    """Work a batch of issue URLs in parallel."""
    settings = ctx.obj["settings"]

    def action() -> None:
        processor = load_processor(processor_spec)
        options = RunOptions(
            max_concurrent=max_concurrent,
            budget_usd=budget,
            skip_conflict_check=skip_conflict_check,
            continue_on_error=not fail_fast,
            dry_run=dry_run,
        )
        result = asyncio.run(_run_batch(settings, processor, lambda o: o.run(list(urls), options)))
        _print_result(result)
        if not result.success:
            sys.exit(1)

    _handle_errors("work", action)


@cli.command("resume-run")
@click.argument("run_id")
@click.option("--processor", "processor_spec", required=True, help="Work processor as module:attr")
@click.option("--fail-fast", is_flag=True, help="Stop scheduling after the first failed item")
@click.pass_context
def resume_run(ctx: click.Context, run_id: str, processor_spec: str, fail_fast: bool) -> None:
    """Continue a paused or interrupted run."""
    settings = ctx.obj["settings"]

    def action() -> None:
        processor = load_processor(processor_spec)
        options = RunOptions(continue_on_error=not fail_fast)
        result = asyncio.run(_run_batch(settings, processor, lambda o: o.resume(run_id, options)))
        _print_result(result)
        if not result.success:
            sys.exit(1)

    _handle_errors("resume_run", action)


async def _run_batch(
    settings: FleetSettings,
    processor: WorkProcessor,
    drive: Callable[[ParallelOrchestrator], Any],
) -> RunResult:
    resilience = build_layer(settings.hardening)
    policies = default_policies(settings.hardening)
    token = settings.vcs.token.get_secret_value() if settings.vcs.token else None

    with _open_store(settings) as store:
        async with GitHubRestHost(
            api_url=settings.vcs.api_url,
            token=token,
            resilience=resilience,
            policy=policies[VCS_API],
            timeout=settings.vcs.timeout,
        ) as vcs:
            git = GitRunner(
                resilience=resilience,
                policy=policies[GIT_OPERATIONS],
                network_timeout=settings.git.network_timeout,
                kill_grace=settings.git.kill_grace_period,
            )
            workspaces = WorkspaceManager(
                settings.git, settings.parallel, settings.repos_dir, settings.worktrees_dir, git=git, vcs=vcs
            )
            orchestrator = ParallelOrchestrator(
                store,
                processor,
                settings=settings,
                workspaces=workspaces,
                vcs=vcs,
                resilience=resilience,
            )
            orchestrator.events.subscribe(_echo_event)
            return await drive(orchestrator)


def _echo_event(event: ProgressEvent) -> None:
    parts = [f"[{event.type.value}]"]
    if event.index is not None and event.total is not None:
        parts.append(f"{event.index + 1}/{event.total}")
    if event.issue_url:
        parts.append(event.issue_url)
    if event.cost_usd:
        parts.append(f"${event.cost_usd:.2f}")
    if event.error:
        parts.append(f"error: {event.error}")
    elif event.reason:
        parts.append(f"({event.reason})")
    if event.files:
        parts.append("files: " + ", ".join(event.files))
    click.echo(" ".join(parts), err=True)


def _print_result(result: RunResult) -> None:
    click.echo(f"\nRun {result.run_id}: {result.status.value} ({result.stop_reason.value})")
    click.echo(
        f"  completed {result.completed}, failed {result.failed}, cancelled {result.cancelled}, "
        f"pending {result.pending} of {result.total}"
    )
    click.echo(f"  cost ${result.total_cost_usd:.2f}, {result.duration_ms / 1000:.1f}s")
    for item in result.items:
        line = f"  - {item.status.value:<11} {item.url}"
        if item.pr_url:
            line += f" -> {item.pr_url}"
        if item.error:
            line += f" ({item.error})"
        click.echo(line)


# ---------------------------------------------------------------------- queries


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show aggregate statistics and budget usage."""
    settings = ctx.obj["settings"]

    def action() -> None:
        with _open_store(settings) as store:
            stats = store.get_stats()
            budget = BudgetGovernor(store, settings.budget).status()

        click.echo("Issues:")
        for state, count in sorted(stats.issues_by_state.items()):
            click.echo(f"  {state:<18} {count}")
        click.echo("Sessions:")
        for session_status, count in sorted(stats.sessions_by_status.items()):
            click.echo(f"  {session_status:<18} {count}")
        click.echo("Runs:")
        for run_status, count in sorted(stats.runs_by_status.items()):
            click.echo(f"  {run_status:<18} {count}")
        click.echo(f"Transitions: {stats.total_transitions}")
        click.echo(f"Total cost: ${stats.total_cost_usd:.2f}")
        click.echo(f"Today: ${budget.today_usd:.2f} of ${budget.daily_limit_usd:.2f}")
        click.echo(f"This month: ${budget.month_usd:.2f} of ${budget.monthly_limit_usd:.2f}")

    _handle_errors("status", action)


@cli.command()
@click.pass_context
def queue(ctx: click.Context) -> None:
    """List queued issues."""
    settings = ctx.obj["settings"]

    def action() -> None:
        with _open_store(settings) as store:
            issues = store.list_by_state(IssueState.QUEUED)
        if not issues:
            click.echo("Queue is empty")
            return
        for issue in issues:
            click.echo(f"{issue.id:<40} {issue.title}")

    _handle_errors("queue", action)


@cli.command()
@click.option("--limit", type=int, default=20, help="Number of runs to show")
@click.option("--status", "status_filter", type=click.Choice([s.value for s in RunStatus]), default=None)
@click.pass_context
def runs(ctx: click.Context, limit: int, status_filter: str | None) -> None:
    """List recent parallel runs."""
    settings = ctx.obj["settings"]

    def action() -> None:
        with _open_store(settings) as store:
            found = store.list_parallel_runs(limit, RunStatus(status_filter) if status_filter else None)
        if not found:
            click.echo("No runs found")
            return
        for run in found:
            click.echo(
                f"{run.id}  {run.status.value:<10} {run.resolved}/{run.total_issues} resolved  "
                f"${run.total_cost_usd:.2f}  {run.stop_reason.value if run.stop_reason else '-'}"
            )

    _handle_errors("runs", action)


@cli.command("run-status")
@click.argument("run_id")
@click.pass_context
def run_status(ctx: click.Context, run_id: str) -> None:
    """Show one run and its items."""
    settings = ctx.obj["settings"]

    def action() -> None:
        with _open_store(settings) as store:
            run = store.get_parallel_run(run_id)
            items = store.get_work_items(run_id)

        click.echo(f"Run {run.id}: {run.status.value}")
        if run.stop_reason:
            click.echo(f"  stop reason: {run.stop_reason.value}")
        click.echo(
            f"  pending {run.pending}, in progress {run.in_progress}, completed {run.completed}, "
            f"failed {run.failed}, cancelled {run.cancelled}"
        )
        click.echo(f"  cost ${run.total_cost_usd:.2f}")
        for item in items:
            held = " (held)" if item.held else ""
            error = f" - {item.error}" if item.error else ""
            click.echo(f"  {item.position + 1:>3}. {item.status.value:<11} {item.issue_url}{held}{error}")

    _handle_errors("run_status", action)


@cli.command()
@click.argument("entity_id")
@click.option("--type", "entity_type", type=click.Choice([t.value for t in EntityType]), default=None)
@click.pass_context
def history(ctx: click.Context, entity_id: str, entity_type: str | None) -> None:
    """Show the transition history of an issue, session, run or work item."""
    settings = ctx.obj["settings"]

    def action() -> None:
        with _open_store(settings) as store:
            transitions = store.get_transitions(entity_id, EntityType(entity_type) if entity_type else None)
        if not transitions:
            click.echo(f"No transitions recorded for {entity_id}")
            return
        for t in transitions:
            reason = f"  {t.reason}" if t.reason else ""
            click.echo(f"{t.timestamp.isoformat()}  {t.entity_type.value:<9} {t.from_state} -> {t.to_state}{reason}")

    _handle_errors("history", action)


# ---------------------------------------------------------------------- control


def _control(settings: FleetSettings, operation: Callable[[ParallelOrchestrator], bool]) -> bool:
    with _open_store(settings) as store:
        orchestrator = ParallelOrchestrator(store, _NoProcessor(), settings=settings)
        return operation(orchestrator)


class _NoProcessor(WorkProcessor):
    """Placeholder for control commands, which never dispatch work."""

    name = "none"

    async def process(self, issue_url: str, options: ProcessOptions) -> ProcessResult:
        raise ConfigurationError("Control commands cannot process work")


@cli.command("pause-run")
@click.argument("run_id")
@click.pass_context
def pause_run(ctx: click.Context, run_id: str) -> None:
    """Stop dispatching new items for a run."""
    settings = ctx.obj["settings"]

    def action() -> None:
        if _control(settings, lambda o: o.pause(run_id)):
            click.echo(f"Run {run_id} paused")
        else:
            click.echo(f"Run {run_id} is not active; nothing to pause")

    _handle_errors("pause_run", action)


@cli.command("unpause-run")
@click.argument("run_id")
@click.pass_context
def unpause_run(ctx: click.Context, run_id: str) -> None:
    """Mark a paused run active again (use resume-run to drive it)."""
    settings = ctx.obj["settings"]

    def action() -> None:
        if _control(settings, lambda o: o.resume_run(run_id)):
            click.echo(f"Run {run_id} unpaused")
        else:
            click.echo(f"Run {run_id} is not paused")

    _handle_errors("unpause_run", action)


@cli.command("cancel-run")
@click.argument("run_id")
@click.pass_context
def cancel_run(ctx: click.Context, run_id: str) -> None:
    """Cancel a run and all of its pending items."""
    settings = ctx.obj["settings"]

    def action() -> None:
        if _control(settings, lambda o: o.cancel(run_id)):
            click.echo(f"Run {run_id} cancelled")
        else:
            click.echo(f"Run {run_id} already finished")

    _handle_errors("cancel_run", action)


@cli.command("cancel-item")
@click.argument("run_id")
@click.argument("url")
@click.pass_context
def cancel_item(ctx: click.Context, run_id: str, url: str) -> None:
    """Cancel one item of a run."""
    settings = ctx.obj["settings"]

    def action() -> None:
        if _control(settings, lambda o: o.cancel_item(run_id, url)):
            click.echo(f"Cancelled {url}")
        else:
            click.echo(f"{url} already finished")

    _handle_errors("cancel_item", action)


@cli.command()
@click.pass_context
def cleanup(ctx: click.Context) -> None:
    """Remove worktrees of finished issues."""
    settings = ctx.obj["settings"]

    def action() -> None:
        removed = asyncio.run(_cleanup(settings))
        click.echo(f"Removed {removed} worktree(s)")

    _handle_errors("cleanup", action)


async def _cleanup(settings: FleetSettings) -> int:
    workspaces = WorkspaceManager(settings.git, settings.parallel, settings.repos_dir, settings.worktrees_dir)
    with _open_store(settings) as store:
        return await workspaces.cleanup_abandoned(store)


if __name__ == "__main__":
    cli()
