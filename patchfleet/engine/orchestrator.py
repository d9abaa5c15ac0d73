"""
Parallel orchestration of work items.

The orchestrator drives a persisted ``ParallelRun`` through a bounded pool of
workers. Each worker takes one work item through these steps:

    1. register the issue (fetching its title from the VCS host if configured)
    2. open a session and size the item's budget
    3. acquire a git workspace (clone/fetch, branch, worktree)
    4. check for file conflicts with the other active workspaces
    5. dispatch to the work processor under the AI provider resilience policy
    6. record spend, persist the outcome and release the workspace

Scheduling is a slot-refill loop over ``asyncio.wait(FIRST_COMPLETED)``. The
loop re-reads the run row every ``scheduler_poll_interval`` seconds, so a
pause or cancel written by another process (the CLI) is honored between
scheduling steps. In-flight units are never torn down: cancellation reaches
them through the ``CancellationToken`` handed to the processor.

Example:
    >>> orchestrator = ParallelOrchestrator(store, processor, settings=settings)
    >>> result = await orchestrator.run(urls, RunOptions(max_concurrent=2))
    >>> result.stop_reason
    <StopReason.COMPLETED: 'completed'>
"""

import asyncio
import itertools
import re
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from patchfleet.config.settings import FleetSettings
from patchfleet.engine.budget import BudgetGovernor, item_scope, run_scope
from patchfleet.engine.conflicts import Conflict, ConflictDetector, ConflictMonitor
from patchfleet.engine.events import EventBus, EventType, ProgressEvent
from patchfleet.engine.processor import (
    CancellationToken,
    ProcessOptions,
    ProcessResult,
    WorkProcessor,
)
from patchfleet.enums import ConflictPolicy
from patchfleet.exceptions import (
    CancelledWorkError,
    CircuitOpenError,
    InvalidTransitionError,
    RateLimitError,
    StateError,
)
from patchfleet.models.domain import (
    Issue,
    IssueRef,
    IssueState,
    ParallelRun,
    RunStatus,
    SessionStatus,
    StopReason,
    WorkItem,
    WorkItemStatus,
    WorkRecord,
)
from patchfleet.providers.base import VCSHost
from patchfleet.resilience.layer import AI_PROVIDER, ResilienceLayer, build_layer, default_policies
from patchfleet.state.store import StateStore
from patchfleet.workspace.manager import WorkspaceManager
from patchfleet.workspace.models import Workspace, WorktreeInfo

log = structlog.get_logger(__name__)

_PR_NUMBER_RE = re.compile(r"/(?:pull|pulls|merge_requests)/(\d+)")

# Issue states from which a unit may (re)start work.
_WORKABLE_STATES = frozenset({IssueState.DISCOVERED, IssueState.QUEUED, IssueState.IN_PROGRESS})


@dataclass(frozen=True)
class RunProgress:
    """Aggregate counts for a run, reported after every state change."""

    run_id: str
    total: int
    pending: int
    in_progress: int
    completed: int
    failed: int
    cancelled: int
    cost_usd: float

    @property
    def resolved(self) -> int:
        return self.completed + self.failed + self.cancelled


ProgressCallback = Callable[[RunProgress], None]


@dataclass
class RunOptions:
    """Options for ``ParallelOrchestrator.run`` and ``resume``.

    Attributes:
        max_concurrent: Worker pool size; defaults to ``parallel.max_concurrent_agents``
        budget_usd: Ceiling for the whole run, on top of the global limits
        skip_conflict_check: Disable pre-flight and mid-flight conflict detection
        on_progress: Synchronous callback receiving a RunProgress after every state change
        continue_on_error: Keep scheduling after an item fails; False stops the run (fail-fast)
        tolerate_failures: Report overall success even if some items failed
        dry_run: Ask the processor not to publish anything
        max_items: Dispatch at most this many items in this invocation
    """

    max_concurrent: int | None = None
    budget_usd: float | None = None
    skip_conflict_check: bool = False
    on_progress: ProgressCallback | None = None
    continue_on_error: bool = True
    tolerate_failures: bool = False
    dry_run: bool = False
    max_items: int | None = None

    def __post_init__(self) -> None:
        if self.max_concurrent is not None and self.max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        if self.budget_usd is not None and self.budget_usd < 0:
            raise ValueError("budget_usd must be >= 0")
        if self.max_items is not None and self.max_items < 0:
            raise ValueError("max_items must be >= 0")


@dataclass
class ItemOutcome:
    """Final state of one work item."""

    url: str
    status: WorkItemStatus
    cost_usd: float = 0.0
    pr_url: str | None = None
    error: str | None = None
    duration_ms: int | None = None


@dataclass
class RunResult:
    """Summary of a run after ``run`` or ``resume`` returns."""

    run_id: str
    status: RunStatus
    stop_reason: StopReason
    items: list[ItemOutcome]
    total: int
    completed: int
    failed: int
    cancelled: int
    pending: int
    total_cost_usd: float
    duration_ms: int
    success: bool


@dataclass
class _Unit:
    """Book-keeping for one in-flight work item."""

    url: str
    index: int
    sequence: int
    token: CancellationToken = field(default_factory=CancellationToken)
    workspace: Workspace | None = None


@dataclass
class _UnitResult:
    url: str
    status: WorkItemStatus
    cost_usd: float = 0.0
    pr_url: str | None = None
    error: str | None = None
    rate_limited: bool = False


@dataclass
class _RunContext:
    run_id: str
    total: int
    budget_usd: float | None
    options: RunOptions
    units: dict[asyncio.Task[_UnitResult], _Unit] = field(default_factory=dict)
    pr_urls: dict[str, str] = field(default_factory=dict)
    monitor: ConflictMonitor | None = None

    def active_worktrees(self) -> list[WorktreeInfo]:
        return [unit.workspace.worktree for unit in self.units.values() if unit.workspace is not None]

    def unit_for(self, unit_id: str) -> _Unit | None:
        for unit in self.units.values():
            if unit.workspace is not None and unit.workspace.worktree.issue_id == unit_id:
                return unit
        return None


class ParallelOrchestrator:
    """Top-level coordinator for parallel runs.

    Args:
        store: Durable state
        processor: AI coding backend that works each item
        settings: Fleet settings; defaults are used when omitted
        budget: Budget governor; built from ``settings.budget`` when omitted
        workspaces: Workspace manager; without one, the processor gets no workspace
        vcs: VCS host used to fetch issue titles for new issues
        resilience: Resilience layer wrapping processor calls
        events: Event bus receiving progress events
    """

    def __init__(
        self,
        store: StateStore,
        processor: WorkProcessor,
        *,
        settings: FleetSettings | None = None,
        budget: BudgetGovernor | None = None,
        workspaces: WorkspaceManager | None = None,
        vcs: VCSHost | None = None,
        resilience: ResilienceLayer | None = None,
        events: EventBus | None = None,
    ) -> None:
        self.store = store
        self.processor = processor
        self.settings = settings or FleetSettings()
        self.budget = budget or BudgetGovernor(store, self.settings.budget)
        self.workspaces = workspaces
        self.vcs = vcs
        self.resilience = resilience or build_layer(self.settings.hardening)
        self.events = events or EventBus()
        self._processor_policy = default_policies(self.settings.hardening)[AI_PROVIDER]
        self._runs: dict[str, _RunContext] = {}
        self._sequence = itertools.count()

    # ---------------------------------------------------------------- entry points

    async def run(self, work_urls: Sequence[str], options: RunOptions | None = None) -> RunResult:
        """Create a run for ``work_urls`` and drive it until it stops.

        Raises:
            ValueError: If no URLs are given
        """
        options = options or RunOptions()
        max_concurrent = options.max_concurrent or self.settings.parallel.max_concurrent_agents
        run = self.store.create_parallel_run(work_urls, max_concurrent, options.budget_usd)

        if not options.skip_conflict_check and self.settings.parallel.enable_conflict_detection:
            self._log_preflight_conflicts(run.id)

        return await self._drive(run, options)

    async def resume(self, run_id: str, options: RunOptions | None = None) -> RunResult:
        """Continue a paused or interrupted run with its remaining pending items.

        Items left ``in_progress`` by a process that died are failed with reason
        ``interrupted`` before scheduling resumes.

        Raises:
            NotFoundError: If the run is unknown
            StateError: If the run already finished
        """
        options = options or RunOptions()
        run = self.store.get_parallel_run(run_id)
        if run.is_terminal:
            raise StateError(f"Run {run_id} is {run.status.value} and cannot be resumed")
        if run_id in self._runs:
            raise StateError(f"Run {run_id} is already being driven by this process")

        if run.status == RunStatus.PAUSED:
            run = self.store.update_parallel_run(run_id, RunStatus.ACTIVE, reason="resumed")
        for item in self.store.get_work_items(run_id):
            if item.status == WorkItemStatus.IN_PROGRESS:
                self.store.update_work_item(
                    run_id, item.issue_url, status=WorkItemStatus.FAILED, error="interrupted"
                )

        if options.max_concurrent is None:
            options.max_concurrent = run.max_concurrent
        if options.budget_usd is None:
            options.budget_usd = run.budget_usd
        log.info("parallel_run_resuming", run_id=run_id, pending=run.pending)
        return await self._drive(run, options)

    # -------------------------------------------------------------- control surface

    def pause(self, run_id: str, reason: str = "paused by user") -> bool:
        """Stop dispatching new items; in-flight items finish. Returns False unless the run was active."""
        run = self.store.get_parallel_run(run_id)
        if run.status != RunStatus.ACTIVE:
            return False
        self.store.update_parallel_run(run_id, RunStatus.PAUSED, StopReason.MANUAL_STOP, reason)
        return True

    def resume_run(self, run_id: str) -> bool:
        """Flip a paused run back to active.

        A driver still running in this process picks the change up on its next
        poll; otherwise call ``resume`` to drive the remaining items.
        """
        run = self.store.get_parallel_run(run_id)
        if run.status != RunStatus.PAUSED:
            return False
        self.store.update_parallel_run(run_id, RunStatus.ACTIVE, reason="unpaused")
        return True

    def cancel(self, run_id: str, reason: str = "cancelled by user") -> bool:
        """Cancel a run: pending items are cancelled now, in-flight units are signalled.

        Returns False when the run already finished.
        """
        run = self.store.get_parallel_run(run_id)
        if run.is_terminal:
            return False
        with self.store.transaction():
            self.store.update_parallel_run(run_id, RunStatus.CANCELLED, StopReason.MANUAL_STOP, reason)
            self.store.cancel_pending_items(run_id, reason)

        ctx = self._runs.get(run_id)
        if ctx is not None:
            for unit in ctx.units.values():
                unit.token.cancel(reason)
        log.info("parallel_run_cancelled", run_id=run_id, reason=reason)
        return True

    def cancel_all_work(self, reason: str = "cancelled by user") -> int:
        """Cancel every run this process is driving; returns how many were cancelled."""
        return sum(1 for run_id in list(self._runs) if self.cancel(run_id, reason))

    def pause_item(self, run_id: str, url: str) -> bool:
        """Hold a pending item so the scheduler skips it."""
        item = self.store.get_work_item(run_id, url)
        if item.status != WorkItemStatus.PENDING or item.held:
            return False
        self.store.update_work_item(run_id, url, held=True)
        return True

    def resume_item(self, run_id: str, url: str) -> bool:
        item = self.store.get_work_item(run_id, url)
        if item.status != WorkItemStatus.PENDING or not item.held:
            return False
        self.store.update_work_item(run_id, url, held=False)
        return True

    def cancel_item(self, run_id: str, url: str, reason: str = "cancelled by user") -> bool:
        """Cancel one item. A pending item is cancelled outright; an in-flight one is also signalled."""
        item = self.store.get_work_item(run_id, url)
        if item.is_terminal:
            return False
        self.store.update_work_item(run_id, url, status=WorkItemStatus.CANCELLED, error=reason, reason=reason)

        ctx = self._runs.get(run_id)
        in_flight = [unit for unit in ctx.units.values() if unit.url == url] if ctx is not None else []
        for unit in in_flight:
            unit.token.cancel(reason)
        if not in_flight:
            # An in-flight unit reports its own cancellation when it unwinds.
            self._emit(EventType.ISSUE_SKIPPED, run_id, issue_url=url, index=item.position, reason=reason)
        return True

    # ------------------------------------------------------------------ scheduling

    async def _drive(self, run: ParallelRun, options: RunOptions) -> RunResult:
        ctx = _RunContext(run_id=run.id, total=run.total_issues, budget_usd=options.budget_usd, options=options)
        max_concurrent = options.max_concurrent or run.max_concurrent
        if options.budget_usd is not None:
            self.budget.set_ceiling(run_scope(run.id), options.budget_usd)

        self._runs[run.id] = ctx
        structlog.contextvars.bind_contextvars(run_id=run.id)
        ctx.monitor = self._build_monitor(ctx)
        if ctx.monitor is not None:
            ctx.monitor.start()

        log.info("parallel_run_started", total=run.total_issues, max_concurrent=max_concurrent)
        self._emit(EventType.STARTED, run.id, total=run.total_issues)
        self._report_progress(ctx)

        stop_reason: StopReason | None = None
        dispatched = 0
        try:
            while True:
                run = self.store.get_parallel_run(run.id)
                paused = run.status == RunStatus.PAUSED

                if run.status == RunStatus.CANCELLED:
                    stop_reason = StopReason.MANUAL_STOP
                    for unit in ctx.units.values():
                        unit.token.cancel("run cancelled")
                    if self.store.cancel_pending_items(run.id, "run cancelled"):
                        self._report_progress(ctx)
                elif not paused and stop_reason is None:
                    self._signal_cancelled_items(ctx)
                    while len(ctx.units) < max_concurrent:
                        if options.max_items is not None and dispatched >= options.max_items:
                            stop_reason = StopReason.MAX_ITERATIONS
                            break
                        item = self.store.next_pending_item(run.id)
                        if item is None:
                            break
                        self.budget.item_budget(run.id, item.issue_url, ctx.budget_usd, ctx.total)
                        decision = self.budget.can_proceed(item_scope(run.id, item.issue_url))
                        if not decision.allowed:
                            log.warning("parallel_run_budget_exhausted", reason=decision.reason)
                            stop_reason = StopReason.MAX_BUDGET
                            break
                        if self._dispatch(ctx, item):
                            dispatched += 1

                if not ctx.units:
                    if stop_reason is None:
                        # A pause is only final once nothing is left in flight.
                        stop_reason = StopReason.MANUAL_STOP if paused else self._idle_stop_reason(run.id, dispatched)
                    break

                done, _ = await asyncio.wait(
                    ctx.units,
                    timeout=self.settings.parallel.scheduler_poll_interval,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                for task in done:
                    ctx.units.pop(task)
                    outcome = task.result()
                    if outcome.pr_url:
                        ctx.pr_urls[outcome.url] = outcome.pr_url
                    if outcome.rate_limited and stop_reason is None:
                        stop_reason = StopReason.RATE_LIMITED
                    if (
                        outcome.status == WorkItemStatus.FAILED
                        and not options.continue_on_error
                        and stop_reason is None
                    ):
                        log.warning("parallel_run_fail_fast", url=outcome.url, error=outcome.error)
                        stop_reason = StopReason.ERROR
                if done:
                    self._report_progress(ctx)
                    if ctx.monitor is not None:
                        await ctx.monitor.check_now()
        except Exception as e:
            log.exception("parallel_run_crashed", error=str(e))
            await self._abort_units(ctx, f"run crashed: {e}")
            self._finish_crashed(run.id, str(e))
            raise
        except asyncio.CancelledError:
            await self._abort_units(ctx, "run interrupted")
            raise
        finally:
            if ctx.monitor is not None:
                await ctx.monitor.stop()
            self._runs.pop(run.id, None)
            structlog.contextvars.unbind_contextvars("run_id")

        return self._finish(run.id, stop_reason, ctx)

    def _dispatch(self, ctx: _RunContext, item: WorkItem) -> bool:
        try:
            self.store.update_work_item(ctx.run_id, item.issue_url, status=WorkItemStatus.IN_PROGRESS)
        except InvalidTransitionError:
            # Cancelled by another process since it was read as pending.
            return False
        unit = _Unit(url=item.issue_url, index=item.position, sequence=next(self._sequence))
        task = asyncio.create_task(self._work(ctx, unit), name=f"patchfleet-{item.issue_url}")
        ctx.units[task] = unit

        log.info("work_item_dispatched", url=item.issue_url, position=item.position)
        self._emit(EventType.ISSUE_STARTED, ctx.run_id, issue_url=item.issue_url, index=item.position, total=ctx.total)
        self._report_progress(ctx)
        return True

    def _signal_cancelled_items(self, ctx: _RunContext) -> None:
        """Forward item cancellations written by other processes to in-flight units."""
        for unit in ctx.units.values():
            if unit.token.cancelled:
                continue
            item = self.store.get_work_item(ctx.run_id, unit.url)
            if item.status == WorkItemStatus.CANCELLED:
                unit.token.cancel(item.error or "cancelled")

    def _idle_stop_reason(self, run_id: str, dispatched: int) -> StopReason:
        items = self.store.get_work_items(run_id)
        if any(item.status == WorkItemStatus.PENDING and item.held for item in items):
            return StopReason.MANUAL_STOP
        if dispatched == 0 and not any(item.is_terminal for item in items):
            return StopReason.EMPTY_QUEUE
        return StopReason.COMPLETED

    async def _abort_units(self, ctx: _RunContext, reason: str) -> None:
        for unit in ctx.units.values():
            unit.token.cancel(reason)
        for task in ctx.units:
            task.cancel()
        await asyncio.gather(*ctx.units, return_exceptions=True)
        ctx.units.clear()

    def _finish_crashed(self, run_id: str, error: str) -> None:
        try:
            run = self.store.get_parallel_run(run_id)
            if not run.is_terminal:
                self.store.update_parallel_run(run_id, RunStatus.FAILED, StopReason.ERROR, error)
        except StateError:
            log.exception("parallel_run_state_unrecoverable")
        self._emit(EventType.ERROR, run_id, error=error)

    def _finish(self, run_id: str, stop_reason: StopReason, ctx: _RunContext) -> RunResult:
        run = self.store.get_parallel_run(run_id)

        if run.status == RunStatus.ACTIVE:
            if run.pending == 0 and run.in_progress == 0:
                run = self.store.update_parallel_run(run_id, RunStatus.COMPLETED, stop_reason)
            else:
                # Remaining pending items are left for resume.
                run = self.store.update_parallel_run(run_id, RunStatus.PAUSED, stop_reason, stop_reason.value)
        elif run.status == RunStatus.PAUSED:
            run = self.store.update_parallel_run(run_id, stop_reason=run.stop_reason or stop_reason)

        stop_reason = run.stop_reason or stop_reason
        items = self.store.get_work_items(run_id)
        outcomes = [
            ItemOutcome(
                url=item.issue_url,
                status=item.status,
                cost_usd=item.cost_usd,
                pr_url=ctx.pr_urls.get(item.issue_url),
                error=item.error,
                duration_ms=item.duration_ms,
            )
            for item in items
        ]
        success = run.status == RunStatus.COMPLETED and (run.failed == 0 or ctx.options.tolerate_failures)
        result = RunResult(
            run_id=run_id,
            status=run.status,
            stop_reason=stop_reason,
            items=outcomes,
            total=run.total_issues,
            completed=run.completed,
            failed=run.failed,
            cancelled=run.cancelled,
            pending=run.pending,
            total_cost_usd=run.total_cost_usd,
            duration_ms=run.total_duration_ms,
            success=success,
        )

        log.info(
            "parallel_run_finished",
            status=run.status.value,
            stop_reason=stop_reason.value,
            completed=run.completed,
            failed=run.failed,
            cancelled=run.cancelled,
            pending=run.pending,
            total_cost_usd=round(run.total_cost_usd, 4),
        )
        event_type = EventType.PAUSED if run.status == RunStatus.PAUSED else EventType.COMPLETED
        self._emit(event_type, run_id, total=run.total_issues, cost_usd=run.total_cost_usd, reason=stop_reason.value)
        return result

    # --------------------------------------------------------------------- workers

    async def _work(self, ctx: _RunContext, unit: _Unit) -> _UnitResult:
        """Take one item from in-progress to a terminal status. Never raises except on task cancellation."""
        url = unit.url
        started = time.monotonic()
        issue: Issue | None = None
        session_id: str | None = None
        cost = 0.0
        processor_ran = False

        try:
            ref = IssueRef.parse(url)
            issue = await self._register_issue(url, ref)
            if issue.is_terminal or issue.pr_url or issue.state not in _WORKABLE_STATES:
                reason = f"issue already {issue.state.value}" if not issue.pr_url else "issue already has a PR"
                return self._skip(ctx, unit, reason, issue_id=issue.id)

            if issue.state == IssueState.DISCOVERED:
                issue = self.store.transition(issue.id, IssueState.QUEUED, reason=f"queued by run {ctx.run_id}")
            session = self.store.create_session(issue.id, provider=self.processor.name, model=self.processor.model)
            session_id = session.id
            if issue.state == IssueState.QUEUED:
                issue = self.store.transition(issue.id, IssueState.IN_PROGRESS, session_id=session_id)
            self.store.update_work_item(ctx.run_id, url, issue_id=issue.id, session_id=session_id)

            item_budget = self.budget.item_budget(ctx.run_id, url, ctx.budget_usd, ctx.total)
            unit.token.raise_if_cancelled()

            if self.workspaces is not None:
                unit.workspace = await self.workspaces.acquire(ref, issue.title)
                self.store.update_session(session_id, working_directory=str(unit.workspace.path))
                self._save_record(issue.id, session_id, unit.workspace)
                unit.token.raise_if_cancelled()
                if ctx.monitor is not None:
                    await ctx.monitor.check_now()
                    unit.token.raise_if_cancelled()

            options = ProcessOptions(
                dry_run=ctx.options.dry_run,
                budget_usd=item_budget,
                abort_signal=unit.token,
                workspace=unit.workspace,
            )
            processor_ran = True
            result: ProcessResult = await self.resilience.execute(
                lambda: self.processor.process(url, options), self._processor_policy
            )
            cost = max(result.cost_usd, 0.0)
            self.budget.record_spend(item_scope(ctx.run_id, url), cost)
            self.store.update_session(session_id, turn_count=result.turn_count, cost_usd=cost, pr_url=result.pr_url)
            if unit.workspace is not None:
                self._save_record(issue.id, session_id, unit.workspace, result.pr_url, cost)

            if result.success:
                return self._succeed(ctx, unit, issue, session_id, result, started)
            error = result.error or "processor reported failure"
            return self._fail(ctx, unit, issue, session_id, error, cost, abandon=True)

        except (CancelledWorkError, asyncio.CancelledError) as e:
            reason = unit.token.reason or str(e) or "cancelled"
            self._close_session(session_id, SessionStatus.FAILED, reason)
            self._finish_item(ctx, url, WorkItemStatus.CANCELLED, cost, error=reason)
            log.info("work_item_cancelled", url=url, reason=reason)
            self._emit(
                EventType.ISSUE_SKIPPED, ctx.run_id, issue_url=url, index=unit.index, total=ctx.total, reason=reason
            )
            if isinstance(e, asyncio.CancelledError):
                raise
            return _UnitResult(url, WorkItemStatus.CANCELLED, cost, error=reason)
        except (RateLimitError, CircuitOpenError) as e:
            outcome = self._fail(ctx, unit, issue, session_id, e.message, cost, abandon=False)
            outcome.rate_limited = True
            return outcome
        except Exception as e:
            log.exception("work_item_error", url=url)
            return self._fail(ctx, unit, issue, session_id, str(e) or type(e).__name__, cost, abandon=processor_ran)
        finally:
            if unit.workspace is not None:
                await self._release(unit)
            log.debug("work_item_finished", url=url, elapsed_s=round(time.monotonic() - started, 3))

    async def _register_issue(self, url: str, ref: IssueRef) -> Issue:
        # Any URL spelling of the same issue maps to one owner/repo#n record.
        issue = self.store.find_issue(ref.issue_id)
        if issue is not None:
            return issue

        title, body, labels = "", "", []
        if self.vcs is not None:
            try:
                remote = await self.vcs.get_issue(ref.owner, ref.repo, ref.number)
                title, body, labels = remote.title, remote.body, remote.labels
            except Exception as e:
                log.warning("issue_metadata_unavailable", url=url, error=str(e))
        try:
            return self.store.create_issue(url, title=title, body=body, labels=labels)
        except StateError:
            # Registered concurrently by another process.
            return self.store.get_issue(ref.issue_id)

    def _succeed(
        self,
        ctx: _RunContext,
        unit: _Unit,
        issue: Issue,
        session_id: str,
        result: ProcessResult,
        started: float,
    ) -> _UnitResult:
        cost = max(result.cost_usd, 0.0)
        if result.pr_url:
            self.store.transition(
                issue.id,
                IssueState.PR_CREATED,
                reason="pull request opened",
                session_id=session_id,
                pr_number=_pr_number(result.pr_url),
                pr_url=result.pr_url,
            )
        elif not ctx.options.dry_run:
            self.store.transition(
                issue.id, IssueState.ABANDONED, reason="finished without a pull request", session_id=session_id
            )
        self._close_session(session_id, SessionStatus.COMPLETED, "processor succeeded")
        self._finish_item(ctx, unit.url, WorkItemStatus.COMPLETED, cost)

        log.info(
            "work_item_completed",
            url=unit.url,
            cost_usd=round(cost, 4),
            pr_url=result.pr_url,
            duration_s=round(time.monotonic() - started, 3),
        )
        self._emit(
            EventType.ISSUE_COMPLETED, ctx.run_id, issue_url=unit.url, index=unit.index, total=ctx.total, cost_usd=cost
        )
        return _UnitResult(unit.url, WorkItemStatus.COMPLETED, cost, pr_url=result.pr_url)

    def _fail(
        self,
        ctx: _RunContext,
        unit: _Unit,
        issue: Issue | None,
        session_id: str | None,
        error: str,
        cost: float,
        abandon: bool,
    ) -> _UnitResult:
        if abandon and issue is not None:
            try:
                self.store.transition(issue.id, IssueState.ABANDONED, reason=error, session_id=session_id)
            except StateError as e:
                log.warning("issue_abandon_failed", issue_id=issue.id, error=e.message)
        self._close_session(session_id, SessionStatus.FAILED, error)
        self._finish_item(ctx, unit.url, WorkItemStatus.FAILED, cost, error=error)

        log.warning("work_item_failed", url=unit.url, error=error)
        self._emit(
            EventType.ISSUE_FAILED,
            ctx.run_id,
            issue_url=unit.url,
            index=unit.index,
            total=ctx.total,
            cost_usd=cost,
            error=error,
        )
        return _UnitResult(unit.url, WorkItemStatus.FAILED, cost, error=error)

    def _skip(self, ctx: _RunContext, unit: _Unit, reason: str, issue_id: str) -> _UnitResult:
        self.store.update_work_item(ctx.run_id, unit.url, issue_id=issue_id)
        self._finish_item(ctx, unit.url, WorkItemStatus.CANCELLED, 0.0, error=reason)
        log.info("work_item_skipped", url=unit.url, reason=reason)
        self._emit(
            EventType.ISSUE_SKIPPED, ctx.run_id, issue_url=unit.url, index=unit.index, total=ctx.total, reason=reason
        )
        return _UnitResult(unit.url, WorkItemStatus.CANCELLED, error=reason)

    def _finish_item(
        self,
        ctx: _RunContext,
        url: str,
        status: WorkItemStatus,
        cost: float,
        error: str | None = None,
    ) -> None:
        """Persist an item's terminal status, unless someone else already finished it."""
        item = self.store.get_work_item(ctx.run_id, url)
        if item.is_terminal:
            self.store.update_work_item(ctx.run_id, url, cost_usd=cost)
            return
        self.store.update_work_item(ctx.run_id, url, status=status, cost_usd=cost, error=error)

    def _close_session(self, session_id: str | None, status: SessionStatus, reason: str) -> None:
        if session_id is None:
            return
        try:
            self.store.transition_session(session_id, status, reason)
            if status == SessionStatus.FAILED:
                self.store.update_session(session_id, error=reason)
        except StateError as e:
            log.warning("session_close_failed", session_id=session_id, error=e.message)

    def _save_record(
        self,
        issue_id: str,
        session_id: str,
        workspace: Workspace,
        pr_url: str | None = None,
        cost: float = 0.0,
    ) -> None:
        self.store.save_work_record(
            WorkRecord(
                issue_id=issue_id,
                session_id=session_id,
                branch_name=workspace.branch.name,
                worktree_path=str(workspace.path),
                pr_number=_pr_number(pr_url) if pr_url else None,
                pr_url=pr_url,
                total_cost_usd=cost,
            )
        )

    async def _release(self, unit: _Unit) -> None:
        workspace, unit.workspace = unit.workspace, None
        assert self.workspaces is not None and workspace is not None
        try:
            await self.workspaces.release(workspace)
        except Exception as e:
            log.warning("workspace_release_failed", path=str(workspace.path), error=str(e))

    # ------------------------------------------------------------------- conflicts

    def _build_monitor(self, ctx: _RunContext) -> ConflictMonitor | None:
        parallel = self.settings.parallel
        if (
            self.workspaces is None
            or ctx.options.skip_conflict_check
            or not parallel.enable_conflict_detection
            or parallel.conflict_policy == ConflictPolicy.SKIP
        ):
            return None
        detector = ConflictDetector(self.workspaces.get_modified_files, parallel.conflict_policy)
        return ConflictMonitor(
            detector,
            ctx.active_worktrees,
            lambda conflict: self._on_conflict(ctx, detector, conflict),
            interval=parallel.conflict_poll_interval,
        )

    def _on_conflict(self, ctx: _RunContext, detector: ConflictDetector, conflict: Conflict) -> None:
        first, second = ctx.unit_for(conflict.first), ctx.unit_for(conflict.second)
        files = tuple(sorted(conflict.files))
        for unit in (first, second):
            if unit is not None:
                self._emit(
                    EventType.CONFLICT,
                    ctx.run_id,
                    issue_url=unit.url,
                    index=unit.index,
                    total=ctx.total,
                    files=files,
                    reason=f"{conflict.first} overlaps {conflict.second}",
                )

        if detector.policy == ConflictPolicy.BLOCK and first is not None and second is not None:
            later = max(first, second, key=lambda unit: unit.sequence)
            log.warning("conflicting_unit_stopped", url=later.url, files=list(files))
            later.token.cancel(f"conflicts with another unit on {', '.join(files)}")

    def _log_preflight_conflicts(self, run_id: str) -> None:
        known = []
        for item in self.store.get_work_items(run_id):
            issue = self.store.find_issue(item.issue_url)
            if issue is not None:
                known.append((issue.url, issue.title, issue.body))
        if len(known) < 2:
            return
        detector = ConflictDetector(self._no_files, self.settings.parallel.conflict_policy)
        for overlap in detector.detect_preflight_conflicts(known):
            log.info(
                "preflight_overlap",
                issue_url=overlap.issue_url,
                other_url=overlap.other_url,
                shared=list(overlap.shared),
            )

    @staticmethod
    async def _no_files(worktree: WorktreeInfo) -> set[str]:
        return set()

    # ------------------------------------------------------------------- reporting

    def _emit(self, event_type: EventType, run_id: str, **fields: Any) -> None:
        self.events.emit(ProgressEvent(type=event_type, run_id=run_id, **fields))

    def _report_progress(self, ctx: _RunContext) -> None:
        if ctx.options.on_progress is None:
            return
        run = self.store.get_parallel_run(ctx.run_id)
        progress = RunProgress(
            run_id=run.id,
            total=run.total_issues,
            pending=run.pending,
            in_progress=run.in_progress,
            completed=run.completed,
            failed=run.failed,
            cancelled=run.cancelled,
            cost_usd=run.total_cost_usd,
        )
        try:
            ctx.options.on_progress(progress)
        except Exception:
            log.warning("progress_callback_failed", exc_info=True)


def _pr_number(pr_url: str) -> int | None:
    match = _PR_NUMBER_RE.search(pr_url)
    return int(match.group(1)) if match else None
