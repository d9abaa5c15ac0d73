"""Domain models for patchfleet.

These dataclasses are the records owned by the state store. Status fields are
``str`` enums so they serialize directly into SQLite columns and JSON output.
Each state machine is declared next to its enum as a mapping from a state to
the set of states it may move to; an empty set marks a terminal state.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from urllib.parse import urlparse


class IssueState(str, Enum):
    """Lifecycle of a tracked issue."""

    DISCOVERED = "discovered"
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    PR_CREATED = "pr_created"
    AWAITING_FEEDBACK = "awaiting_feedback"
    ITERATING = "iterating"
    MERGED = "merged"
    CLOSED = "closed"
    ABANDONED = "abandoned"


VALID_TRANSITIONS: dict[IssueState, frozenset[IssueState]] = {
    IssueState.DISCOVERED: frozenset({IssueState.QUEUED, IssueState.ABANDONED}),
    IssueState.QUEUED: frozenset({IssueState.IN_PROGRESS, IssueState.ABANDONED}),
    IssueState.IN_PROGRESS: frozenset({IssueState.PR_CREATED, IssueState.ABANDONED}),
    IssueState.PR_CREATED: frozenset(
        {IssueState.AWAITING_FEEDBACK, IssueState.MERGED, IssueState.CLOSED, IssueState.ABANDONED}
    ),
    IssueState.AWAITING_FEEDBACK: frozenset(
        {IssueState.ITERATING, IssueState.MERGED, IssueState.CLOSED, IssueState.ABANDONED}
    ),
    IssueState.ITERATING: frozenset(
        {IssueState.PR_CREATED, IssueState.MERGED, IssueState.CLOSED, IssueState.ABANDONED}
    ),
    IssueState.MERGED: frozenset(),
    IssueState.CLOSED: frozenset(),
    IssueState.ABANDONED: frozenset(),
}


class SessionStatus(str, Enum):
    """Lifecycle of one AI-backend engagement."""

    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    AWAITING_FEEDBACK = "awaiting_feedback"


SESSION_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.ACTIVE: frozenset(
        {SessionStatus.PAUSED, SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.AWAITING_FEEDBACK}
    ),
    SessionStatus.PAUSED: frozenset({SessionStatus.ACTIVE, SessionStatus.FAILED}),
    SessionStatus.AWAITING_FEEDBACK: frozenset(
        {SessionStatus.ACTIVE, SessionStatus.COMPLETED, SessionStatus.FAILED}
    ),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.FAILED: frozenset(),
}


class RunStatus(str, Enum):
    """Lifecycle of a parallel run."""

    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


RUN_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.ACTIVE: frozenset({RunStatus.PAUSED, RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED}),
    RunStatus.PAUSED: frozenset({RunStatus.ACTIVE, RunStatus.CANCELLED, RunStatus.FAILED}),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.CANCELLED: frozenset(),
}


class WorkItemStatus(str, Enum):
    """Progress of one issue inside a parallel run."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


WORK_ITEM_TRANSITIONS: dict[WorkItemStatus, frozenset[WorkItemStatus]] = {
    WorkItemStatus.PENDING: frozenset({WorkItemStatus.IN_PROGRESS, WorkItemStatus.CANCELLED}),
    WorkItemStatus.IN_PROGRESS: frozenset(
        {WorkItemStatus.COMPLETED, WorkItemStatus.FAILED, WorkItemStatus.CANCELLED}
    ),
    WorkItemStatus.COMPLETED: frozenset(),
    WorkItemStatus.FAILED: frozenset(),
    WorkItemStatus.CANCELLED: frozenset(),
}


class StopReason(str, Enum):
    """Why a run stopped scheduling work."""

    COMPLETED = "completed"
    MAX_ITERATIONS = "max_iterations"
    MAX_BUDGET = "max_budget"
    MANUAL_STOP = "manual_stop"
    ERROR = "error"
    EMPTY_QUEUE = "empty_queue"
    RATE_LIMITED = "rate_limited"


class EntityType(str, Enum):
    """Kinds of entity that appear in the transition log."""

    ISSUE = "issue"
    SESSION = "session"
    RUN = "run"
    WORK_ITEM = "work_item"


_ISSUE_URL_RE = re.compile(r"^/(?P<owner>[^/]+)/(?P<repo>[^/]+)/(?:-/)?issues/(?P<number>\d+)/?$")


@dataclass(frozen=True)
class IssueRef:
    """Parsed identity of an issue URL."""

    host: str
    owner: str
    repo: str
    number: int

    @property
    def project_id(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def issue_id(self) -> str:
        return f"{self.owner}/{self.repo}#{self.number}"

    @classmethod
    def parse(cls, url: str) -> IssueRef:
        """Parse ``https://host/owner/repo/issues/N`` (GitLab's ``/-/issues/N`` too).

        Raises:
            ValueError: If the URL is not an issue URL
        """
        parsed = urlparse(url.strip())
        match = _ISSUE_URL_RE.match(parsed.path)
        if not parsed.netloc or match is None:
            raise ValueError(f"Not an issue URL: {url}")
        return cls(
            host=parsed.netloc,
            owner=match.group("owner"),
            repo=match.group("repo"),
            number=int(match.group("number")),
        )


@dataclass
class Issue:
    """A tracked issue and its lifecycle state."""

    id: str
    """Stable identity, ``owner/repo#number``."""

    url: str
    project_id: str
    number: int
    title: str = ""
    body: str = ""
    labels: list[str] = field(default_factory=list)
    state: IssueState = IssueState.DISCOVERED
    pr_number: int | None = None
    pr_url: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return not VALID_TRANSITIONS[self.state]


@dataclass
class Session:
    """One AI-backend engagement on an issue."""

    id: str
    issue_id: str
    issue_url: str
    status: SessionStatus
    provider: str
    model: str | None = None
    turn_count: int = 0
    cost_usd: float = 0.0
    working_directory: str | None = None
    can_resume: bool = False
    pr_url: str | None = None
    error: str | None = None
    started_at: datetime | None = None
    last_activity_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(frozen=True)
class Transition:
    """Immutable audit record of a single state change."""

    entity_type: EntityType
    entity_id: str
    from_state: str
    to_state: str
    timestamp: datetime
    reason: str | None = None
    session_id: str | None = None
    id: int | None = None


@dataclass
class ParallelRun:
    """A batch of work items processed by a bounded worker pool.

    The counters are derived from the work-item rows whenever a work item
    changes, in the same transaction, so they always sum to ``total_issues``.
    """

    id: str
    status: RunStatus
    max_concurrent: int
    total_issues: int
    budget_usd: float | None = None
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    total_cost_usd: float = 0.0
    total_duration_ms: int = 0
    stop_reason: StopReason | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def resolved(self) -> int:
        return self.completed + self.failed + self.cancelled

    @property
    def is_terminal(self) -> bool:
        return not RUN_TRANSITIONS[self.status]


@dataclass
class WorkItem:
    """One issue URL inside a parallel run."""

    id: int
    run_id: str
    issue_url: str
    position: int
    status: WorkItemStatus = WorkItemStatus.PENDING
    held: bool = False
    issue_id: str | None = None
    session_id: str | None = None
    cost_usd: float = 0.0
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return not WORK_ITEM_TRANSITIONS[self.status]

    @property
    def duration_ms(self) -> int | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return int((self.completed_at - self.started_at).total_seconds() * 1000)


@dataclass
class WorkRecord:
    """Where the work for an issue lives, for resumption and cleanup."""

    issue_id: str
    session_id: str
    branch_name: str
    worktree_path: str | None = None
    pr_number: int | None = None
    pr_url: str | None = None
    attempts: int = 1
    total_cost_usd: float = 0.0
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class StoreStats:
    """Aggregate statistics for the query surface."""

    issues_by_state: dict[str, int]
    sessions_by_status: dict[str, int]
    runs_by_status: dict[str, int]
    total_cost_usd: float
    total_transitions: int
