"""
Durable, transactional state store backed by SQLite.

The store owns every issue, session, parallel run, work item and work record,
plus the append-only transition log and the spend ledger used by the budget
governor.

Atomicity:
    Every mutation runs inside ``transaction()``, which issues
    ``BEGIN IMMEDIATE`` and commits on success or rolls back on any exception.
    A state change and its audit row are written in the same transaction, so
    readers never see one without the other. A rejected transition leaves both
    the row and the log untouched.

Ordering:
    ``BEGIN IMMEDIATE`` takes the write lock before the current state is read,
    so two writers racing on the same entity serialize. The loser reads the
    winner's state and fails with ``InvalidTransitionError``.

Concurrency Model:
    Methods are synchronous. SQLite work is short and CPU-bound, and calling
    it directly from coroutines keeps each read-check-write sequence free of
    suspension points. A re-entrant thread lock guards the shared connection
    for callers that use the store from worker threads.

Example:
    >>> store = StateStore(".patchfleet/state.db")
    >>> issue = store.create_issue("https://github.com/acme/widgets/issues/7", title="Fix crash")
    >>> store.transition(issue.id, IssueState.QUEUED, reason="selected")
    >>> [t.to_state for t in store.get_transitions(issue.id)]
    ['queued']
"""

from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog

from patchfleet.exceptions import InvalidTransitionError, NotFoundError, StateError
from patchfleet.models.domain import (
    RUN_TRANSITIONS,
    SESSION_TRANSITIONS,
    VALID_TRANSITIONS,
    WORK_ITEM_TRANSITIONS,
    EntityType,
    Issue,
    IssueRef,
    IssueState,
    ParallelRun,
    RunStatus,
    Session,
    SessionStatus,
    StopReason,
    StoreStats,
    Transition,
    WorkItem,
    WorkItemStatus,
    WorkRecord,
)

log = structlog.get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS issues (
    id TEXT PRIMARY KEY,
    url TEXT NOT NULL UNIQUE,
    project_id TEXT NOT NULL,
    number INTEGER NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    body TEXT NOT NULL DEFAULT '',
    labels TEXT NOT NULL DEFAULT '[]',
    state TEXT NOT NULL,
    pr_number INTEGER,
    pr_url TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_issues_state ON issues(state);
CREATE INDEX IF NOT EXISTS idx_issues_project ON issues(project_id);

CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    issue_id TEXT NOT NULL REFERENCES issues(id),
    issue_url TEXT NOT NULL,
    status TEXT NOT NULL,
    provider TEXT NOT NULL,
    model TEXT,
    turn_count INTEGER NOT NULL DEFAULT 0,
    cost_usd REAL NOT NULL DEFAULT 0,
    working_directory TEXT,
    can_resume INTEGER NOT NULL DEFAULT 0,
    pr_url TEXT,
    error TEXT,
    started_at TEXT NOT NULL,
    last_activity_at TEXT NOT NULL,
    completed_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_sessions_issue ON sessions(issue_id);
CREATE INDEX IF NOT EXISTS idx_sessions_status ON sessions(status);

CREATE TABLE IF NOT EXISTS transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    from_state TEXT NOT NULL,
    to_state TEXT NOT NULL,
    reason TEXT,
    session_id TEXT,
    timestamp TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_transitions_entity ON transitions(entity_id, id);

CREATE TABLE IF NOT EXISTS parallel_runs (
    id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    max_concurrent INTEGER NOT NULL,
    total_issues INTEGER NOT NULL,
    budget_usd REAL,
    pending INTEGER NOT NULL DEFAULT 0,
    in_progress INTEGER NOT NULL DEFAULT 0,
    completed INTEGER NOT NULL DEFAULT 0,
    failed INTEGER NOT NULL DEFAULT 0,
    cancelled INTEGER NOT NULL DEFAULT 0,
    total_cost_usd REAL NOT NULL DEFAULT 0,
    total_duration_ms INTEGER NOT NULL DEFAULT 0,
    stop_reason TEXT,
    started_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS work_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL REFERENCES parallel_runs(id),
    issue_url TEXT NOT NULL,
    position INTEGER NOT NULL,
    status TEXT NOT NULL,
    held INTEGER NOT NULL DEFAULT 0,
    issue_id TEXT,
    session_id TEXT,
    cost_usd REAL NOT NULL DEFAULT 0,
    error TEXT,
    started_at TEXT,
    completed_at TEXT,
    UNIQUE (run_id, issue_url)
);
CREATE INDEX IF NOT EXISTS idx_work_items_run ON work_items(run_id, status, position);

CREATE TABLE IF NOT EXISTS work_records (
    issue_id TEXT NOT NULL,
    session_id TEXT NOT NULL,
    branch_name TEXT NOT NULL,
    worktree_path TEXT,
    pr_number INTEGER,
    pr_url TEXT,
    cost_usd REAL NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (issue_id, session_id)
);

CREATE TABLE IF NOT EXISTS spend_ledger (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    scope_id TEXT NOT NULL,
    amount_usd REAL NOT NULL,
    recorded_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_spend_recorded ON spend_ledger(recorded_at);
"""

_TERMINAL_SESSION = frozenset(s for s, targets in SESSION_TRANSITIONS.items() if not targets)
_TERMINAL_RUN = frozenset(s for s, targets in RUN_TRANSITIONS.items() if not targets)
_TERMINAL_ITEM = frozenset(s for s, targets in WORK_ITEM_TRANSITIONS.items() if not targets)


def _now() -> datetime:
    return datetime.now(UTC)


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _identity(url: str) -> str:
    """``owner/repo#n`` for issue URLs; anything else is kept as given and fails when worked."""
    try:
        return IssueRef.parse(url).issue_id
    except ValueError:
        return url


def _scope_clause(scope_id: str) -> tuple[str, list[Any]]:
    """SQL matching a scope and every scope nested beneath it (``scope/...``)."""
    prefix = f"{scope_id}/"
    return "(scope_id = ? OR substr(scope_id, 1, ?) = ?)", [scope_id, len(prefix), prefix]


class StateStore:
    """SQLite-backed store for orchestration state.

    Attributes:
        path: Database file path, or ``:memory:``
    """

    def __init__(self, path: str | Path, busy_timeout_ms: int = 5000) -> None:
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        self._conn = sqlite3.connect(
            self.path,
            timeout=busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.execute(f"PRAGMA busy_timeout = {busy_timeout_ms}")
        if self.path != ":memory:":
            self._conn.execute("PRAGMA journal_mode = WAL")
            self._conn.execute("PRAGMA synchronous = NORMAL")
        self._conn.executescript(SCHEMA)
        log.debug("state_store_opened", path=self.path)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> StateStore:
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run statements atomically; nested use joins the outer transaction."""
        with self._lock:
            if self._conn.in_transaction:
                yield self._conn
                return
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")

    def _query_all(self, sql: str, params: Iterable[Any] = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, tuple(params)).fetchall()

    def _query_one(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Row | None:
        with self._lock:
            return self._conn.execute(sql, tuple(params)).fetchone()

    @staticmethod
    def _append_transition(
        conn: sqlite3.Connection,
        entity_type: EntityType,
        entity_id: str,
        from_state: str,
        to_state: str,
        reason: str | None,
        session_id: str | None,
        timestamp: datetime,
    ) -> None:
        conn.execute(
            """
            INSERT INTO transitions (entity_type, entity_id, from_state, to_state, reason, session_id, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (entity_type.value, entity_id, from_state, to_state, reason, session_id, _ts(timestamp)),
        )

    # ------------------------------------------------------------------ issues

    def create_issue(
        self,
        url: str,
        title: str = "",
        body: str = "",
        labels: list[str] | None = None,
        state: IssueState = IssueState.DISCOVERED,
    ) -> Issue:
        """Register a new issue.

        Args:
            url: Issue URL; identity is derived from it
            title: Issue title
            body: Issue body text
            labels: Issue labels
            state: Initial lifecycle state

        Returns:
            The stored Issue

        Raises:
            ValueError: If the URL is not an issue URL
            StateError: If the issue is already registered
        """
        ref = IssueRef.parse(url)
        now = _now()
        issue = Issue(
            id=ref.issue_id,
            url=url,
            project_id=ref.project_id,
            number=ref.number,
            title=title,
            body=body,
            labels=list(labels or []),
            state=state,
            created_at=now,
            updated_at=now,
        )
        try:
            with self.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO issues (id, url, project_id, number, title, body, labels, state, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        issue.id,
                        issue.url,
                        issue.project_id,
                        issue.number,
                        issue.title,
                        issue.body,
                        json.dumps(issue.labels),
                        issue.state.value,
                        _ts(now),
                        _ts(now),
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise StateError(f"Issue already exists: {issue.id}") from e

        log.info("issue_created", issue_id=issue.id, state=issue.state.value)
        return issue

    def find_issue(self, id_or_url: str) -> Issue | None:
        row = self._query_one("SELECT * FROM issues WHERE id = ? OR url = ?", (id_or_url, id_or_url))
        return self._issue_from_row(row) if row else None

    def get_issue(self, id_or_url: str) -> Issue:
        """Look up an issue by id (``owner/repo#n``) or URL.

        Raises:
            NotFoundError: If the issue is unknown
        """
        issue = self.find_issue(id_or_url)
        if issue is None:
            raise NotFoundError("Issue", id_or_url)
        return issue

    def list_by_state(self, state: IssueState) -> list[Issue]:
        rows = self._query_all("SELECT * FROM issues WHERE state = ? ORDER BY created_at, id", (state.value,))
        return [self._issue_from_row(row) for row in rows]

    def list_issues(self, project_id: str | None = None) -> list[Issue]:
        if project_id is None:
            rows = self._query_all("SELECT * FROM issues ORDER BY created_at, id")
        else:
            rows = self._query_all("SELECT * FROM issues WHERE project_id = ? ORDER BY created_at, id", (project_id,))
        return [self._issue_from_row(row) for row in rows]

    def update_issue_details(
        self,
        id_or_url: str,
        title: str | None = None,
        body: str | None = None,
        labels: list[str] | None = None,
    ) -> Issue:
        """Refresh descriptive fields. Never touches the lifecycle state."""
        with self.transaction() as conn:
            issue = self.get_issue(id_or_url)
            if title is not None:
                issue.title = title
            if body is not None:
                issue.body = body
            if labels is not None:
                issue.labels = list(labels)
            issue.updated_at = _now()
            conn.execute(
                "UPDATE issues SET title = ?, body = ?, labels = ?, updated_at = ? WHERE id = ?",
                (issue.title, issue.body, json.dumps(issue.labels), _ts(issue.updated_at), issue.id),
            )
        return issue

    def transition(
        self,
        issue_id: str,
        to_state: IssueState,
        reason: str | None = None,
        session_id: str | None = None,
        pr_number: int | None = None,
        pr_url: str | None = None,
    ) -> Issue:
        """Move an issue to a new lifecycle state and record the change.

        Args:
            issue_id: Issue id or URL
            to_state: Target state
            reason: Free-text reason stored in the audit log
            session_id: Session responsible for the change
            pr_number: Pull request number to link, if any
            pr_url: Pull request URL to link, if any

        Returns:
            The updated Issue

        Raises:
            NotFoundError: If the issue is unknown
            InvalidTransitionError: If ``to_state`` is not reachable from the
                current state; nothing is written
        """
        to_state = IssueState(to_state)
        with self.transaction() as conn:
            issue = self.get_issue(issue_id)
            if to_state not in VALID_TRANSITIONS[issue.state]:
                raise InvalidTransitionError(issue.id, issue.state.value, to_state.value)

            from_state = issue.state
            now = _now()
            issue.state = to_state
            issue.updated_at = now
            if pr_number is not None:
                issue.pr_number = pr_number
            if pr_url is not None:
                issue.pr_url = pr_url

            conn.execute(
                "UPDATE issues SET state = ?, pr_number = ?, pr_url = ?, updated_at = ? WHERE id = ?",
                (issue.state.value, issue.pr_number, issue.pr_url, _ts(now), issue.id),
            )
            self._append_transition(
                conn, EntityType.ISSUE, issue.id, from_state.value, to_state.value, reason, session_id, now
            )

        log.info(
            "issue_transitioned",
            issue_id=issue.id,
            from_state=from_state.value,
            to_state=to_state.value,
            reason=reason,
        )
        return issue

    # ---------------------------------------------------------------- sessions

    def create_session(
        self,
        issue_id: str,
        provider: str,
        model: str | None = None,
        working_directory: str | None = None,
    ) -> Session:
        """Start a new session for an issue.

        Any session of the same issue that is still open is failed with
        reason ``superseded`` in the same transaction; sessions are never
        reopened.

        Raises:
            NotFoundError: If the issue is unknown
        """
        now = _now()
        with self.transaction() as conn:
            issue = self.get_issue(issue_id)
            session = Session(
                id=f"sess-{uuid.uuid4().hex[:12]}",
                issue_id=issue.id,
                issue_url=issue.url,
                status=SessionStatus.ACTIVE,
                provider=provider,
                model=model,
                working_directory=working_directory,
                started_at=now,
                last_activity_at=now,
            )

            open_rows = conn.execute(
                "SELECT id, status FROM sessions WHERE issue_id = ? AND status IN (?, ?, ?)",
                (
                    issue.id,
                    SessionStatus.ACTIVE.value,
                    SessionStatus.PAUSED.value,
                    SessionStatus.AWAITING_FEEDBACK.value,
                ),
            ).fetchall()
            for row in open_rows:
                conn.execute(
                    "UPDATE sessions SET status = ?, error = ?, completed_at = ?, last_activity_at = ? WHERE id = ?",
                    (SessionStatus.FAILED.value, f"superseded by {session.id}", _ts(now), _ts(now), row["id"]),
                )
                self._append_transition(
                    conn,
                    EntityType.SESSION,
                    row["id"],
                    row["status"],
                    SessionStatus.FAILED.value,
                    "superseded",
                    session.id,
                    now,
                )

            conn.execute(
                """
                INSERT INTO sessions (
                    id, issue_id, issue_url, status, provider, model, working_directory,
                    started_at, last_activity_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session.id,
                    session.issue_id,
                    session.issue_url,
                    session.status.value,
                    session.provider,
                    session.model,
                    session.working_directory,
                    _ts(now),
                    _ts(now),
                ),
            )

        log.info("session_created", session_id=session.id, issue_id=issue.id, superseded=len(open_rows))
        return session

    def get_session(self, session_id: str) -> Session:
        row = self._query_one("SELECT * FROM sessions WHERE id = ?", (session_id,))
        if row is None:
            raise NotFoundError("Session", session_id)
        return self._session_from_row(row)

    def list_sessions(self, issue_id: str | None = None, status: SessionStatus | None = None) -> list[Session]:
        clauses, params = [], []
        if issue_id is not None:
            clauses.append("issue_id = ?")
            params.append(issue_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(SessionStatus(status).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._query_all(f"SELECT * FROM sessions {where} ORDER BY started_at, rowid", params)
        return [self._session_from_row(row) for row in rows]

    def latest_session_for_issue(self, issue_id: str) -> Session | None:
        row = self._query_one(
            "SELECT * FROM sessions WHERE issue_id = ? ORDER BY started_at DESC, rowid DESC LIMIT 1", (issue_id,)
        )
        return self._session_from_row(row) if row else None

    def transition_session(self, session_id: str, to_status: SessionStatus, reason: str | None = None) -> Session:
        """Move a session to a new status and record the change.

        Raises:
            NotFoundError: If the session is unknown
            InvalidTransitionError: If the move is not allowed
        """
        to_status = SessionStatus(to_status)
        with self.transaction() as conn:
            session = self.get_session(session_id)
            if to_status not in SESSION_TRANSITIONS[session.status]:
                raise InvalidTransitionError(session.id, session.status.value, to_status.value)

            from_status = session.status
            now = _now()
            session.status = to_status
            session.last_activity_at = now
            if to_status in _TERMINAL_SESSION:
                session.completed_at = now
            conn.execute(
                "UPDATE sessions SET status = ?, last_activity_at = ?, completed_at = ? WHERE id = ?",
                (to_status.value, _ts(now), _ts(session.completed_at), session.id),
            )
            self._append_transition(
                conn, EntityType.SESSION, session.id, from_status.value, to_status.value, reason, session.id, now
            )

        log.info(
            "session_transitioned",
            session_id=session.id,
            from_status=from_status.value,
            to_status=to_status.value,
        )
        return session

    def update_session(
        self,
        session_id: str,
        *,
        turn_count: int | None = None,
        cost_usd: float | None = None,
        working_directory: str | None = None,
        can_resume: bool | None = None,
        pr_url: str | None = None,
        error: str | None = None,
    ) -> Session:
        """Update session metrics. Status changes go through ``transition_session``."""
        with self.transaction() as conn:
            session = self.get_session(session_id)
            if turn_count is not None:
                session.turn_count = turn_count
            if cost_usd is not None:
                session.cost_usd = cost_usd
            if working_directory is not None:
                session.working_directory = working_directory
            if can_resume is not None:
                session.can_resume = can_resume
            if pr_url is not None:
                session.pr_url = pr_url
            if error is not None:
                session.error = error
            session.last_activity_at = _now()
            conn.execute(
                """
                UPDATE sessions SET turn_count = ?, cost_usd = ?, working_directory = ?, can_resume = ?,
                    pr_url = ?, error = ?, last_activity_at = ?
                WHERE id = ?
                """,
                (
                    session.turn_count,
                    session.cost_usd,
                    session.working_directory,
                    int(session.can_resume),
                    session.pr_url,
                    session.error,
                    _ts(session.last_activity_at),
                    session.id,
                ),
            )
        return session

    # ------------------------------------------------------------ parallel runs

    def create_parallel_run(
        self,
        urls: Iterable[str],
        max_concurrent: int,
        budget_usd: float | None = None,
    ) -> ParallelRun:
        """Create a run and seed one pending work item per URL.

        URLs naming the same issue (``owner/repo#n``) are collapsed, keeping the
        first occurrence's spelling and position.

        Raises:
            ValueError: If no URLs are given or ``max_concurrent`` is below 1
        """
        by_identity: dict[str, str] = {}
        for url in (raw.strip() for raw in urls):
            if url:
                by_identity.setdefault(_identity(url), url)
        unique_urls = list(by_identity.values())
        if not unique_urls:
            raise ValueError("A parallel run needs at least one URL")
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")

        now = _now()
        run = ParallelRun(
            id=f"run-{uuid.uuid4().hex[:12]}",
            status=RunStatus.ACTIVE,
            max_concurrent=max_concurrent,
            total_issues=len(unique_urls),
            budget_usd=budget_usd,
            pending=len(unique_urls),
            started_at=now,
        )
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO parallel_runs (id, status, max_concurrent, total_issues, budget_usd, pending, started_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (run.id, run.status.value, max_concurrent, run.total_issues, budget_usd, run.pending, _ts(now)),
            )
            conn.executemany(
                "INSERT INTO work_items (run_id, issue_url, position, status) VALUES (?, ?, ?, ?)",
                [(run.id, url, index, WorkItemStatus.PENDING.value) for index, url in enumerate(unique_urls)],
            )

        log.info("parallel_run_created", run_id=run.id, total=run.total_issues, max_concurrent=max_concurrent)
        return run

    def get_parallel_run(self, run_id: str) -> ParallelRun:
        row = self._query_one("SELECT * FROM parallel_runs WHERE id = ?", (run_id,))
        if row is None:
            raise NotFoundError("ParallelRun", run_id)
        return self._run_from_row(row)

    def list_parallel_runs(self, limit: int = 20, status: RunStatus | None = None) -> list[ParallelRun]:
        if status is None:
            rows = self._query_all("SELECT * FROM parallel_runs ORDER BY started_at DESC LIMIT ?", (limit,))
        else:
            rows = self._query_all(
                "SELECT * FROM parallel_runs WHERE status = ? ORDER BY started_at DESC LIMIT ?",
                (RunStatus(status).value, limit),
            )
        return [self._run_from_row(row) for row in rows]

    def update_parallel_run(
        self,
        run_id: str,
        status: RunStatus | None = None,
        stop_reason: StopReason | None = None,
        reason: str | None = None,
    ) -> ParallelRun:
        """Change a run's status and/or stop reason.

        Setting a terminal status stamps ``completed_at`` and the total
        duration. Setting the status the run already has only updates the
        stop reason and writes no transition.

        Raises:
            NotFoundError: If the run is unknown
            InvalidTransitionError: If the status change is not allowed
        """
        with self.transaction() as conn:
            run = self.get_parallel_run(run_id)
            now = _now()
            from_status = run.status

            if status is not None and RunStatus(status) != run.status:
                status = RunStatus(status)
                if status not in RUN_TRANSITIONS[run.status]:
                    raise InvalidTransitionError(run.id, run.status.value, status.value)
                run.status = status
                if status in _TERMINAL_RUN:
                    run.completed_at = now
                    if run.started_at is not None:
                        run.total_duration_ms = int((now - run.started_at).total_seconds() * 1000)
                self._append_transition(
                    conn, EntityType.RUN, run.id, from_status.value, status.value, reason, None, now
                )
            if stop_reason is not None:
                run.stop_reason = StopReason(stop_reason)

            conn.execute(
                """
                UPDATE parallel_runs SET status = ?, stop_reason = ?, completed_at = ?, total_duration_ms = ?
                WHERE id = ?
                """,
                (
                    run.status.value,
                    run.stop_reason.value if run.stop_reason else None,
                    _ts(run.completed_at),
                    run.total_duration_ms,
                    run.id,
                ),
            )

        if run.status != from_status:
            log.info(
                "parallel_run_transitioned",
                run_id=run.id,
                from_status=from_status.value,
                to_status=run.status.value,
            )
        return run

    # -------------------------------------------------------------- work items

    def get_work_items(self, run_id: str) -> list[WorkItem]:
        rows = self._query_all("SELECT * FROM work_items WHERE run_id = ? ORDER BY position", (run_id,))
        return [self._item_from_row(row) for row in rows]

    def get_work_item(self, run_id: str, url: str) -> WorkItem:
        row = self._query_one("SELECT * FROM work_items WHERE run_id = ? AND issue_url = ?", (run_id, url))
        if row is None:
            raise NotFoundError("WorkItem", f"{run_id} {url}")
        return self._item_from_row(row)

    def next_pending_item(self, run_id: str) -> WorkItem | None:
        """Lowest-position pending item that is not held."""
        row = self._query_one(
            "SELECT * FROM work_items WHERE run_id = ? AND status = ? AND held = 0 ORDER BY position LIMIT 1",
            (run_id, WorkItemStatus.PENDING.value),
        )
        return self._item_from_row(row) if row else None

    def update_work_item(
        self,
        run_id: str,
        url: str,
        *,
        status: WorkItemStatus | None = None,
        cost_usd: float | None = None,
        error: str | None = None,
        session_id: str | None = None,
        issue_id: str | None = None,
        held: bool | None = None,
        reason: str | None = None,
    ) -> WorkItem:
        """Patch a work item and refresh the run's counters atomically.

        ``started_at`` is stamped when the item enters ``in_progress`` and
        ``completed_at`` when it reaches a terminal status.

        Raises:
            NotFoundError: If the work item is unknown
            InvalidTransitionError: If the status change is not allowed
        """
        with self.transaction() as conn:
            item = self.get_work_item(run_id, url)
            now = _now()
            from_status = item.status

            if status is not None and WorkItemStatus(status) != item.status:
                status = WorkItemStatus(status)
                if status not in WORK_ITEM_TRANSITIONS[item.status]:
                    raise InvalidTransitionError(f"{run_id} {url}", item.status.value, status.value)
                item.status = status
                if status == WorkItemStatus.IN_PROGRESS:
                    item.started_at = now
                if status in _TERMINAL_ITEM:
                    item.completed_at = now
                    item.held = False
                self._append_transition(
                    conn,
                    EntityType.WORK_ITEM,
                    str(item.id),
                    from_status.value,
                    status.value,
                    reason or error,
                    session_id or item.session_id,
                    now,
                )
            if cost_usd is not None:
                item.cost_usd = cost_usd
            if error is not None:
                item.error = error
            if session_id is not None:
                item.session_id = session_id
            if issue_id is not None:
                item.issue_id = issue_id
            if held is not None and not item.is_terminal:
                item.held = held

            conn.execute(
                """
                UPDATE work_items SET status = ?, held = ?, issue_id = ?, session_id = ?, cost_usd = ?, error = ?,
                    started_at = ?, completed_at = ?
                WHERE id = ?
                """,
                (
                    item.status.value,
                    int(item.held),
                    item.issue_id,
                    item.session_id,
                    item.cost_usd,
                    item.error,
                    _ts(item.started_at),
                    _ts(item.completed_at),
                    item.id,
                ),
            )
            self._refresh_run_counters(conn, run_id)

        if item.status != from_status:
            log.info(
                "work_item_transitioned",
                run_id=run_id,
                url=url,
                from_status=from_status.value,
                to_status=item.status.value,
            )
        return item

    def cancel_pending_items(self, run_id: str, reason: str = "cancelled") -> int:
        """Cancel every pending item of a run in one transaction; returns the count."""
        with self.transaction() as conn:
            now = _now()
            rows = conn.execute(
                "SELECT id FROM work_items WHERE run_id = ? AND status = ?",
                (run_id, WorkItemStatus.PENDING.value),
            ).fetchall()
            for row in rows:
                conn.execute(
                    "UPDATE work_items SET status = ?, held = 0, error = ?, completed_at = ? WHERE id = ?",
                    (WorkItemStatus.CANCELLED.value, reason, _ts(now), row["id"]),
                )
                self._append_transition(
                    conn,
                    EntityType.WORK_ITEM,
                    str(row["id"]),
                    WorkItemStatus.PENDING.value,
                    WorkItemStatus.CANCELLED.value,
                    reason,
                    None,
                    now,
                )
            self._refresh_run_counters(conn, run_id)
        if rows:
            log.info("pending_items_cancelled", run_id=run_id, count=len(rows), reason=reason)
        return len(rows)

    @staticmethod
    def _refresh_run_counters(conn: sqlite3.Connection, run_id: str) -> None:
        counts = {status.value: 0 for status in WorkItemStatus}
        for row in conn.execute(
            "SELECT status, COUNT(*) AS n FROM work_items WHERE run_id = ? GROUP BY status", (run_id,)
        ):
            counts[row["status"]] = row["n"]
        total_cost = conn.execute(
            "SELECT COALESCE(SUM(cost_usd), 0) FROM work_items WHERE run_id = ?", (run_id,)
        ).fetchone()[0]
        conn.execute(
            """
            UPDATE parallel_runs
            SET pending = ?, in_progress = ?, completed = ?, failed = ?, cancelled = ?, total_cost_usd = ?
            WHERE id = ?
            """,
            (
                counts[WorkItemStatus.PENDING.value],
                counts[WorkItemStatus.IN_PROGRESS.value],
                counts[WorkItemStatus.COMPLETED.value],
                counts[WorkItemStatus.FAILED.value],
                counts[WorkItemStatus.CANCELLED.value],
                total_cost,
                run_id,
            ),
        )

    # ------------------------------------------------------------ work records

    def save_work_record(self, record: WorkRecord) -> WorkRecord:
        """Insert or update the record for an (issue, session) attempt.

        Returns the issue's aggregated record (see ``get_work_record``).
        """
        now = _now()
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO work_records (
                    issue_id, session_id, branch_name, worktree_path, pr_number, pr_url, cost_usd,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (issue_id, session_id) DO UPDATE SET
                    branch_name = excluded.branch_name,
                    worktree_path = excluded.worktree_path,
                    pr_number = COALESCE(excluded.pr_number, work_records.pr_number),
                    pr_url = COALESCE(excluded.pr_url, work_records.pr_url),
                    cost_usd = excluded.cost_usd,
                    updated_at = excluded.updated_at
                """,
                (
                    record.issue_id,
                    record.session_id,
                    record.branch_name,
                    record.worktree_path,
                    record.pr_number,
                    record.pr_url,
                    record.total_cost_usd,
                    _ts(now),
                    _ts(now),
                ),
            )
        saved = self.get_work_record(record.issue_id)
        assert saved is not None
        return saved

    def get_work_record(self, issue_id: str) -> WorkRecord | None:
        """Latest attempt for an issue, with attempts and cost aggregated over all attempts."""
        rows = self._query_all(
            "SELECT * FROM work_records WHERE issue_id = ? ORDER BY created_at, rowid", (issue_id,)
        )
        if not rows:
            return None
        latest = rows[-1]
        pr_row = next((row for row in reversed(rows) if row["pr_url"]), None)
        return WorkRecord(
            issue_id=issue_id,
            session_id=latest["session_id"],
            branch_name=latest["branch_name"],
            worktree_path=latest["worktree_path"],
            pr_number=pr_row["pr_number"] if pr_row else None,
            pr_url=pr_row["pr_url"] if pr_row else None,
            attempts=len(rows),
            total_cost_usd=sum(row["cost_usd"] for row in rows),
            created_at=_dt(rows[0]["created_at"]),
            updated_at=_dt(latest["updated_at"]),
        )

    def list_work_records(self) -> list[WorkRecord]:
        rows = self._query_all("SELECT DISTINCT issue_id FROM work_records ORDER BY issue_id")
        records = [self.get_work_record(row["issue_id"]) for row in rows]
        return [record for record in records if record is not None]

    # ------------------------------------------------------------------- spend

    def record_spend(self, scope_id: str, amount_usd: float) -> None:
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO spend_ledger (scope_id, amount_usd, recorded_at) VALUES (?, ?, ?)",
                (scope_id, amount_usd, _ts(_now())),
            )

    def get_spend(self, scope_id: str | None = None, since: datetime | None = None) -> float:
        """Total spend for a scope (including nested scopes), optionally since a time."""
        clauses: list[str] = []
        params: list[Any] = []
        if scope_id is not None:
            clause, scope_params = _scope_clause(scope_id)
            clauses.append(clause)
            params.extend(scope_params)
        if since is not None:
            clauses.append("recorded_at >= ?")
            params.append(_ts(since.astimezone(UTC)))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        row = self._query_one(f"SELECT COALESCE(SUM(amount_usd), 0) FROM spend_ledger {where}", params)
        return float(row[0]) if row else 0.0

    # ----------------------------------------------------------------- queries

    def get_transitions(self, entity_id: str, entity_type: EntityType | None = None) -> list[Transition]:
        """Full, ordered transition history for an entity.

        Issues may be looked up by URL as well as by id.
        """
        if entity_type in (None, EntityType.ISSUE):
            issue = self.find_issue(entity_id)
            if issue is not None:
                entity_id = issue.id
        if entity_type is None:
            rows = self._query_all("SELECT * FROM transitions WHERE entity_id = ? ORDER BY id", (entity_id,))
        else:
            rows = self._query_all(
                "SELECT * FROM transitions WHERE entity_id = ? AND entity_type = ? ORDER BY id",
                (entity_id, EntityType(entity_type).value),
            )
        return [
            Transition(
                id=row["id"],
                entity_type=EntityType(row["entity_type"]),
                entity_id=row["entity_id"],
                from_state=row["from_state"],
                to_state=row["to_state"],
                reason=row["reason"],
                session_id=row["session_id"],
                timestamp=_dt(row["timestamp"]) or _now(),
            )
            for row in rows
        ]

    def get_stats(self) -> StoreStats:
        def grouped(table: str, column: str) -> dict[str, int]:
            rows = self._query_all(f"SELECT {column} AS key, COUNT(*) AS n FROM {table} GROUP BY {column}")
            return {row["key"]: row["n"] for row in rows}

        transitions = self._query_one("SELECT COUNT(*) FROM transitions")
        return StoreStats(
            issues_by_state=grouped("issues", "state"),
            sessions_by_status=grouped("sessions", "status"),
            runs_by_status=grouped("parallel_runs", "status"),
            total_cost_usd=self.get_spend(),
            total_transitions=int(transitions[0]) if transitions else 0,
        )

    # ----------------------------------------------------------------- mapping

    @staticmethod
    def _issue_from_row(row: sqlite3.Row) -> Issue:
        return Issue(
            id=row["id"],
            url=row["url"],
            project_id=row["project_id"],
            number=row["number"],
            title=row["title"],
            body=row["body"],
            labels=json.loads(row["labels"]),
            state=IssueState(row["state"]),
            pr_number=row["pr_number"],
            pr_url=row["pr_url"],
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    @staticmethod
    def _session_from_row(row: sqlite3.Row) -> Session:
        return Session(
            id=row["id"],
            issue_id=row["issue_id"],
            issue_url=row["issue_url"],
            status=SessionStatus(row["status"]),
            provider=row["provider"],
            model=row["model"],
            turn_count=row["turn_count"],
            cost_usd=row["cost_usd"],
            working_directory=row["working_directory"],
            can_resume=bool(row["can_resume"]),
            pr_url=row["pr_url"],
            error=row["error"],
            started_at=_dt(row["started_at"]),
            last_activity_at=_dt(row["last_activity_at"]),
            completed_at=_dt(row["completed_at"]),
        )

    @staticmethod
    def _run_from_row(row: sqlite3.Row) -> ParallelRun:
        return ParallelRun(
            id=row["id"],
            status=RunStatus(row["status"]),
            max_concurrent=row["max_concurrent"],
            total_issues=row["total_issues"],
            budget_usd=row["budget_usd"],
            pending=row["pending"],
            in_progress=row["in_progress"],
            completed=row["completed"],
            failed=row["failed"],
            cancelled=row["cancelled"],
            total_cost_usd=row["total_cost_usd"],
            total_duration_ms=row["total_duration_ms"],
            stop_reason=StopReason(row["stop_reason"]) if row["stop_reason"] else None,
            started_at=_dt(row["started_at"]),
            completed_at=_dt(row["completed_at"]),
        )

    @staticmethod
    def _item_from_row(row: sqlite3.Row) -> WorkItem:
        return WorkItem(
            id=row["id"],
            run_id=row["run_id"],
            issue_url=row["issue_url"],
            position=row["position"],
            status=WorkItemStatus(row["status"]),
            held=bool(row["held"]),
            issue_id=row["issue_id"],
            session_id=row["session_id"],
            cost_usd=row["cost_usd"],
            error=row["error"],
            started_at=_dt(row["started_at"]),
            completed_at=_dt(row["completed_at"]),
        )
