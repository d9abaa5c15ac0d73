"""
File-level conflict detection between concurrently active workspaces.

A unit's file set is only known once it has started changing files, so
detection is continuous: ``ConflictMonitor`` re-checks on a timer and
whenever the orchestrator asks (after each state change). Two worktrees of the
same repository conflict when their modified-file sets intersect.

What happens next depends on the policy:

    skip   detection is off
    warn   the conflict is reported and both units continue
    block  the conflict is reported and the orchestrator stops the later unit

A separate, advisory pre-flight check predicts overlap from issue text
before any work starts.
"""

import asyncio
import posixpath
import re
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from itertools import combinations

import structlog

from patchfleet.enums import ConflictPolicy
from patchfleet.workspace.models import WorktreeInfo

log = structlog.get_logger(__name__)

FilesProvider = Callable[[WorktreeInfo], Awaitable[set[str]]]

_EXTENSIONS = "py|pyi|ts|tsx|js|jsx|rb|go|rs|java|c|cpp|h|hpp|css|scss|html|json|toml|yaml|yml|md|txt"

_FILE_PATTERNS = (
    re.compile(r"(?:^|\s|`)((?:src|lib|test|tests|app|packages|components|pages|api)/[\w\-./]+\.\w+)", re.MULTILINE),
    re.compile(rf"(?:^|\s|`)([\w\-./]+\.(?:{_EXTENSIONS}))\b", re.MULTILINE),
)

_AREA_KEYWORDS: dict[str, tuple[str, ...]] = {
    "src/auth": ("auth", "login", "logout", "session", "token", "oauth", "jwt"),
    "src/api": ("api", "endpoint", "route", "handler", "controller"),
    "src/database": ("database", "db", "query", "migration", "schema", "model"),
    "src/ui": ("ui", "component", "button", "form", "modal", "dialog"),
    "src/utils": ("util", "utils", "helper", "helpers", "common", "shared"),
    "tests": ("test", "tests", "spec", "fixture"),
    "docs": ("docs", "documentation", "readme"),
    "config": ("config", "settings", "env", "environment"),
}


@dataclass(frozen=True)
class Conflict:
    """Two active units modifying the same paths."""

    first: str
    second: str
    files: frozenset[str]


@dataclass
class ConflictReport:
    conflicts: list[Conflict] = field(default_factory=list)
    checked: int = 0

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)

    def units(self) -> set[str]:
        return {unit for conflict in self.conflicts for unit in (conflict.first, conflict.second)}


@dataclass(frozen=True)
class PreflightOverlap:
    issue_url: str
    other_url: str
    shared: tuple[str, ...]


class ConflictDetector:
    """Pairwise modified-file intersection under a pluggable policy."""

    def __init__(self, files_provider: FilesProvider, policy: ConflictPolicy = ConflictPolicy.WARN) -> None:
        self.files_provider = files_provider
        self.policy = ConflictPolicy(policy)

    async def check_conflicts(self, active_worktrees: Sequence[WorktreeInfo]) -> ConflictReport:
        """Intersect modified-file sets of every pair of worktrees in the same repository."""
        if self.policy == ConflictPolicy.SKIP or len(active_worktrees) < 2:
            return ConflictReport(checked=len(active_worktrees))

        file_sets = await asyncio.gather(*(self._files(worktree) for worktree in active_worktrees))
        conflicts = []
        for (a, files_a), (b, files_b) in combinations(zip(active_worktrees, file_sets, strict=True), 2):
            if a.repo_path != b.repo_path:
                continue
            shared = files_a & files_b
            if shared:
                conflicts.append(Conflict(first=a.issue_id, second=b.issue_id, files=frozenset(shared)))

        if conflicts:
            log.warning(
                "workspace_conflicts_detected",
                policy=self.policy.value,
                pairs=[(c.first, c.second) for c in conflicts],
            )
        return ConflictReport(conflicts=conflicts, checked=len(active_worktrees))

    def should_block(self, report: ConflictReport) -> bool:
        return self.policy == ConflictPolicy.BLOCK and report.has_conflicts

    async def _files(self, worktree: WorktreeInfo) -> set[str]:
        try:
            return await self.files_provider(worktree)
        except Exception as e:
            log.warning("modified_files_unavailable", path=str(worktree.path), error=str(e))
            return set()

    # --------------------------------------------------------------- pre-flight

    @staticmethod
    def analyze_scope(title: str, body: str) -> set[str]:
        """Guess which files or areas an issue will touch from its text."""
        text = f"{title}\n{body}"
        predicted = {_normalize(match) for pattern in _FILE_PATTERNS for match in pattern.findall(text)}

        words = set(re.findall(r"[a-z]+", text.lower()))
        for area, keywords in _AREA_KEYWORDS.items():
            if words.intersection(keywords):
                predicted.add(area)
        return predicted

    def detect_preflight_conflicts(self, issues: Iterable[tuple[str, str, str]]) -> list[PreflightOverlap]:
        """Predicted overlaps between issues given as ``(url, title, body)``."""
        scopes = [(url, self.analyze_scope(title, body)) for url, title, body in issues]
        overlaps = []
        for (url_a, files_a), (url_b, files_b) in combinations(scopes, 2):
            shared = sorted({a for a in files_a for b in files_b if _paths_overlap(a, b)})
            if shared:
                overlaps.append(PreflightOverlap(issue_url=url_a, other_url=url_b, shared=tuple(shared)))
        if overlaps:
            log.warning("preflight_conflicts_predicted", count=len(overlaps))
        return overlaps


def _normalize(path: str) -> str:
    path = path.strip().strip("`'\"").lstrip("./")
    return path.rstrip("/")


def _paths_overlap(a: str, b: str) -> bool:
    a, b = _normalize(a), _normalize(b)
    if a == b:
        return True
    if a.startswith(f"{b}/") or b.startswith(f"{a}/"):
        return True
    dir_a, dir_b = posixpath.dirname(a), posixpath.dirname(b)
    return bool(dir_a) and dir_a == dir_b


class ConflictMonitor:
    """Re-runs conflict detection periodically and on demand.

    Each distinct conflict (same pair, same files) is reported once through
    ``on_conflict``.
    """

    def __init__(
        self,
        detector: ConflictDetector,
        worktrees: Callable[[], Sequence[WorktreeInfo]],
        on_conflict: Callable[[Conflict], None],
        interval: float = 5.0,
    ) -> None:
        self.detector = detector
        self.worktrees = worktrees
        self.on_conflict = on_conflict
        self.interval = interval
        self._seen: set[Conflict] = set()
        self._task: asyncio.Task[None] | None = None
        self._check_lock = asyncio.Lock()

    async def check_now(self) -> ConflictReport:
        async with self._check_lock:
            report = await self.detector.check_conflicts(list(self.worktrees()))
            for conflict in report.conflicts:
                if conflict not in self._seen:
                    self._seen.add(conflict)
                    self.on_conflict(conflict)
            return report

    def start(self) -> None:
        if self._task is None and self.detector.policy != ConflictPolicy.SKIP:
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.check_now()
            except Exception:
                log.warning("conflict_check_failed", exc_info=True)
