"""Workspace records returned by the workspace manager."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path


@dataclass
class Repository:
    """A local clone and how its remotes are laid out."""

    path: Path
    owner: str
    name: str
    default_branch: str
    fork_owner: str | None = None
    """Set in fork workflow: pushes go to the ``fork`` remote."""

    @property
    def project_id(self) -> str:
        return f"{self.owner}/{self.name}"

    @property
    def is_fork_workflow(self) -> bool:
        return self.fork_owner is not None

    @property
    def push_remote(self) -> str:
        return "fork" if self.is_fork_workflow else "origin"


@dataclass
class BranchResult:
    name: str
    created: bool
    """False when an existing branch was attached to (reuse)."""

    base: str
    strategy_used: str


@dataclass
class WorktreeInfo:
    """A live isolated checkout."""

    path: Path
    branch: str
    repo_path: Path
    issue_id: str
    base_branch: str
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class Workspace:
    """Everything a unit of work needs: clone, branch and checkout."""

    repository: Repository
    branch: BranchResult
    worktree: WorktreeInfo

    @property
    def path(self) -> Path:
        return self.worktree.path
