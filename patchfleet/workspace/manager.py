"""
Git workspace lifecycle: clones, forks, branches and worktrees.

Each unit of work gets its own worktree under ``worktrees_dir``, checked out
on its own branch from a shared clone under ``repos_dir/{owner}/{name}``.
Workers therefore never write the same path; the only shared resource is a
repository's ref namespace, and every branch create/delete (and worktree
add, which locks the branch) runs under that repository's lock.

Branch collisions are resolved by the configured ``BranchStrategy``. The
auto-clean strategy never deletes a remote branch that backs an open pull
request: when the host reports one, or no host client is configured to ask,
it falls back to reuse. The check covers the fork remote in fork workflow;
outside fork workflow no remote branch is ever deleted.
"""

from __future__ import annotations

import shutil
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from patchfleet.config.settings import GitConfig, ParallelConfig
from patchfleet.enums import BranchStrategy
from patchfleet.exceptions import (
    BranchExistsError,
    GitOperationError,
    WorktreeConflictError,
    WorktreeLimitError,
)
from patchfleet.models.domain import IssueRef
from patchfleet.providers.base import VCSHost
from patchfleet.workspace.git import GitRunner
from patchfleet.workspace.locks import RepoLockRegistry
from patchfleet.workspace.models import BranchResult, Repository, Workspace, WorktreeInfo
from patchfleet.workspace.naming import branch_name, clone_url, suffix_candidates, worktree_dir_name

if TYPE_CHECKING:
    from patchfleet.state.store import StateStore

log = structlog.get_logger(__name__)

FORK_REMOTE = "fork"
FORK_OWNER_CONFIG_KEY = "patchfleet.forkowner"


class WorkspaceManager:
    """Creates and tears down isolated git workspaces.

    Attributes:
        repos_dir: Root for shared clones
        worktrees_dir: Root for per-unit worktrees
    """

    def __init__(
        self,
        git_config: GitConfig,
        parallel_config: ParallelConfig,
        repos_dir: Path | str,
        worktrees_dir: Path | str,
        git: GitRunner | None = None,
        vcs: VCSHost | None = None,
    ) -> None:
        self.config = git_config
        self.parallel = parallel_config
        self.repos_dir = Path(repos_dir)
        self.worktrees_dir = Path(worktrees_dir)
        self.git = git or GitRunner(
            network_timeout=git_config.network_timeout,
            kill_grace=git_config.kill_grace_period,
        )
        self.vcs = vcs
        self.locks = RepoLockRegistry()
        self._repositories: dict[Path, Repository] = {}
        self._worktrees: dict[tuple[str, str], WorktreeInfo] = {}
        self._acquiring: set[tuple[str, str]] = set()

    # ------------------------------------------------------------ repositories

    async def ensure_repository(self, url: str, owner: str, name: str) -> Repository:
        """Clone ``url`` on first use, fetch on later calls.

        In fork workflow, when the host reports no push access, a fork is
        created and added as the ``fork`` remote; ``origin`` stays upstream.

        Returns:
            The local Repository
        """
        repo_path = self.repos_dir / owner / name
        async with self.locks.hold(repo_path):
            if not (repo_path / ".git").exists():
                repo_path.parent.mkdir(parents=True, exist_ok=True)
                log.info("repository_cloning", repo=f"{owner}/{name}", path=str(repo_path))
                await self.git.run("clone", url, str(repo_path), cwd=repo_path.parent)
            else:
                await self.git.run("fetch", "origin", "--prune", cwd=repo_path)

            repo = self._repositories.get(repo_path)
            if repo is None:
                repo = Repository(
                    path=repo_path,
                    owner=owner,
                    name=name,
                    default_branch=self.config.default_branch,
                    fork_owner=await self._read_fork_owner(repo_path),
                )
                if repo.fork_owner is None:
                    await self._setup_fork_if_needed(repo)
                self._repositories[repo_path] = repo

            if repo.is_fork_workflow:
                await self.git.run("fetch", FORK_REMOTE, "--prune", cwd=repo_path)

        log.info("repository_ready", repo=repo.project_id, fork_owner=repo.fork_owner)
        return repo

    async def _read_fork_owner(self, repo_path: Path) -> str | None:
        try:
            value = await self.git.run("config", "--get", FORK_OWNER_CONFIG_KEY, cwd=repo_path)
        except GitOperationError:
            return None
        return value.strip() or None

    async def _setup_fork_if_needed(self, repo: Repository) -> None:
        if self.vcs is None or not self.config.fork_workflow:
            return
        if await self.vcs.has_push_access(repo.owner, repo.name):
            return

        fork = await self.vcs.create_fork(repo.owner, repo.name)
        remotes = (await self.git.run("remote", cwd=repo.path)).split()
        if FORK_REMOTE in remotes:
            await self.git.run("remote", "set-url", FORK_REMOTE, fork.clone_url, cwd=repo.path)
        else:
            await self.git.run("remote", "add", FORK_REMOTE, fork.clone_url, cwd=repo.path)
        await self.git.run("config", FORK_OWNER_CONFIG_KEY, fork.owner, cwd=repo.path)
        repo.fork_owner = fork.owner
        log.info("fork_workflow_enabled", repo=repo.project_id, fork_owner=fork.owner)

    # ---------------------------------------------------------------- branches

    async def create_branch(
        self,
        repo: Repository,
        issue_number: int,
        title: str,
        base: str | None = None,
    ) -> BranchResult:
        """Create the work branch for an issue, resolving name collisions.

        Args:
            repo: Repository from ``ensure_repository``
            issue_number: Issue number, part of the branch name
            title: Issue title, slugged into the branch name
            base: Base branch; defaults to the repository default branch

        Returns:
            BranchResult naming the branch to check out

        Raises:
            BranchExistsError: Strategy ``fail`` hit a collision, or ``suffix``
                ran out of probes
            WorktreeConflictError: The branch is checked out by an active unit
        """
        base = base or repo.default_branch
        name = branch_name(self.config.branch_prefix, issue_number, title)
        strategy = self.config.existing_branch_strategy

        async with self.locks.hold(repo.path):
            local = await self._local_branch_exists(repo, name)
            remote = await self._remote_branch_exists(repo, name)
            if not local and not remote:
                await self._create_local_branch(repo, name, base)
                return BranchResult(name=name, created=True, base=base, strategy_used="new")

            log.info("branch_collision", branch=name, local=local, remote=remote, strategy=strategy.value)

            if strategy == BranchStrategy.FAIL:
                raise BranchExistsError(
                    f"Branch {name} already exists",
                    hint="Set git.existing_branch_strategy to reuse, suffix or auto-clean",
                )

            if strategy == BranchStrategy.REUSE:
                return await self._reuse_branch(repo, name, base, local)

            if strategy == BranchStrategy.SUFFIX:
                for candidate in suffix_candidates(name, self.config.suffix_probe_limit):
                    if await self._local_branch_exists(repo, candidate):
                        continue
                    if await self._remote_branch_exists(repo, candidate):
                        continue
                    await self._create_local_branch(repo, candidate, base)
                    return BranchResult(name=candidate, created=True, base=base, strategy_used="suffix")
                raise BranchExistsError(
                    f"No free suffix for {name} up to -{self.config.suffix_probe_limit}",
                    hint="Clean up old branches or raise git.suffix_probe_limit",
                )

            return await self._auto_clean_branch(repo, name, base, local, remote)

    async def _auto_clean_branch(
        self,
        repo: Repository,
        name: str,
        base: str,
        local: bool,
        remote: bool,
    ) -> BranchResult:
        delete_remote = remote and repo.is_fork_workflow
        if delete_remote and self.vcs is None:
            # Without a host client an open PR cannot be ruled out.
            log.warning("auto_clean_pr_status_unknown", branch=name, repo=repo.project_id)
            return await self._reuse_branch(repo, name, base, local)
        if delete_remote and await self.vcs.has_open_pr(repo.owner, repo.name, name, head_owner=repo.fork_owner):
            log.warning("auto_clean_skipped_open_pr", branch=name, repo=repo.project_id)
            result = await self._reuse_branch(repo, name, base, local)
            result.strategy_used = "reuse-open-pr"
            return result

        if local:
            await self._release_stale_checkout(repo, name)
            await self.git.run("branch", "-D", name, cwd=repo.path)
        if delete_remote:
            await self.git.run("push", FORK_REMOTE, "--delete", name, cwd=repo.path)

        log.info("branch_auto_cleaned", branch=name, local=local, remote=delete_remote)
        await self._create_local_branch(repo, name, base)
        return BranchResult(name=name, created=True, base=base, strategy_used="auto-clean")

    async def _reuse_branch(self, repo: Repository, name: str, base: str, local: bool) -> BranchResult:
        if not local:
            remote = repo.push_remote
            if not await self._remote_branch_exists(repo, name):
                remote = "origin"
            await self.git.run("fetch", remote, name, cwd=repo.path)
            await self.git.run("branch", "--track", name, f"{remote}/{name}", cwd=repo.path)
        log.info("branch_reused", branch=name, fetched=not local)
        return BranchResult(name=name, created=False, base=base, strategy_used="reuse")

    async def _create_local_branch(self, repo: Repository, name: str, base: str) -> None:
        start_point = f"origin/{base}"
        if not await self.git.succeeds("rev-parse", "--verify", "--quiet", start_point, cwd=repo.path):
            raise GitOperationError(
                f"Base branch {start_point} not found in {repo.project_id}",
                hint="Check git.default_branch matches the repository's default branch",
            )
        await self.git.run("branch", "--no-track", name, start_point, cwd=repo.path)
        log.info("branch_created", branch=name, base=start_point)

    async def _local_branch_exists(self, repo: Repository, name: str) -> bool:
        return await self.git.succeeds("show-ref", "--verify", "--quiet", f"refs/heads/{name}", cwd=repo.path)

    async def _remote_branch_exists(self, repo: Repository, name: str) -> bool:
        ref = f"refs/remotes/{repo.push_remote}/{name}"
        return await self.git.succeeds("show-ref", "--verify", "--quiet", ref, cwd=repo.path)

    async def _checkouts(self, repo: Repository) -> dict[str, Path]:
        """Map of branch name to worktree path, from ``git worktree list``."""
        output = await self.git.run("worktree", "list", "--porcelain", cwd=repo.path)
        checkouts: dict[str, Path] = {}
        current: Path | None = None
        for line in output.splitlines():
            if line.startswith("worktree "):
                current = Path(line[len("worktree ") :])
            elif line.startswith("branch refs/heads/") and current is not None:
                checkouts[line[len("branch refs/heads/") :]] = current
        return checkouts

    def _is_active_path(self, path: Path) -> bool:
        resolved = path.resolve()
        return any(info.path.resolve() == resolved for info in self._worktrees.values())

    async def _release_stale_checkout(self, repo: Repository, branch: str, keep: Path | None = None) -> None:
        """Remove an unregistered worktree that still holds ``branch``."""
        await self.git.run("worktree", "prune", cwd=repo.path)
        path = (await self._checkouts(repo)).get(branch)
        if path is None or path.resolve() == repo.path.resolve():
            return
        if keep is not None and path.resolve() == keep.resolve():
            return
        if self._is_active_path(path):
            raise WorktreeConflictError(
                f"Branch {branch} is checked out by an active worktree at {path}",
                hint="Wait for the other unit to finish or cancel it",
            )
        log.warning("stale_worktree_removed", branch=branch, path=str(path))
        await self._remove_checkout(repo.path, path)

    # --------------------------------------------------------------- worktrees

    async def create_worktree(self, repo: Repository, branch: str, unit_id: str) -> WorktreeInfo:
        """Check ``branch`` out into an isolated worktree for ``unit_id``.

        A leftover checkout of the same branch at the target path (for
        example from a crashed run) is adopted instead of recreated.

        Raises:
            WorktreeConflictError: ``unit_id`` already has an active worktree
                in this repository
            WorktreeLimitError: A worktree limit would be exceeded
        """
        key = (str(repo.path), unit_id)
        path = self.worktrees_dir / worktree_dir_name(repo.path, unit_id)

        async with self.locks.hold(repo.path):
            self._check_not_active(key)
            self._check_limits(repo)

            if path.exists():
                head = await self._current_branch(path)
                if head == branch:
                    info = WorktreeInfo(
                        path=path, branch=branch, repo_path=repo.path, issue_id=unit_id, base_branch=repo.default_branch
                    )
                    self._worktrees[key] = info
                    log.info("worktree_reconciled", path=str(path), branch=branch)
                    return info
                await self._remove_checkout(repo.path, path)

            await self._release_stale_checkout(repo, branch, keep=path)
            self.worktrees_dir.mkdir(parents=True, exist_ok=True)
            await self.git.run("worktree", "add", str(path), branch, cwd=repo.path)

            info = WorktreeInfo(
                path=path, branch=branch, repo_path=repo.path, issue_id=unit_id, base_branch=repo.default_branch
            )
            self._worktrees[key] = info

        log.info("worktree_created", path=str(path), branch=branch, unit_id=unit_id, active=len(self._worktrees))
        return info

    def _check_not_active(self, key: tuple[str, str]) -> None:
        existing = self._worktrees.get(key)
        if existing is None:
            return
        if existing.path.exists():
            raise WorktreeConflictError(
                f"{key[1]} already has an active worktree at {existing.path}",
                hint="Release the existing workspace before acquiring a new one",
            )
        del self._worktrees[key]

    def _check_limits(self, repo: Repository) -> None:
        if len(self._worktrees) >= self.parallel.max_worktrees:
            raise WorktreeLimitError(
                f"Worktree limit reached ({self.parallel.max_worktrees})",
                hint="Raise parallel.max_worktrees or wait for running units to finish",
            )
        in_repo = sum(1 for info in self._worktrees.values() if info.repo_path == repo.path)
        if in_repo >= self.parallel.max_worktrees_per_project:
            raise WorktreeLimitError(
                f"Worktree limit for {repo.project_id} reached ({self.parallel.max_worktrees_per_project})",
                hint="Raise parallel.max_worktrees_per_project",
            )

    async def _current_branch(self, path: Path) -> str | None:
        try:
            head = await self.git.run("rev-parse", "--abbrev-ref", "HEAD", cwd=path)
        except GitOperationError:
            return None
        return head.strip()

    async def remove_worktree(self, repo_path: Path | str, worktree_path: Path | str) -> None:
        """Tear a worktree down; falls back to deleting the directory and pruning."""
        repo_path, worktree_path = Path(repo_path), Path(worktree_path)
        async with self.locks.hold(repo_path):
            await self._remove_checkout(repo_path, worktree_path)
        for key, info in list(self._worktrees.items()):
            if info.path == worktree_path:
                del self._worktrees[key]
        log.info("worktree_removed", path=str(worktree_path))

    async def _remove_checkout(self, repo_path: Path, worktree_path: Path) -> None:
        try:
            await self.git.run("worktree", "remove", "--force", str(worktree_path), cwd=repo_path)
        except GitOperationError as e:
            log.warning("worktree_remove_fallback", path=str(worktree_path), error=e.message)
            shutil.rmtree(worktree_path, ignore_errors=True)
            await self.git.succeeds("worktree", "prune", cwd=repo_path)

    def active_worktrees(self) -> list[WorktreeInfo]:
        return list(self._worktrees.values())

    async def get_modified_files(self, worktree: WorktreeInfo | Path | str, base: str | None = None) -> set[str]:
        """Paths changed in a worktree relative to its base branch.

        Unions committed changes since the merge base with ``origin/{base}``,
        staged changes, unstaged changes and untracked files.
        """
        if isinstance(worktree, WorktreeInfo):
            path = worktree.path
            base = base or worktree.base_branch
        else:
            path = Path(worktree)
            base = base or self.config.default_branch

        base_ref = f"origin/{base}"
        if not await self.git.succeeds("rev-parse", "--verify", "--quiet", base_ref, cwd=path):
            base_ref = base

        files: set[str] = set()
        for args in (
            ("diff", "--name-only", f"{base_ref}...HEAD"),
            ("diff", "--name-only", "--cached"),
            ("diff", "--name-only"),
            ("ls-files", "--others", "--exclude-standard"),
        ):
            try:
                output = await self.git.run(*args, cwd=path)
            except GitOperationError as e:
                log.warning("modified_files_partial", path=str(path), command=args[0], error=e.message)
                continue
            files.update(line.strip() for line in output.splitlines() if line.strip())
        return files

    # ------------------------------------------------------ unit-level helpers

    async def acquire(self, ref: IssueRef, title: str, unit_id: str | None = None) -> Workspace:
        """Clone or fetch, create the branch, and check it out for one unit of work."""
        url = clone_url(self.config.clone_url_template, ref.host, ref.owner, ref.repo)
        repo = await self.ensure_repository(url, ref.owner, ref.repo)
        key = (str(repo.path), unit_id or ref.issue_id)
        # Refuse a busy unit before any branch is created for it.
        if key in self._acquiring:
            raise WorktreeConflictError(
                f"{key[1]} is already acquiring a workspace",
                hint="Release the existing workspace before acquiring a new one",
            )
        self._check_not_active(key)
        self._acquiring.add(key)
        try:
            branch = await self.create_branch(repo, ref.number, title)
            worktree = await self.create_worktree(repo, branch.name, key[1])
        finally:
            self._acquiring.discard(key)
        return Workspace(repository=repo, branch=branch, worktree=worktree)

    async def release(self, workspace: Workspace, keep: bool | None = None) -> None:
        keep = self.parallel.keep_worktrees if keep is None else keep
        if keep:
            key = (str(workspace.repository.path), workspace.worktree.issue_id)
            self._worktrees.pop(key, None)
            log.info("worktree_kept", path=str(workspace.path))
            return
        await self.remove_worktree(workspace.repository.path, workspace.path)

    def sync_with_disk(self) -> int:
        """Forget registered worktrees whose directory no longer exists."""
        missing = [key for key, info in self._worktrees.items() if not info.path.exists()]
        for key in missing:
            del self._worktrees[key]
        if missing:
            log.info("worktree_registry_synced", removed=len(missing))
        return len(missing)

    async def cleanup_stale(self, max_age_hours: float | None = None) -> int:
        """Remove registered worktrees older than ``max_age_hours``."""
        max_age = self.parallel.auto_cleanup_hours if max_age_hours is None else max_age_hours
        cutoff = datetime.now(UTC) - timedelta(hours=max_age)
        stale = [info for info in self._worktrees.values() if info.created_at < cutoff]
        for info in stale:
            await self.remove_worktree(info.repo_path, info.path)
        return len(stale)

    async def cleanup_abandoned(self, store: StateStore) -> int:
        """Remove worktrees left behind by issues that reached a terminal state."""
        removed = 0
        for record in store.list_work_records():
            if not record.worktree_path:
                continue
            path = Path(record.worktree_path)
            if not path.exists() or self._is_active_path(path):
                continue
            issue = store.find_issue(record.issue_id)
            if issue is None or not issue.is_terminal:
                continue
            owner, name = issue.project_id.split("/", 1)
            await self.remove_worktree(self.repos_dir / owner / name, path)
            removed += 1
        log.info("abandoned_worktrees_cleaned", removed=removed)
        return removed
