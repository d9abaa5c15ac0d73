"""Workspace manager tests against real git repositories.

Each test builds a bare "upstream" repository on disk and points the clone
URL template at it, so clone, fetch, push and worktree commands run for real
without network access.
"""

import shutil
import subprocess
from pathlib import Path

import pytest

from patchfleet.config.settings import GitConfig, ParallelConfig
from patchfleet.enums import BranchStrategy
from patchfleet.exceptions import BranchExistsError, WorktreeConflictError, WorktreeLimitError
from patchfleet.models.domain import IssueRef, IssueState, WorkRecord
from patchfleet.providers.base import ForkInfo, RemoteIssue, VCSHost
from patchfleet.workspace.manager import WorkspaceManager
from patchfleet.workspace.naming import branch_name

pytestmark = [
    pytest.mark.git,
    pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed"),
]

REF = IssueRef(host="github.com", owner="acme", repo="widgets", number=1)
TITLE = "Fix it"


def git(*args: str, cwd: Path | None = None) -> str:
    return subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True).stdout


def has_branch(bare: Path, name: str) -> bool:
    result = subprocess.run(
        ["git", "--git-dir", str(bare), "show-ref", "--verify", "--quiet", f"refs/heads/{name}"],
        check=False,
    )
    return result.returncode == 0


class FakeVCS(VCSHost):
    """Host without push access whose open-PR answer is scripted."""

    def __init__(self, fork_url: str, open_pr: bool) -> None:
        self.fork_url = fork_url
        self.open_pr = open_pr
        self.pr_checks: list[tuple[str, str | None]] = []

    async def get_issue(self, owner: str, repo: str, number: int) -> RemoteIssue:
        return RemoteIssue(number=number, title=TITLE)

    async def has_open_pr(self, owner: str, repo: str, branch: str, head_owner: str | None = None) -> bool:
        self.pr_checks.append((branch, head_owner))
        return self.open_pr

    async def has_push_access(self, owner: str, repo: str) -> bool:
        return False

    async def create_fork(self, owner: str, repo: str) -> ForkInfo:
        return ForkInfo(owner="bot", name=repo, clone_url=self.fork_url)


@pytest.fixture(autouse=True)
def git_identity(monkeypatch):
    for key in ("GIT_AUTHOR_NAME", "GIT_COMMITTER_NAME"):
        monkeypatch.setenv(key, "patchfleet tests")
    for key in ("GIT_AUTHOR_EMAIL", "GIT_COMMITTER_EMAIL"):
        monkeypatch.setenv(key, "tests@example.com")


@pytest.fixture
def upstream(tmp_path, git_identity) -> Path:
    """Bare repository ``upstream/acme/widgets.git`` with one commit on main."""
    seed = tmp_path / "seed"
    seed.mkdir()
    git("init", "-q", cwd=seed)
    (seed / "README.md").write_text("widgets\n")
    (seed / "src").mkdir()
    (seed / "src" / "app.py").write_text("print('hi')\n")
    git("add", ".", cwd=seed)
    git("commit", "-q", "-m", "initial", cwd=seed)
    git("branch", "-M", "main", cwd=seed)

    bare = tmp_path / "upstream" / "acme" / "widgets.git"
    bare.parent.mkdir(parents=True)
    git("init", "-q", "--bare", str(bare))
    git("--git-dir", str(bare), "symbolic-ref", "HEAD", "refs/heads/main")
    git("push", "-q", str(bare), "main", cwd=seed)
    return bare


def make_manager(tmp_path: Path, vcs: VCSHost | None = None, **git_options) -> WorkspaceManager:
    git_config = GitConfig(
        clone_url_template=str(tmp_path / "upstream") + "/{owner}/{repo}.git",
        **git_options,
    )
    parallel = ParallelConfig(max_worktrees_per_project=3)
    return WorkspaceManager(git_config, parallel, tmp_path / "repos", tmp_path / "worktrees", vcs=vcs)


class TestAcquireRelease:
    @pytest.mark.asyncio
    async def test_acquire_creates_isolated_worktree(self, tmp_path, upstream):
        manager = make_manager(tmp_path)

        workspace = await manager.acquire(REF, TITLE)

        assert workspace.branch.created
        assert workspace.branch.strategy_used == "new"
        assert workspace.branch.name == branch_name("patchfleet", 1, TITLE)
        assert (workspace.path / "README.md").exists()
        assert git("rev-parse", "--abbrev-ref", "HEAD", cwd=workspace.path).strip() == workspace.branch.name
        assert manager.active_worktrees() == [workspace.worktree]

        await manager.release(workspace)

        assert not workspace.path.exists()
        assert manager.active_worktrees() == []

    @pytest.mark.asyncio
    async def test_second_acquire_fetches_existing_clone(self, tmp_path, upstream):
        manager = make_manager(tmp_path, existing_branch_strategy=BranchStrategy.SUFFIX)

        first = await manager.acquire(REF, TITLE, unit_id="one")
        second = await manager.acquire(REF, TITLE, unit_id="two")

        assert first.repository.path == second.repository.path
        assert first.path != second.path
        assert second.branch.name == f"{first.branch.name}-2"

    @pytest.mark.asyncio
    async def test_keep_leaves_worktree_on_disk(self, tmp_path, upstream):
        manager = make_manager(tmp_path)
        workspace = await manager.acquire(REF, TITLE)

        await manager.release(workspace, keep=True)

        assert workspace.path.exists()
        assert manager.active_worktrees() == []

    @pytest.mark.asyncio
    async def test_per_project_limit(self, tmp_path, upstream):
        manager = make_manager(tmp_path, existing_branch_strategy=BranchStrategy.SUFFIX)
        for unit in ("a", "b", "c"):
            await manager.acquire(REF, TITLE, unit_id=unit)

        with pytest.raises(WorktreeLimitError):
            await manager.acquire(REF, TITLE, unit_id="d")

    @pytest.mark.asyncio
    async def test_busy_unit_refused_before_a_branch_is_created(self, tmp_path, upstream):
        manager = make_manager(tmp_path, existing_branch_strategy=BranchStrategy.SUFFIX)
        first = await manager.acquire(REF, TITLE)

        with pytest.raises(WorktreeConflictError):
            await manager.acquire(REF, TITLE)

        branches = git("branch", "--format=%(refname:short)", cwd=first.repository.path).split()
        assert f"{first.branch.name}-2" not in branches
        assert manager.active_worktrees() == [first.worktree]


class TestBranchStrategies:
    @pytest.mark.asyncio
    async def test_fail_strategy(self, tmp_path, upstream):
        manager = make_manager(tmp_path, existing_branch_strategy=BranchStrategy.FAIL)
        await manager.acquire(REF, TITLE, unit_id="one")

        with pytest.raises(BranchExistsError):
            await manager.acquire(REF, TITLE, unit_id="two")

    @pytest.mark.asyncio
    async def test_suffix_probe_limit(self, tmp_path, upstream):
        manager = make_manager(tmp_path, existing_branch_strategy=BranchStrategy.SUFFIX, suffix_probe_limit=2)
        first = await manager.acquire(REF, TITLE, unit_id="one")
        await manager.release(first)
        second = await manager.acquire(REF, TITLE, unit_id="two")
        await manager.release(second)

        with pytest.raises(BranchExistsError, match="No free suffix"):
            await manager.acquire(REF, TITLE, unit_id="three")

    @pytest.mark.asyncio
    async def test_reuse_strategy(self, tmp_path, upstream):
        manager = make_manager(tmp_path, existing_branch_strategy=BranchStrategy.REUSE)
        first = await manager.acquire(REF, TITLE)
        (first.path / "notes.txt").write_text("work in progress\n")
        git("add", "notes.txt", cwd=first.path)
        git("commit", "-q", "-m", "wip", cwd=first.path)
        await manager.release(first)

        again = await manager.acquire(REF, TITLE)

        assert not again.branch.created
        assert again.branch.strategy_used == "reuse"
        assert (again.path / "notes.txt").exists()

    @pytest.mark.asyncio
    async def test_auto_clean_replaces_stale_local_branch(self, tmp_path, upstream):
        manager = make_manager(tmp_path)
        first = await manager.acquire(REF, TITLE)
        (first.path / "stale.txt").write_text("old attempt\n")
        git("add", "stale.txt", cwd=first.path)
        git("commit", "-q", "-m", "old", cwd=first.path)
        await manager.release(first)

        again = await manager.acquire(REF, TITLE)

        assert again.branch.strategy_used == "auto-clean"
        assert not (again.path / "stale.txt").exists()


class TestForkWorkflow:
    @pytest.fixture
    def fork(self, tmp_path, upstream) -> Path:
        """Fork of upstream that already carries the work branch."""
        fork = tmp_path / "forks" / "bot" / "widgets.git"
        fork.parent.mkdir(parents=True)
        git("clone", "-q", "--bare", str(upstream), str(fork))
        work = tmp_path / "fork-work"
        git("clone", "-q", str(fork), str(work))
        git("checkout", "-q", "-b", branch_name("patchfleet", 1, TITLE), cwd=work)
        (work / "fix.txt").write_text("earlier attempt\n")
        git("add", "fix.txt", cwd=work)
        git("commit", "-q", "-m", "earlier attempt", cwd=work)
        git("push", "-q", "origin", "HEAD", cwd=work)
        return fork

    @pytest.mark.asyncio
    async def test_open_pr_branch_is_never_deleted(self, tmp_path, fork):
        vcs = FakeVCS(str(fork), open_pr=True)
        manager = make_manager(tmp_path, vcs=vcs)
        name = branch_name("patchfleet", 1, TITLE)

        workspace = await manager.acquire(REF, TITLE)

        assert workspace.repository.fork_owner == "bot"
        assert workspace.branch.strategy_used == "reuse-open-pr"
        assert not workspace.branch.created
        assert (workspace.path / "fix.txt").exists()
        assert has_branch(fork, name)
        assert vcs.pr_checks == [(name, "bot")]

    @pytest.mark.asyncio
    async def test_branch_without_pr_is_cleaned(self, tmp_path, fork):
        vcs = FakeVCS(str(fork), open_pr=False)
        manager = make_manager(tmp_path, vcs=vcs)
        name = branch_name("patchfleet", 1, TITLE)

        workspace = await manager.acquire(REF, TITLE)

        assert workspace.branch.strategy_used == "auto-clean"
        assert not (workspace.path / "fix.txt").exists()
        assert not has_branch(fork, name)

    @pytest.mark.asyncio
    async def test_fork_owner_remembered_across_managers(self, tmp_path, fork):
        first = make_manager(tmp_path, vcs=FakeVCS(str(fork), open_pr=True))
        await first.ensure_repository(str(tmp_path / "upstream/acme/widgets.git"), "acme", "widgets")

        second = make_manager(tmp_path)
        repo = await second.ensure_repository(str(tmp_path / "upstream/acme/widgets.git"), "acme", "widgets")

        assert repo.fork_owner == "bot"
        assert repo.push_remote == "fork"

    @pytest.mark.asyncio
    async def test_without_host_client_fork_branch_is_reused_not_deleted(self, tmp_path, fork):
        setup = make_manager(tmp_path, vcs=FakeVCS(str(fork), open_pr=False))
        await setup.ensure_repository(str(tmp_path / "upstream/acme/widgets.git"), "acme", "widgets")
        manager = make_manager(tmp_path)
        name = branch_name("patchfleet", 1, TITLE)

        workspace = await manager.acquire(REF, TITLE)

        assert workspace.repository.fork_owner == "bot"
        assert workspace.branch.strategy_used == "reuse"
        assert (workspace.path / "fix.txt").exists()
        assert has_branch(fork, name)


class TestModifiedFiles:
    @pytest.mark.asyncio
    async def test_union_of_committed_staged_unstaged_and_untracked(self, tmp_path, upstream):
        manager = make_manager(tmp_path)
        workspace = await manager.acquire(REF, TITLE)
        path = workspace.path

        (path / "committed.py").write_text("x = 1\n")
        git("add", "committed.py", cwd=path)
        git("commit", "-q", "-m", "add committed", cwd=path)
        (path / "staged.py").write_text("y = 2\n")
        git("add", "staged.py", cwd=path)
        (path / "README.md").write_text("changed\n")
        (path / "src" / "new.py").write_text("z = 3\n")

        files = await manager.get_modified_files(workspace.worktree)

        assert files == {"committed.py", "staged.py", "README.md", "src/new.py"}

    @pytest.mark.asyncio
    async def test_clean_worktree_has_no_changes(self, tmp_path, upstream):
        manager = make_manager(tmp_path)
        workspace = await manager.acquire(REF, TITLE)

        assert await manager.get_modified_files(workspace.path) == set()


class TestCleanup:
    @pytest.mark.asyncio
    async def test_cleanup_abandoned_removes_finished_issue_worktrees(self, tmp_path, upstream, store):
        url = "https://github.com/acme/widgets/issues/1"
        issue = store.create_issue(url, title=TITLE)
        manager = make_manager(tmp_path)
        workspace = await manager.acquire(REF, TITLE)
        await manager.release(workspace, keep=True)
        store.save_work_record(
            WorkRecord(
                issue_id=issue.id,
                session_id="session-1",
                branch_name=workspace.branch.name,
                worktree_path=str(workspace.path),
            )
        )

        assert await manager.cleanup_abandoned(store) == 0
        assert workspace.path.exists()

        store.transition(issue.id, IssueState.ABANDONED, reason="gave up")

        assert await manager.cleanup_abandoned(store) == 1
        assert not workspace.path.exists()
