"""Per-repository locks for serializing ref-namespace changes.

Worktrees never share paths, but branch creation and deletion all write the
same repository's refs. Collision resolution reads then writes those refs, so
it must run under the repository's lock.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import structlog

log = structlog.get_logger(__name__)


class RepoLockRegistry:
    """Hands out one asyncio lock per repository path."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def _get_lock(self, repo_path: str | Path) -> asyncio.Lock:
        key = str(Path(repo_path).resolve())
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def is_locked(self, repo_path: str | Path) -> bool:
        return self._get_lock(repo_path).locked()

    @asynccontextmanager
    async def hold(self, repo_path: str | Path) -> AsyncIterator[None]:
        lock = self._get_lock(repo_path)
        if lock.locked():
            log.debug("repo_lock_waiting", repo=str(repo_path))
        async with lock:
            yield
