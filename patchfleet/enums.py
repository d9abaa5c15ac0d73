"""Enumerations for patchfleet configuration choices."""

from enum import Enum


class BranchStrategy(str, Enum):
    """How ``WorkspaceManager.create_branch`` resolves a name collision.

    - fail: raise BranchExistsError
    - reuse: check out the existing branch, fetching it if it only exists remotely
    - suffix: probe name-2, name-3, ... up to a bound
    - auto-clean: delete the stale branch and recreate it, unless it backs an open PR
    """

    FAIL = "fail"
    REUSE = "reuse"
    SUFFIX = "suffix"
    AUTO_CLEAN = "auto-clean"

    def __str__(self) -> str:
        return self.value


class ConflictPolicy(str, Enum):
    """What happens when two active workspaces touch the same file."""

    SKIP = "skip"
    WARN = "warn"
    BLOCK = "block"

    def __str__(self) -> str:
        return self.value


class VCSProviderType(str, Enum):
    """Supported VCS hosting APIs."""

    GITHUB = "github"

    def __str__(self) -> str:
        return self.value
