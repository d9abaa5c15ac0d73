"""Per-unit git workspaces."""

from patchfleet.workspace.git import GitRunner
from patchfleet.workspace.manager import WorkspaceManager
from patchfleet.workspace.models import BranchResult, Repository, Workspace, WorktreeInfo

__all__ = ["BranchResult", "GitRunner", "Repository", "Workspace", "WorkspaceManager", "WorktreeInfo"]
