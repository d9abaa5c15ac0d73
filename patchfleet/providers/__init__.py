"""VCS hosting clients."""

from patchfleet.providers.base import ForkInfo, RemoteIssue, VCSHost
from patchfleet.providers.github_rest import GitHubRestHost

__all__ = ["ForkInfo", "GitHubRestHost", "RemoteIssue", "VCSHost"]
