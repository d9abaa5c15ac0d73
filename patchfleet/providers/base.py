"""
Abstract base class for VCS hosting clients.

The workspace manager consults the host before destructive branch operations
and when push access to an upstream repository is missing; the orchestrator
uses it to fetch issue metadata for branch naming.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass
class RemoteIssue:
    """Issue metadata as reported by the host."""

    number: int
    title: str
    body: str = ""
    labels: list[str] = field(default_factory=list)
    state: str = "open"


@dataclass
class ForkInfo:
    owner: str
    name: str
    clone_url: str


class VCSHost(ABC):
    """Contract for VCS hosting APIs (GitHub and compatible).

    All methods are async; implementations route their HTTP calls through the
    resilience layer and raise ``NetworkError`` for transient failures and
    ``ExternalServiceError`` for everything else.
    """

    @abstractmethod
    async def get_issue(self, owner: str, repo: str, number: int) -> RemoteIssue:
        """Fetch an issue's title, body, labels and state."""

    @abstractmethod
    async def has_open_pr(self, owner: str, repo: str, branch: str, head_owner: str | None = None) -> bool:
        """Whether an open pull request against ``owner/repo`` has ``branch`` as its head.

        Args:
            owner: Upstream repository owner
            repo: Upstream repository name
            branch: Head branch name
            head_owner: Owner of the head branch's repository (the fork owner
                in fork workflow); defaults to ``owner``
        """

    @abstractmethod
    async def has_push_access(self, owner: str, repo: str) -> bool:
        """Whether the authenticated user can push to ``owner/repo``."""

    @abstractmethod
    async def create_fork(self, owner: str, repo: str) -> ForkInfo:
        """Create (or return the existing) fork of ``owner/repo`` for the authenticated user."""
