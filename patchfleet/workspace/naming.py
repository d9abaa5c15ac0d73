"""Pure naming functions for branches and worktree directories.

Kept free of I/O: the collision strategies in ``WorkspaceManager`` depend on
these names being deterministic, so they are tested directly.
"""

import re
from pathlib import PurePath

TITLE_SLUG_LENGTH = 40


def slugify(text: str, max_length: int | None = None) -> str:
    """Convert text to a lowercase, hyphen-separated slug.

    Example:
        >>> slugify("Fix: crash on EMPTY input!")
        'fix-crash-on-empty-input'
    """
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    if max_length is not None:
        slug = slug[:max_length].rstrip("-")
    return slug


def branch_name(prefix: str, issue_number: int, title: str) -> str:
    """Deterministic branch name for an issue.

    Example:
        >>> branch_name("patchfleet", 42, "Handle unicode in CSV export")
        'patchfleet/issue-42-handle-unicode-in-csv-export'
        >>> branch_name("patchfleet", 7, "")
        'patchfleet/issue-7'
    """
    slug = slugify(title, TITLE_SLUG_LENGTH)
    base = f"{prefix.strip('/')}/issue-{issue_number}"
    return f"{base}-{slug}" if slug else base


def suffixed_branch_name(name: str, n: int) -> str:
    """Collision candidate ``name-n``; ``n`` starts at 2."""
    if n < 2:
        raise ValueError("suffixes start at 2")
    return f"{name}-{n}"


def suffix_candidates(name: str, limit: int) -> list[str]:
    """All suffix probes from ``name-2`` through ``name-{limit}``."""
    return [suffixed_branch_name(name, n) for n in range(2, limit + 1)]


def sanitize_unit_id(unit_id: str) -> str:
    return re.sub(r"[#/\\:\s]+", "-", unit_id).strip("-")


def worktree_dir_name(repo_path: str | PurePath, unit_id: str) -> str:
    """Directory name for a unit's worktree: ``{repo}-{unit}``.

    Example:
        >>> worktree_dir_name("/data/repos/acme/widgets", "acme/widgets#12")
        'widgets-acme-widgets-12'
    """
    return f"{PurePath(repo_path).name}-{sanitize_unit_id(unit_id)}"


def clone_url(template: str, host: str, owner: str, repo: str) -> str:
    return template.format(host=host, owner=owner, repo=repo)
