"""Tests for branch and worktree naming."""

import pytest

from patchfleet.workspace.naming import (
    branch_name,
    clone_url,
    sanitize_unit_id,
    slugify,
    suffix_candidates,
    suffixed_branch_name,
    worktree_dir_name,
)


class TestSlugify:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("Fix: crash on EMPTY input!", "fix-crash-on-empty-input"),
            ("  leading and trailing  ", "leading-and-trailing"),
            ("Ünïcode ☃ only", "n-code-only"),
            ("!!!", ""),
        ],
    )
    def test_slugify(self, text, expected):
        assert slugify(text) == expected

    def test_truncation_drops_trailing_hyphen(self):
        assert slugify("abc def", max_length=4) == "abc"


class TestBranchName:
    def test_includes_number_and_slug(self):
        assert branch_name("patchfleet", 42, "Handle unicode in CSV export") == (
            "patchfleet/issue-42-handle-unicode-in-csv-export"
        )

    def test_empty_title(self):
        assert branch_name("patchfleet/", 7, "???") == "patchfleet/issue-7"

    def test_long_titles_are_bounded(self):
        name = branch_name("pf", 1, "word " * 40)
        assert len(name.split("issue-1-", 1)[1]) <= 40

    def test_deterministic(self):
        assert branch_name("pf", 3, "Same title") == branch_name("pf", 3, "Same title")


class TestSuffixes:
    def test_candidates_are_unique_and_bounded(self):
        candidates = suffix_candidates("pf/issue-1", 100)

        assert candidates[0] == "pf/issue-1-2"
        assert candidates[-1] == "pf/issue-1-100"
        assert len(candidates) == len(set(candidates)) == 99

    def test_suffix_starts_at_two(self):
        with pytest.raises(ValueError):
            suffixed_branch_name("pf/issue-1", 1)


class TestWorktreeNames:
    def test_unit_id_sanitized(self):
        assert sanitize_unit_id("acme/widgets#12") == "acme-widgets-12"

    def test_dir_name(self):
        assert worktree_dir_name("/data/repos/acme/widgets", "acme/widgets#12") == "widgets-acme-widgets-12"

    def test_distinct_units_get_distinct_dirs(self):
        assert worktree_dir_name("/r/widgets", "acme/widgets#1") != worktree_dir_name("/r/widgets", "acme/widgets#11")


def test_clone_url():
    assert clone_url("https://{host}/{owner}/{repo}.git", "github.com", "acme", "widgets") == (
        "https://github.com/acme/widgets.git"
    )
