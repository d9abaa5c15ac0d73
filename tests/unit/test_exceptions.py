"""Tests for the exception hierarchy."""

import pytest

from patchfleet.exceptions import (
    BranchExistsError,
    BudgetExceededError,
    CancelledWorkError,
    CircuitOpenError,
    ConfigurationError,
    ExternalServiceError,
    GitOperationError,
    InvalidTransitionError,
    NetworkError,
    NotFoundError,
    OperationTimeoutError,
    PatchfleetError,
    RateLimitError,
    StateError,
    WorktreeConflictError,
    WorktreeLimitError,
    is_retryable,
)


class TestHierarchy:
    @pytest.mark.parametrize(
        "error",
        [
            ConfigurationError("bad"),
            InvalidTransitionError("acme/widgets#1", "queued", "merged"),
            NotFoundError("Issue", "acme/widgets#1"),
            RateLimitError("slow down", retry_after=3.0),
            BranchExistsError("exists"),
            OperationTimeoutError("git fetch", 30.0),
            CircuitOpenError("vcs-api", 12.0),
            BudgetExceededError("run:r1", "daily budget exhausted"),
            CancelledWorkError("stop"),
            ExternalServiceError("gone", status_code=410),
        ],
    )
    def test_every_error_has_message(self, error):
        assert isinstance(error, PatchfleetError)
        assert error.message

    def test_state_errors(self):
        assert issubclass(InvalidTransitionError, StateError)
        assert issubclass(NotFoundError, StateError)

    def test_git_errors(self):
        for cls in (BranchExistsError, WorktreeConflictError, WorktreeLimitError):
            assert issubclass(cls, GitOperationError)

    def test_timeout_is_builtin_timeout(self):
        error = OperationTimeoutError("git clone", 300.0)
        assert isinstance(error, TimeoutError)
        assert "git clone" in error.message

    def test_invalid_transition_fields(self):
        error = InvalidTransitionError("acme/widgets#1", "queued", "merged")
        assert (error.entity_id, error.from_state, error.to_state) == ("acme/widgets#1", "queued", "merged")
        assert "queued -> merged" in error.message


class TestGitOperationError:
    def test_hint_rendered(self):
        error = GitOperationError("push rejected", command=["push", "fork"], stderr="denied", hint="Check access")

        assert str(error) == "push rejected\nHint: Check access"
        assert error.message == "push rejected"
        assert error.command == ["push", "fork"]

    def test_no_hint(self):
        assert str(GitOperationError("failed")) == "failed"


class TestRetryable:
    @pytest.mark.parametrize(
        "error,expected",
        [
            (NetworkError("reset"), True),
            (RateLimitError("slow"), True),
            (OperationTimeoutError("fetch", 1.0), True),
            (GitOperationError("bad ref"), False),
            (ExternalServiceError("not found", 404), False),
            (CircuitOpenError("vcs-api", 1.0), False),
            (ValueError("x"), False),
        ],
    )
    def test_is_retryable(self, error, expected):
        assert is_retryable(error) is expected
