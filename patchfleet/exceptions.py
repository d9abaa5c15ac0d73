"""Custom exception hierarchy for patchfleet.

Exception Hierarchy:
    PatchfleetError (base)
    ├── ConfigurationError
    ├── StateError
    │   ├── InvalidTransitionError
    │   └── NotFoundError
    ├── NetworkError
    │   └── RateLimitError
    ├── GitOperationError
    │   ├── BranchExistsError
    │   ├── WorktreeConflictError
    │   └── WorktreeLimitError
    ├── OperationTimeoutError
    ├── CircuitOpenError
    ├── BudgetExceededError
    ├── CancelledWorkError
    └── ExternalServiceError

Only NetworkError (and its subclasses) and OperationTimeoutError are considered
transient; see ``is_retryable``.

Example Usage:
    >>> from patchfleet.exceptions import NotFoundError
    >>> try:
    ...     store.get_issue("owner/repo#1")
    ... except NotFoundError as e:
    ...     print(e.message)
"""

from __future__ import annotations


class PatchfleetError(Exception):
    """Base exception for all patchfleet errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ConfigurationError(PatchfleetError):
    """Configuration file missing, unreadable, or invalid."""


class StateError(PatchfleetError):
    """Base class for state store errors."""


class InvalidTransitionError(StateError):
    """A state change was requested that the state machine does not allow.

    Raised for both programming errors and lost races: two writers reading the
    same ``from_state`` serialize in the store, and the loser sees this error.

    Attributes:
        entity_id: Identifier of the entity being transitioned
        from_state: State the entity was actually in
        to_state: Requested target state
    """

    def __init__(self, entity_id: str, from_state: str, to_state: str) -> None:
        self.entity_id = entity_id
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition for {entity_id}: {from_state} -> {to_state}")


class NotFoundError(StateError):
    """Requested entity does not exist."""

    def __init__(self, entity_type: str, entity_id: str) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} not found: {entity_id}")


class NetworkError(PatchfleetError):
    """Transient network failure; eligible for retry and circuit breaking."""


class RateLimitError(NetworkError):
    """Remote service asked us to slow down.

    Attributes:
        retry_after: Seconds the remote asked us to wait, if it said
    """

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(message)


class GitOperationError(PatchfleetError):
    """A git command failed because of local repository state.

    Attributes:
        command: The git arguments that were run
        stderr: Captured standard error, if any
        hint: Optional suggestion for resolving the problem
    """

    def __init__(
        self,
        message: str,
        command: list[str] | None = None,
        stderr: str = "",
        hint: str | None = None,
    ) -> None:
        self.command = command or []
        self.stderr = stderr
        self.hint = hint
        super().__init__(message)

    def __str__(self) -> str:
        if self.hint:
            return f"{self.message}\nHint: {self.hint}"
        return self.message


class BranchExistsError(GitOperationError):
    """Branch name collision that the configured strategy could not resolve."""


class WorktreeConflictError(GitOperationError):
    """Another active worktree already exists for the same repository and issue."""


class WorktreeLimitError(GitOperationError):
    """Creating the worktree would exceed a configured worktree limit."""


class OperationTimeoutError(PatchfleetError, TimeoutError):
    """An operation went silent for longer than its watchdog timeout.

    Attributes:
        operation: Name of the operation that was aborted
        timeout: Inactivity timeout in seconds
    """

    def __init__(self, operation: str, timeout: float) -> None:
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"Operation '{operation}' timed out after {timeout:g}s without a heartbeat")


class CircuitOpenError(PatchfleetError):
    """Call rejected because the circuit for its operation class is open.

    Attributes:
        operation: Operation class name
        retry_after: Seconds until the breaker will allow a probe
    """

    def __init__(self, operation: str, retry_after: float) -> None:
        self.operation = operation
        self.retry_after = retry_after
        super().__init__(f"Circuit open for '{operation}', retry in {retry_after:.1f}s")


class BudgetExceededError(PatchfleetError):
    """Spending would exceed a configured ceiling.

    The scheduler treats budget exhaustion as a decision, not an exception;
    this is only raised by ``BudgetGovernor.require``.
    """

    def __init__(self, scope_id: str, reason: str) -> None:
        self.scope_id = scope_id
        self.reason = reason
        super().__init__(f"Budget exceeded for {scope_id}: {reason}")


class CancelledWorkError(PatchfleetError):
    """Work was cancelled cooperatively through a cancellation token."""


class ExternalServiceError(PatchfleetError):
    """Non-transient failure returned by an external HTTP service.

    Attributes:
        status_code: HTTP status code, if available
        response_text: Response body, if available
    """

    def __init__(self, message: str, status_code: int | None = None, response_text: str | None = None) -> None:
        self.status_code = status_code
        self.response_text = response_text
        super().__init__(message)


def is_retryable(error: BaseException) -> bool:
    """Default retry predicate: only network failures and watchdog timeouts."""
    return isinstance(error, (NetworkError, OperationTimeoutError))
