"""Domain models shared by the store, workspace manager and orchestrator."""

from patchfleet.models.domain import (
    RUN_TRANSITIONS,
    SESSION_TRANSITIONS,
    VALID_TRANSITIONS,
    WORK_ITEM_TRANSITIONS,
    EntityType,
    Issue,
    IssueRef,
    IssueState,
    ParallelRun,
    RunStatus,
    Session,
    SessionStatus,
    StopReason,
    StoreStats,
    Transition,
    WorkItem,
    WorkItemStatus,
    WorkRecord,
)

__all__ = [
    "RUN_TRANSITIONS",
    "SESSION_TRANSITIONS",
    "VALID_TRANSITIONS",
    "WORK_ITEM_TRANSITIONS",
    "EntityType",
    "Issue",
    "IssueRef",
    "IssueState",
    "ParallelRun",
    "RunStatus",
    "Session",
    "SessionStatus",
    "StopReason",
    "StoreStats",
    "Transition",
    "WorkItem",
    "WorkItemStatus",
    "WorkRecord",
]
