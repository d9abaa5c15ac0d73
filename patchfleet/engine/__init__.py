"""Scheduling, budgeting and conflict detection for parallel runs."""

from patchfleet.engine.budget import BudgetDecision, BudgetGovernor, BudgetStatus, item_scope, run_scope
from patchfleet.engine.conflicts import Conflict, ConflictDetector, ConflictMonitor, ConflictReport
from patchfleet.engine.events import EventBus, EventType, ProgressEvent
from patchfleet.engine.orchestrator import (
    ItemOutcome,
    ParallelOrchestrator,
    RunOptions,
    RunProgress,
    RunResult,
)
from patchfleet.engine.processor import CancellationToken, ProcessOptions, ProcessResult, WorkProcessor

__all__ = [
    "BudgetDecision",
    "BudgetGovernor",
    "BudgetStatus",
    "CancellationToken",
    "Conflict",
    "ConflictDetector",
    "ConflictMonitor",
    "ConflictReport",
    "EventBus",
    "EventType",
    "ItemOutcome",
    "ParallelOrchestrator",
    "ProcessOptions",
    "ProcessResult",
    "ProgressEvent",
    "RunOptions",
    "RunProgress",
    "RunResult",
    "WorkProcessor",
    "item_scope",
    "run_scope",
]
