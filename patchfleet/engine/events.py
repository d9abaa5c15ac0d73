"""Progress events emitted by the orchestrator.

Delivery is fire-and-forget. Each subscriber is called in turn; one that
raises is logged and skipped, and neither the other subscribers nor the
emitting run are affected.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

import structlog

log = structlog.get_logger(__name__)


class EventType(str, Enum):
    STARTED = "started"
    ISSUE_STARTED = "issue_started"
    ISSUE_COMPLETED = "issue_completed"
    ISSUE_FAILED = "issue_failed"
    ISSUE_SKIPPED = "issue_skipped"
    CONFLICT = "conflict"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(frozen=True)
class ProgressEvent:
    type: EventType
    run_id: str
    issue_url: str | None = None
    index: int | None = None
    """Zero-based position of the item in the run."""

    total: int | None = None
    cost_usd: float | None = None
    error: str | None = None
    reason: str | None = None
    files: tuple[str, ...] = ()
    """Overlapping paths, for conflict events."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


Subscriber = Callable[[ProgressEvent], None]


class EventBus:
    """Synchronous multi-subscriber event dispatch."""

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register a subscriber; returns a function that unsubscribes it."""
        self._subscribers.append(subscriber)
        return lambda: self.unsubscribe(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    def emit(self, event: ProgressEvent) -> None:
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception:
                log.warning(
                    "event_subscriber_failed",
                    event_type=event.type.value,
                    run_id=event.run_id,
                    subscriber=getattr(subscriber, "__qualname__", repr(subscriber)),
                    exc_info=True,
                )
