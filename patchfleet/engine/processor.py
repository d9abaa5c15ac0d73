"""
Interface to the external work processor (the AI coding backend).

The orchestrator treats the processor as opaque: it receives an issue URL and
options, may run for a long time, and reports a result. It is expected to
honor the cancellation token passed as ``abort_signal`` by checking it
between its own steps, and to call ``patchfleet.resilience.heartbeat()``
while it makes progress so the watchdog does not abort it.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass

from patchfleet.exceptions import CancelledWorkError
from patchfleet.workspace.models import Workspace


class CancellationToken:
    """Cooperative cancellation flag shared between orchestrator and worker."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledWorkError(self.reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class ProcessOptions:
    """Options handed to ``WorkProcessor.process``.

    Attributes:
        dry_run: Do everything except publishing (no push, no PR)
        budget_usd: Spending cap for this unit, if any
        abort_signal: Cancellation token to poll between steps
        workspace: Prepared git workspace, when the orchestrator manages one
    """

    dry_run: bool = False
    budget_usd: float | None = None
    abort_signal: CancellationToken | None = None
    workspace: Workspace | None = None


@dataclass
class ProcessResult:
    success: bool
    cost_usd: float = 0.0
    pr_url: str | None = None
    error: str | None = None
    turn_count: int = 0


class WorkProcessor(ABC):
    """Contract for AI coding backends driven by the orchestrator."""

    name: str = "processor"
    model: str | None = None

    @abstractmethod
    async def process(self, issue_url: str, options: ProcessOptions) -> ProcessResult:
        """Work an issue and report the outcome.

        Failures that are part of normal operation (tests fail, the model
        gives up) are reported with ``success=False``. Raising is reserved for
        infrastructure problems; ``CancelledWorkError`` signals that the
        abort signal was honored.
        """
