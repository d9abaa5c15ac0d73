"""Pytest configuration and shared fixtures."""

import asyncio
from pathlib import Path

import pytest

from patchfleet.config.settings import FleetSettings
from patchfleet.engine.processor import ProcessOptions, ProcessResult, WorkProcessor
from patchfleet.state.store import StateStore


@pytest.fixture
def store(tmp_path: Path):
    """StateStore backed by a temporary database file."""
    state = StateStore(tmp_path / "state.db")
    yield state
    state.close()


@pytest.fixture
def settings(tmp_path: Path) -> FleetSettings:
    """Settings with fast polling and a temporary data directory."""
    return FleetSettings(
        data_dir=str(tmp_path / ".patchfleet"),
        parallel={
            "max_concurrent_agents": 2,
            "scheduler_poll_interval": 0.05,
            "conflict_poll_interval": 0.05,
        },
        hardening={"retry": {"max_retries": 0}},
    )


class FakeProcessor(WorkProcessor):
    """Scriptable processor that records concurrency.

    Outcomes are looked up by issue URL: a ProcessResult is returned, an
    exception is raised. Unlisted URLs succeed with a PR.
    """

    name = "fake"
    model = "fake-model"

    def __init__(self, delay: float = 0.02, outcomes: dict | None = None, cost: float = 0.5) -> None:
        self.delay = delay
        self.outcomes = outcomes or {}
        self.cost = cost
        self.calls: list[str] = []
        self.options: dict[str, ProcessOptions] = {}
        self.active = 0
        self.max_active = 0

    async def process(self, issue_url: str, options: ProcessOptions) -> ProcessResult:
        self.calls.append(issue_url)
        self.options[issue_url] = options
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if options.abort_signal is not None:
                try:
                    await asyncio.wait_for(options.abort_signal.wait(), timeout=self.delay)
                except TimeoutError:
                    pass
                options.abort_signal.raise_if_cancelled()
            else:
                await asyncio.sleep(self.delay)

            outcome = self.outcomes.get(issue_url)
            if isinstance(outcome, BaseException):
                raise outcome
            if outcome is not None:
                return outcome
            number = issue_url.rstrip("/").rsplit("/", 1)[-1]
            pr_url = issue_url.replace(f"/issues/{number}", f"/pull/{int(number) + 1000}")
            return ProcessResult(success=True, cost_usd=self.cost, pr_url=pr_url, turn_count=3)
        finally:
            self.active -= 1


@pytest.fixture
def fake_processor() -> FakeProcessor:
    return FakeProcessor()


@pytest.fixture
def processor_factory():
    """The FakeProcessor class, for tests that script outcomes."""
    return FakeProcessor
