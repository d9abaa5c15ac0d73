"""
Budget governor: authorizes new work against spending ceilings.

Spend is recorded in the state store's ledger under hierarchical scope ids:

    run:<run_id>                  spend attributed to a parallel run
    run:<run_id>/item:<url>       spend attributed to one work item

A scope's spend includes every scope nested beneath it, and the global daily
and monthly totals include every ledger entry. ``can_proceed`` checks the
global ceilings plus every ancestor scope that has a registered ceiling.

Decisions are advisory and made at dispatch time only. Work already running
is never revoked when the budget runs out.
"""

from dataclasses import dataclass
from datetime import UTC, datetime

import structlog

from patchfleet.config.settings import BudgetConfig
from patchfleet.exceptions import BudgetExceededError
from patchfleet.state.store import StateStore

log = structlog.get_logger(__name__)

DAILY = "daily"
MONTHLY = "monthly"


def run_scope(run_id: str) -> str:
    return f"run:{run_id}"


def item_scope(run_id: str, url: str) -> str:
    return f"{run_scope(run_id)}/item:{url}"


def _ancestors(scope_id: str) -> list[str]:
    """``run:r/item:u`` -> ``[run:r, run:r/item:u]``; URLs inside a scope keep their slashes."""
    parts = scope_id.split("/item:")
    scopes = [parts[0]]
    for part in parts[1:]:
        scopes.append(f"{scopes[-1]}/item:{part}")
    return scopes


@dataclass(frozen=True)
class BudgetDecision:
    allowed: bool
    scope_id: str
    reason: str | None = None
    spent_usd: float = 0.0
    limit_usd: float | None = None

    @property
    def remaining_usd(self) -> float | None:
        if self.limit_usd is None:
            return None
        return max(0.0, self.limit_usd - self.spent_usd)


@dataclass(frozen=True)
class BudgetStatus:
    today_usd: float
    daily_limit_usd: float
    month_usd: float
    monthly_limit_usd: float


class BudgetGovernor:
    """Tracks spend and answers whether more work may start."""

    def __init__(self, store: StateStore, config: BudgetConfig | None = None) -> None:
        self.store = store
        self.config = config or BudgetConfig()
        self._ceilings: dict[str, float] = {}

    def set_ceiling(self, scope_id: str, limit_usd: float | None) -> None:
        """Register (or clear, with None) a ceiling for a run or item scope."""
        if limit_usd is None:
            self._ceilings.pop(scope_id, None)
            return
        if limit_usd < 0:
            raise ValueError("limit_usd must be >= 0")
        self._ceilings[scope_id] = limit_usd

    def ceiling(self, scope_id: str) -> float | None:
        return self._ceilings.get(scope_id)

    def can_proceed(self, scope_id: str) -> BudgetDecision:
        """Check the global ceilings and every ceiling on the scope's ancestry.

        Returns the first denial found, or an allowing decision carrying the
        tightest remaining headroom.
        """
        now = datetime.now(UTC)
        checks: list[tuple[str, float | None, float]] = [
            (DAILY, self.config.daily_limit_usd, self.store.get_spend(since=_start_of_day(now))),
            (MONTHLY, self.config.monthly_limit_usd, self.store.get_spend(since=_start_of_month(now))),
        ]
        for scope in _ancestors(scope_id):
            limit = self._ceilings.get(scope)
            if limit is not None:
                checks.append((scope, limit, self.store.get_spend(scope)))

        tightest: BudgetDecision | None = None
        for name, limit, spent in checks:
            if limit is None:
                continue
            if spent >= limit:
                reason = f"{name} budget exhausted (${spent:.2f} of ${limit:.2f})"
                log.warning("budget_denied", scope_id=scope_id, limit_scope=name, spent=spent, limit=limit)
                return BudgetDecision(False, scope_id, reason, spent, limit)
            decision = BudgetDecision(True, scope_id, None, spent, limit)
            if tightest is None or (decision.remaining_usd or 0.0) < (tightest.remaining_usd or 0.0):
                tightest = decision
        return tightest or BudgetDecision(True, scope_id)

    def require(self, scope_id: str) -> BudgetDecision:
        """Like ``can_proceed`` but raises BudgetExceededError on denial."""
        decision = self.can_proceed(scope_id)
        if not decision.allowed:
            raise BudgetExceededError(scope_id, decision.reason or "budget exhausted")
        return decision

    def record_spend(self, scope_id: str, amount_usd: float) -> None:
        """Add spend to a scope. Zero is accepted and ignored."""
        if amount_usd < 0:
            raise ValueError("amount_usd must be >= 0")
        if amount_usd == 0:
            return
        self.store.record_spend(scope_id, amount_usd)
        log.info("spend_recorded", scope_id=scope_id, amount_usd=round(amount_usd, 4))

    def spent(self, scope_id: str) -> float:
        return self.store.get_spend(scope_id)

    def item_budget(self, run_id: str, url: str, run_budget: float | None, total_items: int) -> float:
        """Per-item cap: the per-issue limit, tightened by an even share of the run budget."""
        limit = self.config.per_issue_limit_usd
        if run_budget is not None and total_items > 0:
            limit = min(limit, run_budget / total_items)
        self.set_ceiling(item_scope(run_id, url), limit)
        return limit

    def status(self) -> BudgetStatus:
        now = datetime.now(UTC)
        return BudgetStatus(
            today_usd=self.store.get_spend(since=_start_of_day(now)),
            daily_limit_usd=self.config.daily_limit_usd,
            month_usd=self.store.get_spend(since=_start_of_month(now)),
            monthly_limit_usd=self.config.monthly_limit_usd,
        )


def _start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def _start_of_month(now: datetime) -> datetime:
    return _start_of_day(now).replace(day=1)
