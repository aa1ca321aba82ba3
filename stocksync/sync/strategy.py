"""Sync strategy selection — what a run fetches and what it may touch.

Strategies, broadest first:
  full            everything, vendors + items, soft-deletes what the remote dropped
  incremental     records modified since the last successful full/incremental run
  inventory_only  stock fields for keys we already have (no inserts)
  critical_only   keys at/below their reorder point locally
  targeted        an explicit key list (re-drive of batch failures)
  smart           picks one of the above from how stale each tier is

resolve() and select() are pure: the orchestrator gathers the context
(watermarks, critical keys) and passes it in.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from .records import STOCK_FIELDS, SyncFilter

FULL = "full"
INCREMENTAL = "incremental"
INVENTORY_ONLY = "inventory_only"
CRITICAL_ONLY = "critical_only"
SMART = "smart"
TARGETED = "targeted"

STRATEGIES = (FULL, INCREMENTAL, INVENTORY_ONLY, CRITICAL_ONLY, SMART, TARGETED)

# Broadest first. A run of one tier also counts as a refresh of every tier after it.
TIERS = (FULL, INCREMENTAL, INVENTORY_ONLY, CRITICAL_ONLY)

DEFAULT_BUDGETS = {
    FULL: timedelta(hours=24),
    INCREMENTAL: timedelta(hours=6),
    INVENTORY_ONLY: timedelta(hours=2),
    CRITICAL_ONLY: timedelta(minutes=30),
}


@dataclass(frozen=True)
class SyncPlan:
    strategy: str
    filter: SyncFilter
    fields: tuple[str, ...] | None = None  # None = every canonical field
    soft_delete: bool = False
    include_vendors: bool = False
    allow_insert: bool = True
    requested: str | None = None
    reason: str = ""

    @property
    def by_keys(self) -> bool:
        """True when the plan fetches an explicit key list instead of paging."""
        return self.filter.keys is not None


@dataclass
class StrategyContext:
    now: datetime
    last_runs: dict = field(default_factory=dict)
    budgets: dict = field(default_factory=lambda: dict(DEFAULT_BUDGETS))
    watermark: datetime | None = None
    critical_keys: list[str] = field(default_factory=list)
    keys: list[str] | None = None
    critical_max_keys: int = 1000


def budgets_from_settings(settings) -> dict:
    return {
        FULL: timedelta(minutes=settings.smart_full_budget_min),
        INCREMENTAL: timedelta(minutes=settings.smart_incremental_budget_min),
        INVENTORY_ONLY: timedelta(minutes=settings.smart_inventory_budget_min),
        CRITICAL_ONLY: timedelta(minutes=settings.smart_critical_budget_min),
    }


def _refreshed_at(tier: str, last_runs: dict) -> datetime | None:
    """Latest run of this tier or any broader one."""
    stamps = [last_runs.get(t) for t in TIERS[:TIERS.index(tier) + 1]]
    stamps = [s for s in stamps if s is not None]
    return max(stamps) if stamps else None


def select(now: datetime, last_runs: dict, budgets: dict | None = None) -> str:
    """Pick the broadest tier whose staleness budget is exceeded.

    `last_runs` maps tier → start of its last successful run (missing/None if
    never). Defaults to critical_only when nothing is overdue.
    """
    budgets = budgets or DEFAULT_BUDGETS
    if last_runs.get(FULL) is None:
        return FULL
    for tier in TIERS:
        last = _refreshed_at(tier, last_runs)
        if last is None or now - last > budgets[tier]:
            return tier
    return CRITICAL_ONLY


def resolve(strategy: str, context: StrategyContext) -> SyncPlan:
    """Turn a requested strategy into a concrete plan."""
    if strategy not in STRATEGIES:
        raise ValueError(f"Unknown sync strategy: {strategy}")

    if strategy == SMART:
        chosen = select(context.now, context.last_runs, context.budgets)
        plan = resolve(chosen, context)
        return SyncPlan(
            strategy=plan.strategy,
            filter=plan.filter,
            fields=plan.fields,
            soft_delete=plan.soft_delete,
            include_vendors=plan.include_vendors,
            allow_insert=plan.allow_insert,
            requested=SMART,
            reason=f"smart selected {chosen}" + (f"; {plan.reason}" if plan.reason else ""),
        )

    if strategy == FULL:
        return SyncPlan(FULL, SyncFilter(), soft_delete=True, include_vendors=True,
                        requested=strategy)

    if strategy == INCREMENTAL:
        if context.watermark is None:
            return SyncPlan(FULL, SyncFilter(), soft_delete=True, include_vendors=True,
                            requested=INCREMENTAL,
                            reason="no watermark, falling back to full")
        return SyncPlan(INCREMENTAL, SyncFilter(modified_since=context.watermark),
                        include_vendors=True, requested=strategy)

    if strategy == INVENTORY_ONLY:
        return SyncPlan(INVENTORY_ONLY, SyncFilter(fields=STOCK_FIELDS),
                        fields=STOCK_FIELDS, allow_insert=False, requested=strategy)

    if strategy == CRITICAL_ONLY:
        keys = list(dict.fromkeys(context.critical_keys))[:context.critical_max_keys]
        return SyncPlan(CRITICAL_ONLY, SyncFilter(keys=frozenset(keys)),
                        requested=strategy)

    # TARGETED
    if not context.keys:
        raise ValueError("targeted sync needs at least one key")
    return SyncPlan(TARGETED, SyncFilter(keys=frozenset(context.keys)), requested=strategy)
