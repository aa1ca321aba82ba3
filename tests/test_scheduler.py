"""
test_scheduler.py — Tests for the background sync scheduler

Covers one scheduler tick: the stuck-run sweep followed by a smart sync,
skip behavior while another run holds the lock, and a sweep failure not
blocking the sync.

Called by: pytest
Depends on: stocksync/scheduler.py, conftest.py
"""

import asyncio
from unittest.mock import patch

from conftest import FakeRemote, item
from stocksync.scheduler import _scheduler_tick


def _run(coro):
    """Run an async coroutine synchronously in a fresh event loop."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def test_tick_runs_smart_sync(make_orchestrator):
    orch = make_orchestrator(FakeRemote(items={"A1": item()}))
    run = _run(_scheduler_tick(orch))
    assert run.requested_strategy == "smart"
    assert run.strategy == "full"
    assert run.trigger == "schedule"
    assert run.status == "succeeded"


def test_tick_picks_cheaper_tier_when_fresh(make_orchestrator, clock):
    orch = make_orchestrator(FakeRemote(items={"A1": item()}))
    _run(_scheduler_tick(orch))
    clock.advance(minutes=5)
    assert _run(_scheduler_tick(orch)).strategy == "critical_only"


def test_tick_is_skipped_while_sync_running(make_orchestrator):
    orch = make_orchestrator(FakeRemote(items={"A1": item()}))
    orch.guard.acquire("manual-run")
    run = _run(_scheduler_tick(orch))
    assert run.status == "skipped"


def test_tick_sweeps_stuck_runs_first(make_orchestrator, clock, test_settings):
    orch = make_orchestrator(FakeRemote(items={"A1": item()}))
    orch.log.start("dead-run", "full")
    orch.log.mark_running("dead-run", "full")
    orch.guard.acquire("dead-run")
    clock.advance(seconds=test_settings.sync_lock_stale_seconds + 1)

    run = _run(_scheduler_tick(orch))

    assert run.status == "succeeded"
    assert orch.log.get("dead-run").status == "stuck"
    # The sweep freed the lock, so this run did not have to reclaim it
    assert run.details["lock_reclaimed_from"] is None


def test_sweep_error_does_not_block_sync(make_orchestrator):
    orch = make_orchestrator(FakeRemote(items={"A1": item()}))
    with patch.object(orch, "check_stuck", side_effect=RuntimeError("db hiccup")):
        run = _run(_scheduler_tick(orch))
    assert run.status == "succeeded"


def test_tick_uses_shared_orchestrator(make_orchestrator):
    orch = make_orchestrator(FakeRemote())
    with patch("stocksync.dependencies.get_orchestrator", return_value=orch):
        run = _run(_scheduler_tick())
    assert run.status == "succeeded"
