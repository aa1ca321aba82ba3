"""Background scheduler — automated inventory sync.

Runs on a tick loop (default 5 minutes). Each tick:
  - Stuck-run sweep: reaps a lock whose heartbeat expired, marks abandoned runs stuck
  - Smart sync: lets the strategy selector decide which tier is overdue

The orchestrator's concurrency guard makes overlapping ticks (or a manual
trigger mid-tick) harmless: the second run is recorded as skipped.
"""

import asyncio
import logging

log = logging.getLogger("stocksync.scheduler")


async def start_scheduler(startup_delay: float = 10):
    """Launch the background scheduler loop. Call once on app startup."""
    from .config import settings

    log.info(f"Background scheduler started — sync tick every {settings.scheduler_tick_seconds}s")

    # Let the app finish booting before the first tick
    await asyncio.sleep(startup_delay)

    while True:
        try:
            await _scheduler_tick()
        except Exception as e:
            log.error(f"Scheduler tick error: {e}")
        await asyncio.sleep(settings.scheduler_tick_seconds)


async def _scheduler_tick(orchestrator=None):
    """Run the stuck sweep and one smart sync. Returns the SyncRun (or None)."""
    from .dependencies import get_orchestrator
    from .sync import SyncOptions

    orchestrator = orchestrator or get_orchestrator()

    # ── Stuck-run sweep (every tick) ──
    try:
        swept = orchestrator.check_stuck()
        if swept["stuck_runs"]:
            log.warning(f"Marked {len(swept['stuck_runs'])} sync run(s) stuck")
    except Exception as e:
        log.error(f"Stuck-run sweep error: {e}")

    # ── Smart sync ──
    run = await orchestrator.run_sync("smart", SyncOptions(trigger="schedule"))
    if run.status == "skipped":
        log.debug("Scheduler tick: sync already running — skipped")
    else:
        log.info(
            f"Scheduled sync {run.id}: {run.strategy} → {run.status} "
            f"({run.written} written, {run.failed} failed)"
        )
    return run
