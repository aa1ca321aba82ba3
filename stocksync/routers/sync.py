"""Sync API — trigger runs, inspect status/history/health, re-drive failures.

Every endpoint is guarded by require_sync_key (x-sync-key header) when
SYNC_API_KEY is configured. The trigger awaits the run and returns its
SyncRun; a run skipped because another one holds the lock comes back as 409.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from ..dependencies import get_orchestrator, require_sync_key
from ..schemas.sync import (
    BatchFailureOut,
    CheckStuckOut,
    RetryFailedOut,
    RetryFailedRequest,
    SyncHealthOut,
    SyncRunOut,
    SyncStatusOut,
    SyncTriggerRequest,
)
from ..sync import STRATEGIES, SyncOptions

router = APIRouter(prefix="/api/sync", tags=["sync"], dependencies=[Depends(require_sync_key)])
log = logging.getLogger("stocksync.routers.sync")


@router.post("/trigger", response_model=SyncRunOut)
async def trigger_sync(body: SyncTriggerRequest, orchestrator=Depends(get_orchestrator)):
    options = SyncOptions(
        dry_run=body.dry_run,
        deadline_seconds=body.deadline_seconds,
        lock_mode=body.lock_mode,
        keys=body.keys,
        entity_kind=body.entity_kind,
        batch_size=body.batch_size,
        max_concurrency=body.max_concurrency,
        trigger="api",
    )
    try:
        run = await orchestrator.run_sync(body.strategy, options)
    except ValueError as e:
        raise HTTPException(400, str(e))
    out = SyncRunOut.model_validate(run)
    if run.status == "skipped":
        return JSONResponse(status_code=409, content=jsonable_encoder(out))
    return out


@router.get("/status", response_model=SyncStatusOut)
async def sync_status(orchestrator=Depends(get_orchestrator)):
    status = orchestrator.get_status()
    return SyncStatusOut(
        running=SyncRunOut.model_validate(status["running"]) if status["running"] else None,
        lock=status["lock"],
        last_run=SyncRunOut.model_validate(status["last_run"]) if status["last_run"] else None,
        rate_limiter=status["rate_limiter"],
        cache=status["cache"],
    )


@router.get("/history", response_model=list[SyncRunOut])
async def sync_history(
    limit: int = Query(20, ge=1, le=200),
    strategy: str | None = None,
    orchestrator=Depends(get_orchestrator),
):
    if strategy is not None and strategy not in STRATEGIES:
        raise HTTPException(400, f"Unknown strategy: {strategy}")
    return [SyncRunOut.model_validate(r) for r in orchestrator.get_history(limit, strategy)]


@router.get("/health", response_model=SyncHealthOut)
async def sync_health(orchestrator=Depends(get_orchestrator)):
    return SyncHealthOut(**orchestrator.get_health())


@router.get("/metrics")
async def sync_metrics(days: int = Query(7, ge=1, le=90), orchestrator=Depends(get_orchestrator)):
    return orchestrator.get_metrics(days)


@router.get("/runs/{run_id}", response_model=SyncRunOut)
async def sync_run(run_id: str, orchestrator=Depends(get_orchestrator)):
    run = orchestrator.log.get(run_id)
    if not run:
        raise HTTPException(404, "Sync run not found")
    return SyncRunOut.model_validate(run)


@router.get("/failures", response_model=list[BatchFailureOut])
async def sync_failures(
    run_id: str | None = None,
    include_resolved: bool = False,
    limit: int = Query(500, ge=1, le=5000),
    orchestrator=Depends(get_orchestrator),
):
    rows = orchestrator.get_failures(run_id=run_id, unresolved_only=not include_resolved, limit=limit)
    return [BatchFailureOut.model_validate(f) for f in rows]


@router.post("/retry-failed", response_model=RetryFailedOut)
async def retry_failed(body: RetryFailedRequest, orchestrator=Depends(get_orchestrator)):
    if body.entity_kind not in ("item", "vendor"):
        raise HTTPException(400, "entity_kind must be 'item' or 'vendor'")
    if body.run_id and not orchestrator.log.get(body.run_id):
        raise HTTPException(404, "Sync run not found")
    runs = await orchestrator.redrive(
        run_id=body.run_id,
        keys=body.keys,
        kind=body.entity_kind,
        options=SyncOptions(trigger="redrive", dry_run=body.dry_run),
    )
    if not runs:
        return RetryFailedOut(message="No unresolved failures to retry")
    log.info("Re-drive started %d run(s)", len(runs))
    return RetryFailedOut(
        runs=[SyncRunOut.model_validate(r) for r in runs],
        message=f"Re-drove {len(runs)} run(s)",
    )


@router.post("/check-stuck", response_model=CheckStuckOut)
async def check_stuck(orchestrator=Depends(get_orchestrator)):
    return CheckStuckOut(**orchestrator.check_stuck())


@router.post("/rebuild-cache")
async def rebuild_cache(orchestrator=Depends(get_orchestrator)):
    if orchestrator.cache is None:
        raise HTTPException(400, "Cache is not configured")
    return orchestrator.cache.rebuild(orchestrator.session_factory)
