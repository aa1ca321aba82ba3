"""Sync orchestrator — the single entry point for running a sync.

    orchestrator = build_orchestrator()
    run = await orchestrator.run_sync("smart", SyncOptions(trigger="schedule"))

Lifecycle of one run:
  1. take the concurrency guard (skip, or wait up to a timeout)
  2. resolve the strategy into a plan
  3. page through the remote source; for each page drop keys already seen this
     run, compare fingerprints, and write the changed records in batches
  4. soft-delete what the remote no longer returns (complete full runs only)
  5. finalize the SyncRun row, release the guard, refresh cache metadata

run_sync() always returns a SyncRun, including `skipped` when the guard is
held. It never raises for sync failures, store failures included; those end
up in the run's status and error. If even the run log is unwritable the
returned run is not persisted. asyncio.CancelledError is re-raised after
the run has been finalized and the guard released.

Called by: routers/sync.py, scheduler.py
Depends on: every module in stocksync.sync, cache.inventory_cache
"""

import asyncio
import contextlib
import logging
import random
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta

from ..database import utcnow
from ..utils import chunked
from .batch_processor import (
    BatchProcessor,
    KeyFailure,
    RetryExhausted,
    RetryPolicy,
    retry_async,
)
from .change_detector import order_by_priority, should_write, summarize
from .errors import LockContention, MalformedResponse, SyncCancelled, SyncError, classify
from .guard import ConcurrencyGuard, LockResult
from .reconciler import PendingWrite, Reconciler
from .records import ITEM, VENDOR, carry_report_fields
from .remote_client import collect
from .strategy import (
    CRITICAL_ONLY,
    FULL,
    SMART,
    STRATEGIES,
    TARGETED,
    StrategyContext,
    SyncPlan,
    budgets_from_settings,
    resolve,
)
from .sync_log import (
    ABORTED,
    COUNT_FIELDS,
    FAILED,
    PAGE_FAILURE,
    PARTIAL,
    REFRESHED,
    SUCCEEDED,
    SyncLog,
)

log = logging.getLogger("stocksync.orchestrator")

LOCK_MODES = ("skip", "wait")
KEYS_PER_FETCH = 50
MAX_CONSECUTIVE_PAGE_FAILURES = 3
PREVIEW_LIMIT = 100
MALFORMED_SAMPLES = 10
SNIPPET_CHARS = 500


@dataclass
class SyncOptions:
    dry_run: bool = False
    deadline_seconds: float | None = None
    cancel_event: asyncio.Event | None = None
    lock_mode: str = "skip"
    lock_wait_seconds: float | None = None
    keys: list[str] | None = None
    entity_kind: str = ITEM  # kind of `keys` for targeted runs
    batch_size: int | None = None
    max_concurrency: int | None = None
    trigger: str = "manual"


@dataclass
class _RunState:
    run_id: str
    started_at: datetime
    requested_strategy: str = SMART
    cancel_event: asyncio.Event | None = None
    stop_reason: str | None = None
    counts: dict = field(default_factory=lambda: dict.fromkeys(COUNT_FIELDS, 0))
    failures: list[KeyFailure] = field(default_factory=list)
    seen: dict = field(default_factory=dict)
    incomplete: set = field(default_factory=set)
    batch_index: int = 0
    ignored: int = 0
    malformed: int = 0
    malformed_payloads: list = field(default_factory=list)
    missing: dict = field(default_factory=dict)
    preview: list = field(default_factory=list)

    def request_stop(self, reason: str) -> None:
        if self.stop_reason is None:
            self.stop_reason = reason
            log.warning("Sync run %s stopping: %s", self.run_id, reason)

    def should_stop(self) -> bool:
        if self.stop_reason is None and self.cancel_event is not None and self.cancel_event.is_set():
            self.request_stop("cancelled")
        return self.stop_reason is not None


class SyncOrchestrator:
    def __init__(
        self,
        remote,
        session_factory,
        *,
        settings=None,
        cache=None,
        guard: ConcurrencyGuard | None = None,
        sync_log: SyncLog | None = None,
        reconciler: Reconciler | None = None,
        policy: RetryPolicy | None = None,
        clock=utcnow,
        sleep=asyncio.sleep,
        rng: random.Random | None = None,
        lock_poll_seconds: float | None = None,
        heartbeat_seconds: float | None = None,
    ):
        if settings is None:
            from ..config import settings
        self.settings = settings
        self.remote = remote
        self.session_factory = session_factory
        self.cache = cache
        self._clock = clock
        self._sleep = sleep
        self._rng = rng
        self.guard = guard or ConcurrencyGuard(
            session_factory,
            name=settings.sync_lock_name,
            stale_after=settings.sync_lock_stale_seconds,
            clock=clock,
        )
        self.log = sync_log or SyncLog(session_factory, clock=clock)
        self.reconciler = reconciler or Reconciler(session_factory, cache=cache)
        self.policy = policy or RetryPolicy.from_settings(settings)
        self.budgets = budgets_from_settings(settings)
        self.lock_poll_seconds = (
            settings.sync_lock_wait_poll_seconds if lock_poll_seconds is None else lock_poll_seconds
        )
        self.heartbeat_seconds = (
            settings.sync_heartbeat_seconds if heartbeat_seconds is None else heartbeat_seconds
        )

    # ── Entry point ─────────────────────────────────────────────────

    async def run_sync(self, strategy: str = SMART, options: SyncOptions | None = None):
        """Run one sync and return its terminal (or skipped) SyncRun.

        Raises ValueError only for an unknown strategy or lock mode.
        """
        options = options or SyncOptions()
        if strategy not in STRATEGIES:
            raise ValueError(f"Unknown sync strategy: {strategy}")
        if options.lock_mode not in LOCK_MODES:
            raise ValueError(f"Unknown lock mode: {options.lock_mode}")

        run_id = uuid.uuid4().hex
        try:
            lock = await self._acquire(run_id, options)
        except LockContention as e:
            log.info("Sync %s skipped: run %s holds the lock", strategy, e.holder)
            return self.log.skipped(run_id, strategy, trigger=options.trigger,
                                    dry_run=options.dry_run, holder=e.holder)
        except Exception as e:
            return self._not_started(run_id, strategy, options, e)

        try:
            if lock.reclaimed:
                self.log.mark_stuck(lock.previous_holder, "Lock reclaimed after heartbeat expired")
            run = self.log.start(run_id, strategy, trigger=options.trigger, dry_run=options.dry_run)
        except Exception as e:
            self._release(run_id)
            return self._not_started(run_id, strategy, options, e)

        state = _RunState(run_id, run.started_at, requested_strategy=strategy,
                          cancel_event=options.cancel_event)
        status, error, error_kind = FAILED, None, None
        plan = None
        heartbeat = None
        deadline = None
        if options.deadline_seconds is not None:
            deadline = asyncio.get_running_loop().call_later(
                options.deadline_seconds, state.request_stop, "deadline"
            )
        try:
            plan = self._plan(strategy, options)
            self.log.mark_running(run_id, plan.strategy, details={
                "plan_reason": plan.reason or None,
                "lock_reclaimed_from": lock.previous_holder,
            })
            log.info("Sync run %s started: %s (requested %s, trigger %s%s)",
                     run_id, plan.strategy, strategy, options.trigger,
                     ", dry run" if options.dry_run else "")
            heartbeat = asyncio.create_task(self._heartbeat(state))
            await self._execute(plan, state, options)
            status, error, error_kind = self._outcome(state)
        except asyncio.CancelledError:
            state.request_stop("cancelled")
            status, error, error_kind = ABORTED, "Sync task was cancelled", SyncCancelled.kind
            raise
        except SyncError as e:
            if e.fatal:
                log.error("Sync run %s aborted (%s): %s", run_id, e.kind, e)
                status = ABORTED
            else:
                log.error("Sync run %s failed (%s): %s", run_id, e.kind, e)
                status = FAILED
            error, error_kind = str(e), e.kind
        except Exception as e:
            log.exception("Sync run %s crashed", run_id)
            status, error, error_kind = FAILED, f"{type(e).__name__}: {e}", "unexpected"
        finally:
            if deadline is not None:
                deadline.cancel()
            if heartbeat is not None:
                heartbeat.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await heartbeat
            run = self._finish(state, plan, options, status, error, error_kind)
        return run

    # ── Phases ──────────────────────────────────────────────────────

    async def _acquire(self, run_id: str, options: SyncOptions) -> LockResult:
        """Take the guard, waiting if asked. Raises LockContention if it stays held."""
        result = self.guard.acquire(run_id)
        if not result.acquired and options.lock_mode == "wait":
            loop = asyncio.get_running_loop()
            timeout = options.lock_wait_seconds
            if timeout is None:
                timeout = self.settings.sync_lock_stale_seconds
            give_up = loop.time() + timeout
            while loop.time() < give_up:
                if options.cancel_event is not None and options.cancel_event.is_set():
                    break
                await asyncio.sleep(self.lock_poll_seconds)
                result = self.guard.acquire(run_id)
                if result.acquired:
                    break
        if not result.acquired:
            raise LockContention(f"Sync already running (run {result.holder})", holder=result.holder)
        return result

    def _release(self, run_id: str) -> None:
        try:
            self.guard.release(run_id)
        except Exception:
            log.exception("Could not release the sync lock for run %s", run_id)

    def _not_started(self, run_id: str, strategy: str, options: SyncOptions, exc: Exception):
        """A run that failed before any work: recorded as failed, never raised."""
        if isinstance(exc, SyncError):
            log.error("Sync %s could not start (%s): %s", strategy, exc.kind, exc)
        else:
            log.exception("Sync %s could not start", strategy)
        return self.log.closed(
            run_id, strategy, FAILED,
            trigger=options.trigger,
            dry_run=options.dry_run,
            error=f"Could not start: {exc}",
            error_kind=classify(exc),
        )

    def _plan(self, strategy: str, options: SyncOptions) -> SyncPlan:
        context = StrategyContext(
            now=self._clock(),
            last_runs=self.log.last_runs(),
            budgets=self.budgets,
            watermark=self.log.watermark(),
            keys=options.keys,
            critical_max_keys=self.settings.critical_max_keys,
        )
        if strategy in (SMART, CRITICAL_ONLY):
            context.critical_keys = self.reconciler.critical_keys(self.settings.critical_max_keys)
        return resolve(strategy, context)

    async def _heartbeat(self, state: _RunState) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_seconds)
            if not self.guard.heartbeat(state.run_id):
                log.error("Sync run %s lost its lock", state.run_id)
                state.request_stop("lock_lost")
                return

    async def _execute(self, plan: SyncPlan, state: _RunState, options: SyncOptions) -> None:
        if plan.strategy == TARGETED:
            kinds = [options.entity_kind]
        elif plan.include_vendors:
            kinds = [VENDOR, ITEM]
        else:
            kinds = [ITEM]

        for kind in kinds:
            if state.should_stop():
                break
            await self._sync_kind(kind, plan, state, options)
            if not plan.soft_delete or kind in state.incomplete or state.should_stop():
                continue
            if options.dry_run:
                continue
            state.counts["deactivated"] += self.reconciler.deactivate_missing(
                kind, state.seen.get(kind, ()), state.run_id, state.started_at
            )
            self.log.resolve_page_failures(kind, state.run_id)

    async def _sync_kind(self, kind: str, plan: SyncPlan, state: _RunState,
                         options: SyncOptions) -> None:
        seen = state.seen.setdefault(kind, set())
        async for records in self._pages(kind, plan, state):
            state.counts["pages"] += 1
            fresh = []
            for record in records:
                if record.key in seen:
                    continue  # a key is written at most once per run
                seen.add(record.key)
                fresh.append(record)
            state.counts["fetched"] += len(fresh)
            if fresh:
                await self._process(kind, plan, state, options, fresh)

    async def _pages(self, kind: str, plan: SyncPlan, state: _RunState):
        """Yield record lists page by page. Failed fetches are recorded and skipped."""
        sync_filter = plan.filter

        if plan.by_keys:
            for i, chunk in enumerate(chunked(sorted(sync_filter.keys), KEYS_PER_FETCH)):
                if state.should_stop():
                    return
                records = await self._fetch(
                    state, kind, f"keys@{i}",
                    lambda c=chunk: self.remote.fetch_by_keys(kind, c, sync_filter),
                    keys=chunk,
                )
                if records is None:
                    continue
                returned = {r.key for r in records}
                missing = [k for k in chunk if k not in returned]
                if missing:
                    log.warning("Remote returned nothing for %d %s key(s): %s",
                                len(missing), kind, ", ".join(missing[:20]))
                    state.missing.setdefault(kind, []).extend(missing)
                yield records
            return

        report_url = self.remote.report_url(kind) if plan.strategy == FULL else None
        if report_url:
            records = await self._fetch(
                state, kind, "report",
                lambda: collect(self.remote.fetch_full_dump(kind, sync_filter, report_url)),
            )
            if records is None:
                return
            for chunk in chunked(records, self.settings.remote_page_size):
                if state.should_stop():
                    state.incomplete.add(kind)
                    return
                yield chunk
            return

        cursor = None
        failed_in_a_row = 0
        while True:
            if state.should_stop():
                state.incomplete.add(kind)
                return
            page = await self._fetch(
                state, kind, f"{cursor or 0}",
                lambda c=cursor: self.remote.fetch_page(kind, c, sync_filter),
            )
            if page is None:
                failed_in_a_row += 1
                next_cursor = self.remote.skip_cursor(cursor)
                if next_cursor is None or failed_in_a_row >= MAX_CONSECUTIVE_PAGE_FAILURES:
                    log.error("Giving up on %s pages after cursor %s", kind, cursor)
                    return
                cursor = next_cursor
                continue
            failed_in_a_row = 0
            state.malformed += page.malformed
            yield page.records
            if page.done:
                return
            cursor = page.next_cursor

    async def _fetch(self, state: _RunState, kind: str, label: str, fn, keys=None):
        """One remote call under the retry policy. None when it gave up."""
        try:
            return await retry_async(fn, self.policy, label=f"{kind} fetch {label}",
                                     sleep=self._sleep, rng=self._rng)
        except RetryExhausted as exc:
            log.error("Skipping %s fetch %s after %d attempt(s): %s",
                      kind, label, exc.attempts, exc.last_error)
            state.incomplete.add(kind)
            message = str(exc.last_error)[:1000]
            if isinstance(exc.last_error, MalformedResponse):
                message = self._malformed(state, kind, label, exc.last_error) or message
            if keys:
                state.failures.extend(
                    KeyFailure(key, exc.kind, exc.attempts, message, -1, entity_kind=kind)
                    for key in keys
                )
            else:
                state.failures.append(KeyFailure(
                    f"{kind}@{label}", exc.kind, exc.attempts, message, -1,
                    entity_kind=PAGE_FAILURE,
                ))
            return None

    def _malformed(self, state: _RunState, kind: str, label: str, exc: MalformedResponse):
        """Log and keep a sample of an unusable payload. Returns the failure message."""
        snippet = (exc.raw or "")[:SNIPPET_CHARS]
        log.warning("Malformed %s response for fetch %s (content type %s): %r",
                    kind, label, exc.content_type, snippet)
        if len(state.malformed_payloads) < MALFORMED_SAMPLES:
            state.malformed_payloads.append({
                "kind": kind,
                "fetch": label,
                "content_type": exc.content_type,
                "status_code": exc.status_code,
                "raw": snippet,
            })
        if not snippet:
            return None
        return f"{exc} (content type {exc.content_type}): {snippet}"[:1000]

    async def _process(self, kind: str, plan: SyncPlan, state: _RunState,
                       options: SyncOptions, records: list) -> None:
        known = self.reconciler.known_state(kind, [r.key for r in records])
        changed = []
        baselines = {}
        for record in records:
            current = known.get(record.key)
            if plan.fields is not None:
                # Partial-field plans only refresh rows we already have
                if current is None or not current.active:
                    state.ignored += 1
                    continue
                decision = should_write(record, current.fingerprint, current.baseline)
            else:
                if current is not None:
                    record = carry_report_fields(record, current.baseline)
                decision = should_write(record, current.fingerprint if current else None)
            if decision.write:
                changed.append((record, decision))
                if current is not None:
                    baselines[record.key] = current.baseline
            else:
                state.counts["unchanged"] += 1
        state.counts["changed"] += len(changed)
        if not changed:
            return

        changed = order_by_priority(changed)
        if options.dry_run:
            room = PREVIEW_LIMIT - len(state.preview)
            state.preview.extend(
                {"kind": kind, "key": r.key, "reason": d.reason, "priority": d.priority}
                for r, d in changed[:max(room, 0)]
            )
            return

        writes = [
            PendingWrite(r, d, state.run_id, state.started_at, baseline=baselines.get(r.key))
            for r, d in changed
        ]
        processor = BatchProcessor(
            batch_size=options.batch_size or self.settings.sync_batch_size,
            max_concurrency=options.max_concurrency or self.settings.sync_max_concurrency,
            policy=self.policy,
            batch_timeout=self.settings.sync_batch_timeout_seconds or None,
            sleep=self._sleep,
            rng=self._rng,
        )

        async def write(batch):
            # Off the event loop, so batch timeouts and the concurrency cap apply
            return await asyncio.to_thread(
                self.reconciler.apply_batch,
                batch, fields=plan.fields, allow_insert=plan.allow_insert,
            )

        outcome = await processor.run(
            writes, write,
            key=lambda w: w.record.key,
            should_stop=state.should_stop,
            first_index=state.batch_index,
        )
        state.batch_index += outcome.total_batches
        for result in outcome.results:
            state.counts["written"] += result.written
            state.ignored += len(result.skipped)
        for failure in outcome.failures:
            failure.entity_kind = kind
            state.failures.append(failure)
        if outcome.not_started:
            state.incomplete.add(kind)
        if outcome.fatal is not None:
            raise outcome.fatal

    def _outcome(self, state: _RunState) -> tuple[str, str | None, str | None]:
        if state.stop_reason == "lock_lost":
            return ABORTED, "Lost the sync lock mid-run", "lock_lost"
        if state.stop_reason:
            return ABORTED, f"Run stopped: {state.stop_reason}", SyncCancelled.kind
        if state.failures:
            return PARTIAL, f"{len(state.failures)} key(s) failed", None
        return SUCCEEDED, None, None

    def _finish(self, state: _RunState, plan: SyncPlan | None, options: SyncOptions,
                status: str, error: str | None, error_kind: str | None):
        state.counts["failed"] = len(state.failures)
        seconds = (self._clock() - state.started_at).total_seconds()
        details = {
            "stats": summarize(state.counts["fetched"], state.counts["changed"], seconds),
            "ignored": state.ignored,
            "malformed": state.malformed,
            "incomplete": sorted(state.incomplete),
            "stop_reason": state.stop_reason,
        }
        if state.malformed_payloads:
            details["malformed_payloads"] = state.malformed_payloads
        if state.missing:
            details["missing_keys"] = state.missing
        if options.dry_run:
            details["would_write"] = state.preview
        complete = not state.incomplete
        try:
            run = self.log.finalize(
                state.run_id, status,
                counts=state.counts,
                failures=state.failures,
                error=error,
                error_kind=error_kind,
                details=details,
                complete=complete,
            )
        except Exception as e:
            log.exception("Could not record the end of sync run %s", state.run_id)
            details["log_error"] = f"{type(e).__name__}: {e}"
            run = None
        finally:
            self._release(state.run_id)
        if run is None:
            run = self.log.build_run(
                state.run_id, state.requested_strategy, status,
                strategy=plan.strategy if plan else None,
                trigger=options.trigger,
                dry_run=options.dry_run,
                started_at=state.started_at,
                counts=state.counts,
                error=error,
                error_kind=error_kind,
                details=details,
            )
        log.info("Sync run %s finished %s: %s", state.run_id, status, state.counts)

        if self.cache is not None and not options.dry_run and status in REFRESHED and complete:
            self.cache.set_metadata({
                "last_sync": state.started_at.isoformat(),
                "run_id": state.run_id,
                "strategy": plan.strategy if plan else None,
                "status": status,
                "counts": state.counts,
            })
        return run

    # ── Operations around runs ──────────────────────────────────────

    async def redrive(self, run_id: str | None = None, keys: list[str] | None = None,
                      kind: str = ITEM, options: SyncOptions | None = None) -> list:
        """Re-run the keys recorded as batch failures (or an explicit key list).

        One targeted run per entity kind. Keys the run got through are marked
        resolved; keys the remote no longer returns stay open for a person to
        look at. Returns the runs started, empty if there was nothing to do.
        """
        options = options or SyncOptions(trigger="redrive")
        if keys:
            by_kind = {kind: list(dict.fromkeys(keys))}
        else:
            by_kind = {}
            for f in self.log.failures(run_id=run_id, unresolved_only=True):
                if f.entity_kind == PAGE_FAILURE:
                    continue
                bucket = by_kind.setdefault(f.entity_kind, [])
                if f.natural_key not in bucket:
                    bucket.append(f.natural_key)

        runs = []
        for entity_kind, entity_keys in by_kind.items():
            if not entity_keys:
                continue
            run = await self.run_sync(
                TARGETED, replace(options, keys=entity_keys, entity_kind=entity_kind)
            )
            runs.append(run)
            if run.status not in REFRESHED or run.dry_run:
                continue
            still_failing = {
                f.natural_key for f in self.log.failures(run_id=run.id, unresolved_only=False)
            }
            missing = set(((run.details or {}).get("missing_keys") or {}).get(entity_kind, ()))
            if missing:
                log.warning("Re-drive run %s: %d %s key(s) not found on the remote, left unresolved",
                            run.id, len(missing), entity_kind)
            fixed = [k for k in entity_keys if k not in still_failing and k not in missing]
            resolved = self.log.resolve_failures(entity_kind, fixed, run.id)
            log.info("Re-drive run %s resolved %d %s failure(s)", run.id, resolved, entity_kind)
        return runs

    def check_stuck(self) -> dict:
        """Reap a dead lock holder and mark abandoned runs stuck."""
        reaped = self.guard.reap_stale()
        stuck = []
        if reaped and self.log.mark_stuck(reaped, "Lock heartbeat expired"):
            stuck.append(reaped)
        holder = self.guard.holder()
        stuck.extend(self.log.mark_stale_running(
            timedelta(seconds=self.settings.sync_lock_stale_seconds),
            exclude=holder["run_id"] if holder else None,
        ))
        return {"reaped_lock_from": reaped, "stuck_runs": stuck}

    def get_status(self) -> dict:
        history = self.log.history(limit=1)
        limiter = getattr(self.remote, "limiter", None)
        return {
            "running": self.log.current(),
            "lock": self.guard.holder(),
            "last_run": history[0] if history else None,
            "rate_limiter": limiter.status() if limiter is not None else None,
            "cache": self.cache.get_metadata() if self.cache is not None else None,
        }

    def get_history(self, limit: int = 20, strategy: str | None = None) -> list:
        return self.log.history(limit=limit, strategy=strategy)

    def get_health(self) -> dict:
        health = self.log.health(
            self._clock(), stale_after=timedelta(minutes=self.settings.smart_full_budget_min)
        )
        lock = self.guard.holder()
        health["lock"] = lock
        if lock and lock["stale"] and health["status"] == "healthy":
            health["status"] = "degraded"
        return health

    def get_metrics(self, days: int = 7) -> dict:
        return self.log.metrics(days)

    def get_failures(self, run_id: str | None = None, unresolved_only: bool = True,
                     limit: int = 500) -> list:
        return self.log.failures(run_id=run_id, unresolved_only=unresolved_only, limit=limit)


def build_orchestrator(settings=None, session_factory=None, remote=None, cache=None):
    """Wire the production orchestrator from settings."""
    from ..cache.inventory_cache import cache_from_settings
    from ..config import settings as default_settings
    from ..database import SessionLocal
    from .rate_limiter import limiter_from_settings
    from .remote_client import FinaleClient

    settings = settings or default_settings
    if remote is None:
        remote = FinaleClient.from_settings(settings, limiter_from_settings(settings))
    return SyncOrchestrator(
        remote,
        session_factory or SessionLocal,
        settings=settings,
        cache=cache if cache is not None else cache_from_settings(settings),
    )
