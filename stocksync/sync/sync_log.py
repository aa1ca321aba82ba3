"""SyncLog — durable record of every sync run and its batch failures.

A SyncRun row goes pending → running → one terminal status and is never
modified after that. Failures are kept per natural key so a later run can
re-drive exactly the keys that did not make it.

Also answers the questions the scheduler and the status endpoints ask:
when did each tier last refresh, is the engine healthy, what failed.

A run only counts as a tier refresh (and only moves the incremental
watermark) when it covered its whole scope: `succeeded`, or `partial` with
every page fetched. A partial run that skipped a page would otherwise hide
that page's changes from the next incremental run.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from ..database import utcnow
from ..models import BatchFailure, SyncRun
from ..utils import parse_datetime
from .errors import LockContention

log = logging.getLogger("stocksync.synclog")

PENDING = "pending"
RUNNING = "running"
SUCCEEDED = "succeeded"
FAILED = "failed"
PARTIAL = "partial"
STUCK = "stuck"
ABORTED = "aborted"
SKIPPED = "skipped"

TERMINAL = frozenset({SUCCEEDED, FAILED, PARTIAL, STUCK, ABORTED, SKIPPED})
# Runs that got their data through, possibly with some failed keys
REFRESHED = (SUCCEEDED, PARTIAL)
FAILURES = (FAILED, ABORTED, STUCK)

# entity_kind of failures for a whole page rather than one key; not re-drivable
PAGE_FAILURE = "page"

COUNT_FIELDS = ("fetched", "changed", "written", "failed", "unchanged", "deactivated", "pages")


def _detach(db, obj):
    """Load every column then detach so the object outlives the session."""
    db.refresh(obj)
    db.expunge(obj)
    return obj


class SyncLog:
    def __init__(self, session_factory, *, clock=utcnow):
        self._session_factory = session_factory
        self._clock = clock

    # ── Lifecycle ────────────────────────────────────────────────────

    def start(self, run_id: str, requested_strategy: str, *, trigger: str = "manual",
              dry_run: bool = False) -> SyncRun:
        db = self._session_factory()
        try:
            run = SyncRun(
                id=run_id,
                requested_strategy=requested_strategy,
                trigger=trigger,
                status=PENDING,
                dry_run=dry_run,
                started_at=self._clock(),
            )
            db.add(run)
            db.commit()
            return _detach(db, run)
        finally:
            db.close()

    def build_run(self, run_id: str, requested_strategy: str, status: str, *,
                  strategy: str | None = None, trigger: str = "manual", dry_run: bool = False,
                  started_at: datetime | None = None, counts: dict | None = None,
                  error: str | None = None, error_kind: str | None = None,
                  details: dict | None = None) -> SyncRun:
        """A terminal SyncRun that is not (yet) in the store."""
        now = self._clock()
        started_at = started_at or now
        values = dict.fromkeys(COUNT_FIELDS, 0)
        values.update({k: v for k, v in (counts or {}).items() if k in values})
        return SyncRun(
            id=run_id,
            requested_strategy=requested_strategy,
            strategy=strategy,
            trigger=trigger,
            status=status,
            dry_run=dry_run,
            refreshed=False,
            started_at=started_at,
            finished_at=now,
            duration_seconds=round((now - started_at).total_seconds(), 3),
            error=error[:2000] if error else None,
            error_kind=error_kind,
            details=details,
            **values,
        )

    def closed(self, run_id: str, requested_strategy: str, status: str, **kwargs) -> SyncRun:
        """Persist a run that ended before it ever started working.

        If the store itself is failing, the run is logged and returned
        unsaved so callers always get a SyncRun back.
        """
        db = self._session_factory()
        try:
            run = self.build_run(run_id, requested_strategy, status, **kwargs)
            db.add(run)
            db.commit()
            return _detach(db, run)
        except SQLAlchemyError as e:
            db.rollback()
            log.error("Could not record %s sync run %s: %s", status, run_id, e)
            return self.build_run(run_id, requested_strategy, status, **kwargs)
        finally:
            db.close()

    def skipped(self, run_id: str, requested_strategy: str, *, trigger: str = "manual",
                dry_run: bool = False, holder: str | None = None) -> SyncRun:
        """Persist a run that never started because another run holds the lock."""
        return self.closed(
            run_id, requested_strategy, SKIPPED,
            trigger=trigger,
            dry_run=dry_run,
            error=f"Sync already running (run {holder})" if holder else "Sync already running",
            error_kind=LockContention.kind,
        )

    def mark_running(self, run_id: str, strategy: str, details: dict | None = None) -> bool:
        db = self._session_factory()
        try:
            result = db.execute(
                update(SyncRun)
                .where(SyncRun.id == run_id, SyncRun.status == PENDING)
                .values(status=RUNNING, strategy=strategy, details=details)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return result.rowcount == 1
        finally:
            db.close()

    def finalize(
        self,
        run_id: str,
        status: str,
        counts: dict | None = None,
        failures: list | None = None,
        error: str | None = None,
        error_kind: str | None = None,
        details: dict | None = None,
        complete: bool = True,
    ) -> SyncRun | None:
        """Move a run to its terminal status. A no-op on runs already terminal.

        `complete` is False when some page was never fetched; such a run does
        not count as a refresh of its tier.
        """
        if status not in TERMINAL:
            raise ValueError(f"Not a terminal status: {status}")
        now = self._clock()
        db = self._session_factory()
        try:
            run = db.get(SyncRun, run_id)
            if run is None:
                log.error("finalize: unknown sync run %s", run_id)
                return None
            if run.status in TERMINAL:
                log.warning("finalize: run %s already %s, leaving it", run_id, run.status)
                return _detach(db, run)

            run.status = status
            run.refreshed = status in REFRESHED and complete and not run.dry_run
            run.finished_at = now
            run.duration_seconds = round((now - run.started_at).total_seconds(), 3)
            for name in COUNT_FIELDS:
                if counts and name in counts:
                    setattr(run, name, counts[name])
            run.error = error[:2000] if error else None
            run.error_kind = error_kind
            if details is not None:
                run.details = {**(run.details or {}), **details}

            for f in failures or []:
                db.add(BatchFailure(
                    run_id=run_id,
                    natural_key=f.key,
                    entity_kind=f.entity_kind,
                    error_kind=f.error_kind,
                    attempts=f.attempts,
                    last_error=f.message,
                    batch_index=f.batch_index,
                ))
            db.commit()
            return _detach(db, run)
        finally:
            db.close()

    def mark_stuck(self, run_id: str, reason: str = "Lock heartbeat expired") -> bool:
        """Mark a non-terminal run stuck. Returns False if it already finished."""
        now = self._clock()
        db = self._session_factory()
        try:
            result = db.execute(
                update(SyncRun)
                .where(SyncRun.id == run_id, SyncRun.status.in_((PENDING, RUNNING)))
                .values(status=STUCK, finished_at=now, error=reason, error_kind="stuck")
                .execution_options(synchronize_session=False)
            )
            db.commit()
            if result.rowcount:
                log.warning("Marked sync run %s as stuck: %s", run_id, reason)
            return result.rowcount == 1
        finally:
            db.close()

    def mark_stale_running(self, older_than: timedelta, exclude: str | None = None) -> list[str]:
        """Runs left `running` longer than `older_than` (a crashed worker) → stuck.

        `exclude` is the live lock holder, which is never touched.
        """
        cutoff = self._clock() - older_than
        db = self._session_factory()
        try:
            ids = list(db.execute(
                select(SyncRun.id).where(
                    SyncRun.status.in_((PENDING, RUNNING)), SyncRun.started_at < cutoff
                )
            ).scalars())
        finally:
            db.close()
        return [
            run_id for run_id in ids
            if run_id != exclude and self.mark_stuck(run_id, "Run exceeded stale threshold")
        ]

    # ── Queries ──────────────────────────────────────────────────────

    def get(self, run_id: str) -> SyncRun | None:
        db = self._session_factory()
        try:
            run = db.get(SyncRun, run_id)
            return _detach(db, run) if run else None
        finally:
            db.close()

    def current(self) -> SyncRun | None:
        """The run currently in progress, if any."""
        db = self._session_factory()
        try:
            run = db.execute(
                select(SyncRun)
                .where(SyncRun.status == RUNNING)
                .order_by(SyncRun.started_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            return _detach(db, run) if run else None
        finally:
            db.close()

    def history(self, limit: int = 20, strategy: str | None = None) -> list[SyncRun]:
        db = self._session_factory()
        try:
            q = select(SyncRun).order_by(SyncRun.started_at.desc()).limit(limit)
            if strategy:
                q = q.where(SyncRun.strategy == strategy)
            runs = list(db.execute(q).scalars())
            for run in runs:
                db.expunge(run)
            return runs
        finally:
            db.close()

    def last_runs(self) -> dict[str, datetime]:
        """Start time of the last complete, non-dry run of each resolved strategy."""
        db = self._session_factory()
        try:
            rows = db.execute(
                select(SyncRun.strategy, func.max(SyncRun.started_at))
                .where(SyncRun.refreshed.is_(True), SyncRun.dry_run.is_(False))
                .group_by(SyncRun.strategy)
            ).all()
        finally:
            db.close()
        # func.max bypasses the UTCDateTime result processor on some dialects
        return {strategy: parse_datetime(started) for strategy, started in rows if strategy}

    def watermark(self) -> datetime | None:
        """Start of the last refreshing full or incremental run."""
        runs = self.last_runs()
        stamps = [runs[s] for s in ("full", "incremental") if runs.get(s)]
        return max(stamps) if stamps else None

    def failures(self, run_id: str | None = None, unresolved_only: bool = True,
                 limit: int = 500) -> list[BatchFailure]:
        db = self._session_factory()
        try:
            q = select(BatchFailure).order_by(BatchFailure.id.desc()).limit(limit)
            if run_id:
                q = q.where(BatchFailure.run_id == run_id)
            if unresolved_only:
                q = q.where(BatchFailure.resolved_at.is_(None))
            rows = list(db.execute(q).scalars())
            for row in rows:
                db.expunge(row)
            return rows
        finally:
            db.close()

    def resolve_failures(self, kind: str, keys, run_id: str) -> int:
        """Mark unresolved failures for `keys` as fixed by `run_id`."""
        keys = list(keys)
        if not keys:
            return 0
        db = self._session_factory()
        try:
            result = db.execute(
                update(BatchFailure)
                .where(
                    BatchFailure.entity_kind == kind,
                    BatchFailure.natural_key.in_(keys),
                    BatchFailure.resolved_at.is_(None),
                )
                .values(resolved_at=self._clock(), resolved_by_run_id=run_id)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return result.rowcount
        finally:
            db.close()

    def resolve_page_failures(self, kind: str, run_id: str) -> int:
        """Close out failed-page records for `kind` once a full pass got every page."""
        db = self._session_factory()
        try:
            result = db.execute(
                update(BatchFailure)
                .where(
                    BatchFailure.entity_kind == PAGE_FAILURE,
                    BatchFailure.natural_key.like(f"{kind}@%"),
                    BatchFailure.resolved_at.is_(None),
                )
                .values(resolved_at=self._clock(), resolved_by_run_id=run_id)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return result.rowcount
        finally:
            db.close()

    def health(self, now: datetime | None = None, stale_after: timedelta = timedelta(hours=24)) -> dict:
        """Engine health from the run history alone (no remote calls)."""
        now = now or self._clock()
        db = self._session_factory()
        try:
            runs = list(db.execute(
                select(SyncRun)
                .where(SyncRun.dry_run.is_(False), SyncRun.status.in_(TERMINAL - {SKIPPED}))
                .order_by(SyncRun.started_at.desc())
                .limit(50)
            ).scalars())
            last_success = db.execute(
                select(SyncRun)
                .where(SyncRun.status == SUCCEEDED, SyncRun.dry_run.is_(False))
                .order_by(SyncRun.started_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            unresolved = db.execute(
                select(func.count(BatchFailure.id)).where(BatchFailure.resolved_at.is_(None))
            ).scalar()

            consecutive = 0
            for run in runs:
                if run.status in REFRESHED:
                    break
                consecutive += 1
            latest = runs[0] if runs else None
            auth_blocked = bool(latest and latest.error_kind == "auth")

            if auth_blocked or consecutive >= 3:
                status = "unhealthy"
            elif (
                consecutive
                or last_success is None
                or now - last_success.started_at > stale_after
                or (latest is not None and latest.status == PARTIAL)
            ):
                status = "degraded"
            else:
                status = "healthy"

            return {
                "status": status,
                "last_success": last_success.finished_at if last_success else None,
                "last_success_run_id": last_success.id if last_success else None,
                "last_run_status": latest.status if latest else None,
                "last_error": latest.error if latest and latest.status != SUCCEEDED else None,
                "consecutive_failures": consecutive,
                "auth_blocked": auth_blocked,
                "unresolved_failures": unresolved or 0,
            }
        finally:
            db.close()

    def metrics(self, days: int = 7) -> dict:
        """Aggregate run statistics over the last `days` days."""
        since = self._clock() - timedelta(days=days)
        db = self._session_factory()
        try:
            runs = list(db.execute(
                select(SyncRun).where(
                    SyncRun.started_at >= since,
                    SyncRun.status.in_(TERMINAL - {SKIPPED}),
                    SyncRun.dry_run.is_(False),
                )
            ).scalars())
        finally:
            db.close()

        total = len(runs)
        ok = [r for r in runs if r.status in REFRESHED]
        durations = [r.duration_seconds for r in runs if r.duration_seconds is not None]
        rates = [r.changed / r.fetched * 100 for r in runs if r.fetched]
        by_status: dict[str, int] = {}
        by_strategy: dict[str, int] = {}
        for r in runs:
            by_status[r.status] = by_status.get(r.status, 0) + 1
            by_strategy[r.strategy or r.requested_strategy] = (
                by_strategy.get(r.strategy or r.requested_strategy, 0) + 1
            )
        avg_rate = round(sum(rates) / len(rates), 2) if rates else 0.0
        return {
            "days": days,
            "runs": total,
            "success_rate": round(len(ok) / total * 100, 2) if total else 0.0,
            "avg_duration_seconds": round(sum(durations) / len(durations), 2) if durations else 0.0,
            "avg_change_rate": avg_rate,
            "efficiency_gain": round(100 - avg_rate, 2) if rates else 0.0,
            "items_written": sum(r.written or 0 for r in runs),
            "by_status": by_status,
            "by_strategy": by_strategy,
        }
