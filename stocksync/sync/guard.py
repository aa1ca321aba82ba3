"""Concurrency guard — at most one live sync run across every process.

The lock is a single persisted row (sync_locks). Acquisition is one
compare-and-set UPDATE against the holder we just observed, so two processes
racing for the same stale lock can never both win:

    UPDATE sync_locks SET holder=:me, acquired_at=:now, heartbeat_at=:now
     WHERE name=:name AND holder IS :observed
       AND (holder IS NULL OR heartbeat_at < :cutoff)

A holder whose heartbeat is older than `stale_after` is considered dead and
may be reclaimed; the caller then marks that run `stuck`.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import or_, select, update
from sqlalchemy.exc import OperationalError

from ..database import dialect_insert, utcnow
from ..models import SyncLock
from .errors import TransportError

log = logging.getLogger("stocksync.guard")


@dataclass
class LockResult:
    acquired: bool
    previous_holder: str | None = None
    reclaimed: bool = False
    holder: str | None = None  # live holder when not acquired


class ConcurrencyGuard:
    def __init__(self, session_factory, name: str = "inventory_sync",
                 stale_after: float = 1800, *, clock=utcnow):
        self._session_factory = session_factory
        self.name = name
        self.stale_after = timedelta(seconds=stale_after)
        self._clock = clock

    def _ensure_row(self, db) -> None:
        insert = dialect_insert(db)
        db.execute(
            insert(SyncLock.__table__)
            .values(name=self.name)
            .on_conflict_do_nothing(index_elements=["name"])
        )
        db.commit()

    def _is_stale(self, heartbeat_at, now) -> bool:
        return heartbeat_at is None or heartbeat_at < now - self.stale_after

    def acquire(self, run_id: str) -> LockResult:
        now = self._clock()
        cutoff = now - self.stale_after
        db = self._session_factory()
        try:
            self._ensure_row(db)
            observed, heartbeat_at = db.execute(
                select(SyncLock.holder_run_id, SyncLock.heartbeat_at)
                .where(SyncLock.name == self.name)
            ).one()
            if observed is not None and not self._is_stale(heartbeat_at, now):
                return LockResult(False, holder=observed)

            same_holder = (
                SyncLock.holder_run_id.is_(None)
                if observed is None
                else SyncLock.holder_run_id == observed
            )
            result = db.execute(
                update(SyncLock)
                .where(
                    SyncLock.name == self.name,
                    same_holder,
                    or_(
                        SyncLock.holder_run_id.is_(None),
                        SyncLock.heartbeat_at.is_(None),
                        SyncLock.heartbeat_at < cutoff,
                    ),
                )
                .values(holder_run_id=run_id, acquired_at=now, heartbeat_at=now)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            if result.rowcount != 1:
                # Somebody else won the race between our read and the CAS
                current = db.execute(
                    select(SyncLock.holder_run_id).where(SyncLock.name == self.name)
                ).scalar()
                return LockResult(False, holder=current)

            if observed is not None:
                log.warning("Reclaimed stale sync lock from run %s (last heartbeat %s)",
                            observed, heartbeat_at)
                return LockResult(True, previous_holder=observed, reclaimed=True)
            return LockResult(True)
        except OperationalError as e:
            db.rollback()
            raise TransportError(f"Lock store unavailable: {e.orig}") from e
        finally:
            db.close()

    def heartbeat(self, run_id: str) -> bool:
        """Refresh our heartbeat. False means the lock is no longer ours."""
        db = self._session_factory()
        try:
            result = db.execute(
                update(SyncLock)
                .where(SyncLock.name == self.name, SyncLock.holder_run_id == run_id)
                .values(heartbeat_at=self._clock())
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return result.rowcount == 1
        finally:
            db.close()

    def release(self, run_id: str) -> bool:
        """Clear the lock, but only if `run_id` still holds it."""
        db = self._session_factory()
        try:
            result = db.execute(
                update(SyncLock)
                .where(SyncLock.name == self.name, SyncLock.holder_run_id == run_id)
                .values(holder_run_id=None, acquired_at=None, heartbeat_at=None)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            released = result.rowcount == 1
            if not released:
                log.warning("Run %s tried to release a sync lock it does not hold", run_id)
            return released
        finally:
            db.close()

    def holder(self) -> dict | None:
        """Current lock state for status endpoints. None when the lock is free."""
        db = self._session_factory()
        try:
            row = db.get(SyncLock, self.name)
            if row is None or row.holder_run_id is None:
                return None
            return {
                "run_id": row.holder_run_id,
                "acquired_at": row.acquired_at,
                "heartbeat_at": row.heartbeat_at,
                "stale": self._is_stale(row.heartbeat_at, self._clock()),
            }
        finally:
            db.close()

    def reap_stale(self) -> str | None:
        """Clear a dead holder. Returns its run id so the caller can mark it stuck."""
        now = self._clock()
        db = self._session_factory()
        try:
            row = db.get(SyncLock, self.name)
            if row is None or row.holder_run_id is None:
                return None
            if not self._is_stale(row.heartbeat_at, now):
                return None
            observed = row.holder_run_id
            result = db.execute(
                update(SyncLock)
                .where(
                    SyncLock.name == self.name,
                    SyncLock.holder_run_id == observed,
                    or_(
                        SyncLock.heartbeat_at.is_(None),
                        SyncLock.heartbeat_at < now - self.stale_after,
                    ),
                )
                .values(holder_run_id=None, acquired_at=None, heartbeat_at=None)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            if result.rowcount != 1:
                return None
            log.warning("Reaped stale sync lock held by run %s", observed)
            return observed
        finally:
            db.close()
