"""Sync models — run log, the singleton concurrency lock, per-key batch failures."""

from sqlalchemy import JSON, Boolean, Column, Float, ForeignKey, Index, Integer, String, Text

from ..database import UTCDateTime, utcnow
from .base import Base


class SyncRun(Base):
    """One execution of the orchestrator. Immutable once terminal."""

    __tablename__ = "sync_runs"
    id = Column(String(36), primary_key=True)
    requested_strategy = Column(String(30), nullable=False)
    strategy = Column(String(30))
    trigger = Column(String(30), default="manual")
    status = Column(String(20), nullable=False, default="pending")
    dry_run = Column(Boolean, nullable=False, default=False)
    # True when the run covered its whole scope; only these move tier watermarks
    refreshed = Column(Boolean, nullable=False, default=False)
    started_at = Column(UTCDateTime, nullable=False, default=utcnow)
    finished_at = Column(UTCDateTime)
    duration_seconds = Column(Float)

    fetched = Column(Integer, default=0)
    changed = Column(Integer, default=0)
    written = Column(Integer, default=0)
    failed = Column(Integer, default=0)
    unchanged = Column(Integer, default=0)
    deactivated = Column(Integer, default=0)
    pages = Column(Integer, default=0)

    error = Column(Text)
    error_kind = Column(String(30))
    details = Column(JSON)
    created_at = Column(UTCDateTime, default=utcnow)

    __table_args__ = (
        Index("ix_sync_runs_status_started", "status", "started_at"),
        Index("ix_sync_runs_strategy_started", "strategy", "started_at"),
    )


class SyncLock(Base):
    """Persisted singleton lock — at most one live holder system-wide."""

    __tablename__ = "sync_locks"
    name = Column(String(50), primary_key=True)
    holder_run_id = Column(String(36))
    acquired_at = Column(UTCDateTime)
    heartbeat_at = Column(UTCDateTime)


class BatchFailure(Base):
    """A natural key whose batch exhausted its retries. Kept for re-drive."""

    __tablename__ = "sync_batch_failures"
    id = Column(Integer, primary_key=True)
    run_id = Column(
        String(36), ForeignKey("sync_runs.id", ondelete="CASCADE"), nullable=False
    )
    natural_key = Column(String(255), nullable=False)
    entity_kind = Column(String(20), nullable=False, default="item")
    error_kind = Column(String(30), nullable=False)
    attempts = Column(Integer, nullable=False, default=1)
    last_error = Column(Text)
    batch_index = Column(Integer)
    resolved_at = Column(UTCDateTime)
    resolved_by_run_id = Column(String(36))
    created_at = Column(UTCDateTime, default=utcnow)

    __table_args__ = (
        Index("ix_batch_failures_run", "run_id"),
        Index("ix_batch_failures_key_unresolved", "natural_key", "resolved_at"),
    )
