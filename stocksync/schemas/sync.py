"""
schemas/sync.py — Pydantic models for the sync trigger & observability endpoints

Business Rules:
- strategy defaults to "smart"; must be one of the known strategies
- targeted runs need at least one key; keys are stripped and de-duplicated
- lock_mode "skip" returns immediately when a run is live, "wait" queues
- batch_size and max_concurrency are bounded by the engine's hard caps

Called by: routers/sync.py
Depends on: pydantic, sync.strategy
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..sync.batch_processor import MAX_BATCH_SIZE
from ..sync.strategy import STRATEGIES, TARGETED


# ── Requests ─────────────────────────────────────────────────────────


class SyncTriggerRequest(BaseModel):
    strategy: str = "smart"
    dry_run: bool = False
    lock_mode: str = "skip"
    deadline_seconds: float | None = Field(default=None, gt=0)
    keys: list[str] | None = None
    entity_kind: str = "item"
    batch_size: int | None = Field(default=None, ge=1, le=MAX_BATCH_SIZE)
    max_concurrency: int | None = Field(default=None, ge=1, le=32)

    @field_validator("strategy")
    @classmethod
    def known_strategy(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in STRATEGIES:
            raise ValueError(f"strategy must be one of {', '.join(STRATEGIES)}")
        return v

    @field_validator("lock_mode")
    @classmethod
    def known_lock_mode(cls, v: str) -> str:
        if v not in ("skip", "wait"):
            raise ValueError("lock_mode must be 'skip' or 'wait'")
        return v

    @field_validator("entity_kind")
    @classmethod
    def known_kind(cls, v: str) -> str:
        if v not in ("item", "vendor"):
            raise ValueError("entity_kind must be 'item' or 'vendor'")
        return v

    @field_validator("keys")
    @classmethod
    def clean_keys(cls, v: list[str] | None) -> list[str] | None:
        if v is None:
            return None
        return list(dict.fromkeys(k.strip() for k in v if k and k.strip()))

    @model_validator(mode="after")
    def targeted_needs_keys(self) -> SyncTriggerRequest:
        if self.strategy == TARGETED and not self.keys:
            raise ValueError("targeted strategy requires keys")
        return self


class RetryFailedRequest(BaseModel):
    run_id: str | None = None
    keys: list[str] | None = None
    entity_kind: str = "item"
    dry_run: bool = False


# ── Responses ────────────────────────────────────────────────────────


class SyncRunOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    requested_strategy: str
    strategy: str | None = None
    trigger: str | None = None
    status: str
    dry_run: bool = False
    refreshed: bool | None = False
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_seconds: float | None = None
    fetched: int | None = 0
    changed: int | None = 0
    written: int | None = 0
    failed: int | None = 0
    unchanged: int | None = 0
    deactivated: int | None = 0
    pages: int | None = 0
    error: str | None = None
    error_kind: str | None = None
    details: dict | None = None


class BatchFailureOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    run_id: str
    natural_key: str
    entity_kind: str
    error_kind: str
    attempts: int
    last_error: str | None = None
    batch_index: int | None = None
    resolved_at: datetime | None = None
    resolved_by_run_id: str | None = None
    created_at: datetime | None = None


class LockOut(BaseModel):
    run_id: str
    acquired_at: datetime | None = None
    heartbeat_at: datetime | None = None
    stale: bool = False


class SyncStatusOut(BaseModel):
    running: SyncRunOut | None = None
    lock: LockOut | None = None
    last_run: SyncRunOut | None = None
    rate_limiter: dict | None = None
    cache: dict | None = None


class SyncHealthOut(BaseModel):
    status: str
    last_success: datetime | None = None
    last_success_run_id: str | None = None
    last_run_status: str | None = None
    last_error: str | None = None
    consecutive_failures: int = 0
    auth_blocked: bool = False
    unresolved_failures: int = 0
    lock: LockOut | None = None


class RetryFailedOut(BaseModel):
    runs: list[SyncRunOut] = Field(default_factory=list)
    message: str = ""


class CheckStuckOut(BaseModel):
    reaped_lock_from: str | None = None
    stuck_runs: list[str] = Field(default_factory=list)
