"""
dependencies.py — Shared FastAPI Dependencies

Business Rules:
- get_orchestrator returns the process-wide SyncOrchestrator (one rate
  limiter and one cache client per process)
- require_sync_key raises 401 when SYNC_API_KEY is set and the x-sync-key
  header does not match; with no key configured the sync API is open

Called by: routers/sync.py, scheduler.py, main.py
Depends on: config, sync.orchestrator
"""

import hmac
import logging
from functools import lru_cache

from fastapi import HTTPException, Request

log = logging.getLogger("stocksync.dependencies")


@lru_cache
def get_orchestrator():
    from .sync import build_orchestrator

    return build_orchestrator()


def require_sync_key(request: Request) -> None:
    """Dependency: shared-key check for sync trigger/observability endpoints."""
    from .config import settings

    if not settings.sync_api_key:
        return
    supplied = request.headers.get("x-sync-key", "")
    if not hmac.compare_digest(supplied, settings.sync_api_key):
        log.warning("Rejected sync API call from %s", request.client.host if request.client else "?")
        raise HTTPException(401, "Invalid or missing x-sync-key")
