"""Inventory synchronization engine.

Import the entry point from here:
    from stocksync.sync import SyncOptions, build_orchestrator
"""

from .errors import (  # noqa: F401
    AuthError,
    LockContention,
    MalformedResponse,
    RateLimited,
    SyncCancelled,
    SyncError,
    TransportError,
    WriteConflict,
)
from .orchestrator import SyncOptions, SyncOrchestrator, build_orchestrator  # noqa: F401
from .strategy import STRATEGIES  # noqa: F401
