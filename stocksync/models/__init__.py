"""Database models — re-exports all models.

Import from here:  from stocksync.models import InventoryItem, SyncRun, ...
Or from submodules: from stocksync.models.sync import SyncLock
"""

from .base import Base  # noqa: F401

# Reconciled store
from .inventory import InventoryItem, Vendor  # noqa: F401

# Sync engine state
from .sync import BatchFailure, SyncLock, SyncRun  # noqa: F401
