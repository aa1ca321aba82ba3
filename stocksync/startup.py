"""
startup.py — Database Startup Migrations (Idempotent)

Tables and indexes are defined in the ORM models and created via
Base.metadata.create_all(checkfirst=True). This file also seeds the
singleton sync lock row so the first run never races on its creation.

Called by: main.py lifespan
Depends on: database.py (engine), models (Base, SyncLock)
"""

import logging
import os

from sqlalchemy.orm import Session

from .database import dialect_insert, engine

log = logging.getLogger("stocksync.startup")


def run_startup_migrations() -> None:
    """Execute all idempotent startup operations. Safe to call on every app boot."""
    if os.environ.get("TESTING"):
        log.info("TESTING mode — skipping startup migrations")
        return

    from .models import Base
    Base.metadata.create_all(bind=engine, checkfirst=True)
    log.info("ORM schema sync complete (create_all checkfirst=True)")

    _seed_sync_lock()


def _seed_sync_lock() -> None:
    from .config import settings
    from .models import SyncLock

    with Session(engine) as db:
        insert = dialect_insert(db)
        db.execute(
            insert(SyncLock.__table__)
            .values(name=settings.sync_lock_name)
            .on_conflict_do_nothing(index_elements=["name"])
        )
        db.commit()
