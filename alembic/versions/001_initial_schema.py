"""initial schema - inventory store and sync bookkeeping

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-18

Creates inventory_items, vendors, sync_runs, sync_locks and
sync_batch_failures from the SQLAlchemy models.
"""
from typing import Sequence, Union

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all tables from SQLAlchemy models (checkfirst, so idempotent)."""
    from stocksync.database import engine
    from stocksync.models import Base

    Base.metadata.create_all(bind=engine, checkfirst=True)


def downgrade() -> None:
    """Drop all tables. DESTRUCTIVE — only for dev/test environments."""
    from stocksync.database import engine
    from stocksync.models import Base

    Base.metadata.drop_all(bind=engine)
