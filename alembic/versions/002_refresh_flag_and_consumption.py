"""Add sync_runs.refreshed and item consumption / stock-outlook columns

Revision ID: 002_refresh_consumption
Revises: 001_initial
Create Date: 2026-10-18

001 builds tables from the current models, so a fresh database already has
these columns; only add the ones that are missing.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "002_refresh_consumption"
down_revision: Union[str, None] = "001_initial"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

NEW_COLUMNS = {
    "sync_runs": [
        sa.Column("refreshed", sa.Boolean(), nullable=False, server_default=sa.false()),
    ],
    "inventory_items": [
        sa.Column("consumption_14_days", sa.Float(), nullable=True),
        sa.Column("consumption_30_days", sa.Float(), nullable=True),
        sa.Column("sales_velocity", sa.Float(), nullable=True),
        sa.Column("consumption_velocity", sa.Float(), nullable=True),
        sa.Column("days_until_stockout", sa.Integer(), nullable=True),
        sa.Column("stock_status", sa.String(20), nullable=True),
    ],
}


def upgrade() -> None:
    inspector = sa.inspect(op.get_bind())
    for table, columns in NEW_COLUMNS.items():
        existing = {c["name"] for c in inspector.get_columns(table)}
        for column in columns:
            if column.name not in existing:
                op.add_column(table, column)
    # Runs recorded before the flag existed: succeeded ones covered their scope
    op.execute(
        sa.text("UPDATE sync_runs SET refreshed = :yes WHERE status = 'succeeded' AND dry_run = :no")
        .bindparams(yes=True, no=False)
    )


def downgrade() -> None:
    for table, columns in NEW_COLUMNS.items():
        for column in reversed(columns):
            op.drop_column(table, column.name)
