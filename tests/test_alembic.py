"""
test_alembic.py — Verify Alembic migration setup and structure.

Checks the baseline migration, that env.py sees every StockSync model,
and that the sync tables are all registered on the shared metadata.

Called by: pytest
Depends on: alembic/, stocksync.models
"""

import importlib.util
import inspect
from pathlib import Path

ROOT = Path(__file__).parent.parent
MIGRATION_DIR = ROOT / "alembic" / "versions"


def _load_migration():
    """Load the baseline migration module straight from its file."""
    files = sorted(MIGRATION_DIR.glob("*.py"))
    assert len(files) >= 1, "No migration files found"
    spec = importlib.util.spec_from_file_location("baseline_migration", files[0])
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)
    return mod


def test_baseline_migration_has_required_attributes():
    mod = _load_migration()
    assert mod.revision == "001_initial"
    assert mod.down_revision is None, "Baseline migration should have no parent"
    assert callable(mod.upgrade)
    assert callable(mod.downgrade)


def test_baseline_uses_metadata_create_all():
    mod = _load_migration()
    up_src = inspect.getsource(mod.upgrade)
    assert "create_all" in up_src
    assert "Base" in up_src


def test_downgrade_uses_metadata_drop_all():
    mod = _load_migration()
    assert "drop_all" in inspect.getsource(mod.downgrade)


def test_migrations_form_a_single_chain():
    mods = []
    for path in sorted(MIGRATION_DIR.glob("*.py")):
        spec = importlib.util.spec_from_file_location(path.stem, path)
        mod = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(mod)
        mods.append(mod)
    assert [m.down_revision for m in mods[1:]] == [m.revision for m in mods[:-1]]


def test_second_migration_adds_refresh_flag_and_outlook_columns():
    path = MIGRATION_DIR / "002_refresh_flag_and_consumption.py"
    spec = importlib.util.spec_from_file_location("refresh_migration", path)
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)
    names = {c.name for cols in mod.NEW_COLUMNS.values() for c in cols}
    assert {"refreshed", "consumption_30_days", "stock_status"} <= names


def test_env_py_imports_all_models():
    """env.py must import Base from stocksync.models so autogenerate sees every table."""
    content = (ROOT / "alembic" / "env.py").read_text()
    assert "from stocksync.models import Base" in content


def test_metadata_has_sync_tables():
    from stocksync.models import Base

    assert {"inventory_items", "vendors", "sync_runs", "sync_locks", "sync_batch_failures"} <= set(
        Base.metadata.tables
    )


def test_no_create_all_in_main():
    """main.py must NOT call create_all directly; startup/Alembic manage the schema."""
    content = (ROOT / "stocksync" / "main.py").read_text()
    assert "create_all" not in content
