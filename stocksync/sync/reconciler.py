"""Reconciler — the only writer of the reconciled store.

Writes are native upserts keyed by natural key (SKU for items, vendor id for
vendors). The fingerprint is a column of the same row, so an entity and its
fingerprint always commit together; there is no window where one is updated
without the other.

Applying the same write twice leaves the store unchanged: the sync timestamp
and run id come from the write itself and nothing is incremented.

Called by: sync/orchestrator.py
Depends on: models.InventoryItem, models.Vendor, cache.inventory_cache (optional)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError

from ..database import dialect_insert
from ..models import InventoryItem, Vendor
from ..utils import chunked, safe_float
from .change_detector import Decision
from .errors import TransportError, WriteConflict
from .records import ITEM, VENDOR, RemoteRecord, canonical_fields
from .velocity import derive_stock_metrics

log = logging.getLogger("stocksync.reconciler")

DEACTIVATE_CHUNK = 500

_NUMERIC_FIELDS = {
    "stock", "cost", "reorder_point", "reorder_quantity", "on_order",
    "sales_30_days", "sales_90_days", "consumption_14_days", "consumption_30_days",
}


@dataclass(frozen=True)
class _Table:
    model: type
    key_column: str
    columns: dict  # canonical field -> column name


_TABLES = {
    ITEM: _Table(
        InventoryItem,
        "sku",
        {
            "name": "product_name",
            "stock": "stock",
            "cost": "cost",
            "reorder_point": "reorder_point",
            "reorder_quantity": "reorder_quantity",
            "on_order": "on_order",
            "vendor": "vendor",
            "location": "location",
            "status": "status",
            "sales_30_days": "sales_30_days",
            "sales_90_days": "sales_90_days",
            "consumption_14_days": "consumption_14_days",
            "consumption_30_days": "consumption_30_days",
        },
    ),
    VENDOR: _Table(
        Vendor,
        "vendor_id",
        {"name": "name", "email": "email", "payment_terms": "payment_terms", "status": "status"},
    ),
}


@dataclass
class KnownState:
    fingerprint: str | None
    baseline: dict
    active: bool


@dataclass
class PendingWrite:
    record: RemoteRecord
    decision: Decision
    run_id: str
    synced_at: datetime
    baseline: dict | None = None  # stored values, for fields this write leaves alone


@dataclass
class ApplyResult:
    inserted: int = 0
    updated: int = 0
    skipped: list[str] = field(default_factory=list)

    @property
    def written(self) -> int:
        return self.inserted + self.updated


def _column_value(name: str, value):
    if name in _NUMERIC_FIELDS:
        return safe_float(value)
    if value is None:
        return None
    return str(value).strip() or None


class Reconciler:
    def __init__(self, session_factory, cache=None):
        self._session_factory = session_factory
        self._cache = cache

    # ── Reads ────────────────────────────────────────────────────────

    def known_state(self, kind: str, keys) -> dict[str, KnownState]:
        """Fingerprint + stored field values for each key we already store.

        Inactive rows report no fingerprint, so a record that reappears on the
        remote is treated as new and reactivated.
        """
        table = _TABLES[kind]
        key_col = getattr(table.model, table.key_column)
        keys = list(keys)
        out: dict[str, KnownState] = {}
        db = self._session_factory()
        try:
            for chunk in chunked(keys, DEACTIVATE_CHUNK):
                rows = db.execute(select(table.model).where(key_col.in_(chunk))).scalars()
                for row in rows:
                    baseline = {
                        name: getattr(row, column) for name, column in table.columns.items()
                    }
                    out[getattr(row, table.key_column)] = KnownState(
                        fingerprint=row.fingerprint if row.is_active else None,
                        baseline=baseline,
                        active=bool(row.is_active),
                    )
            return out
        except OperationalError as e:
            raise TransportError(f"Store unavailable: {e.orig}") from e
        finally:
            db.close()

    def active_keys(self, kind: str) -> set[str]:
        table = _TABLES[kind]
        key_col = getattr(table.model, table.key_column)
        db = self._session_factory()
        try:
            return set(db.execute(
                select(key_col).where(table.model.is_active.is_(True))
            ).scalars())
        finally:
            db.close()

    def critical_keys(self, limit: int = 1000) -> list[str]:
        """Active SKUs at or below their reorder point, lowest stock first."""
        db = self._session_factory()
        try:
            return list(db.execute(
                select(InventoryItem.sku)
                .where(
                    InventoryItem.is_active.is_(True),
                    InventoryItem.reorder_point.is_not(None),
                    InventoryItem.stock.is_not(None),
                    InventoryItem.stock <= InventoryItem.reorder_point,
                )
                .order_by(InventoryItem.stock.asc(), InventoryItem.sku.asc())
                .limit(limit)
            ).scalars())
        finally:
            db.close()

    # ── Writes ───────────────────────────────────────────────────────

    def _row_values(self, kind: str, write: PendingWrite, fields: tuple[str, ...] | None) -> dict:
        table = _TABLES[kind]
        record = write.record
        scope = fields or canonical_fields(kind)
        values = {table.key_column: record.key}
        for name in scope:
            values[table.columns[name]] = _column_value(name, record.fields.get(name))
        if fields is None:
            values["extra"] = record.extra or None
            values["remote_modified_at"] = record.modified_at
        if kind == ITEM:
            current = {**(write.baseline or {}), **{n: record.fields.get(n) for n in scope}}
            values.update(derive_stock_metrics(current))
        values.update(
            fingerprint=write.decision.fingerprint,
            is_active=True,
            last_synced_at=write.synced_at,
            last_sync_run_id=write.run_id,
            deactivated_at=None,
        )
        return values

    def apply(self, write: PendingWrite, *, fields=None, allow_insert: bool = True) -> ApplyResult:
        return self.apply_batch([write], fields=fields, allow_insert=allow_insert)

    def apply_batch(self, writes: list[PendingWrite], *, fields: tuple[str, ...] | None = None,
                    allow_insert: bool = True) -> ApplyResult:
        """Upsert one batch in a single transaction.

        `fields` limits which columns are touched (None = all). With
        allow_insert=False only existing active rows are updated and unknown
        keys are reported back as skipped.
        """
        if not writes:
            return ApplyResult()
        kind = writes[0].record.kind
        table = _TABLES[kind]
        key_col = getattr(table.model, table.key_column)
        rows = [self._row_values(kind, w, fields) for w in writes]
        keys = [w.record.key for w in writes]
        result = ApplyResult()

        db = self._session_factory()
        try:
            existing = set(db.execute(select(key_col).where(key_col.in_(keys))).scalars())
            if allow_insert:
                insert = dialect_insert(db)
                stmt = insert(table.model.__table__).values(rows)
                stmt = stmt.on_conflict_do_update(
                    index_elements=[table.key_column],
                    set_={c: stmt.excluded[c] for c in rows[0] if c != table.key_column},
                )
                db.execute(stmt)
                result.updated = len(existing)
                result.inserted = len(rows) - len(existing)
            else:
                for values in rows:
                    key = values.pop(table.key_column)
                    res = db.execute(
                        update(table.model)
                        .where(key_col == key, table.model.is_active.is_(True))
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                    values[table.key_column] = key
                    if res.rowcount == 1:
                        result.updated += 1
                    else:
                        result.skipped.append(key)
            db.commit()
        except IntegrityError as e:
            db.rollback()
            raise WriteConflict(f"{kind} upsert conflict: {e.orig}") from e
        except OperationalError as e:
            db.rollback()
            raise TransportError(f"Store unavailable: {e.orig}") from e
        finally:
            db.close()

        if self._cache is not None:
            skipped = set(result.skipped)
            self._cache.write_through(
                kind, [r for r in rows if r[table.key_column] not in skipped]
            )
        return result

    def deactivate_missing(self, kind: str, seen_keys, run_id: str, at: datetime) -> int:
        """Soft-delete active rows the remote no longer returns. Full runs only."""
        table = _TABLES[kind]
        key_col = getattr(table.model, table.key_column)
        seen = set(seen_keys)
        db = self._session_factory()
        try:
            active = set(db.execute(
                select(key_col).where(table.model.is_active.is_(True))
            ).scalars())
            missing = sorted(active - seen)
            for chunk in chunked(missing, DEACTIVATE_CHUNK):
                db.execute(
                    update(table.model)
                    .where(key_col.in_(chunk), table.model.is_active.is_(True))
                    .values(is_active=False, deactivated_at=at, last_sync_run_id=run_id)
                    .execution_options(synchronize_session=False)
                )
            db.commit()
        except OperationalError as e:
            db.rollback()
            raise TransportError(f"Store unavailable: {e.orig}") from e
        finally:
            db.close()

        if missing:
            log.info("Deactivated %d %s record(s) missing from the remote", len(missing), kind)
            if self._cache is not None:
                self._cache.evict(kind, missing)
        return len(missing)
