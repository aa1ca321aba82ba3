"""Change detection — decide whether a remote record needs a write.

A fingerprint is a sha256 over the *material* fields of a record only (the
versioned projection below). Values are normalised before hashing so the
same data always hashes the same no matter how the remote serialised it:

    {"stock": "5", "cost": "1.50"}  ==  {"cost": 1.5, "stock": 5.0}

Bumping FINGERPRINT_VERSION changes every fingerprint, which forces one full
rewrite pass on the next run.

Everything in this module is pure: no I/O, no clock.
"""

import hashlib
import json
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from .records import ITEM, RemoteRecord

FINGERPRINT_VERSION = 2

# v2: sales and consumption drive the stored stock outlook, so they are material
MATERIAL_FIELDS = {
    ITEM: (
        "name", "stock", "cost", "reorder_point", "vendor", "status",
        "sales_30_days", "consumption_14_days", "consumption_30_days",
    ),
    "vendor": ("name", "email", "payment_terms", "status"),
}

# Case-insensitive fields (identifiers the remote capitalises inconsistently)
_FOLD_CASE = {"status", "email"}

_NUMERIC = re.compile(r"^[+-]?(\d{1,3}(,\d{3})+|\d+)?(\.\d+)?([eE][+-]?\d+)?$")

PRIORITY_OUT_OF_STOCK = 10
PRIORITY_BELOW_REORDER = 9
PRIORITY_NEW = 8
PRIORITY_CHANGED = 5


@dataclass(frozen=True)
class Decision:
    key: str
    write: bool
    fingerprint: str
    reason: str  # "new" | "changed" | "unchanged"
    priority: int = 0


def _canonical_decimal(d: Decimal) -> str:
    if not d.is_finite():
        return str(d)
    if d == 0:
        return "0"
    return format(d.normalize(), "f")


def normalize_value(value, field_name: str = ""):
    """Collapse equivalent representations onto one canonical form."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float, Decimal)):
        try:
            return _canonical_decimal(Decimal(str(value)))
        except InvalidOperation:
            return str(value)
    text = " ".join(str(value).split())
    if not text:
        return None
    candidate = text.replace("$", "", 1) if text.startswith("$") else text
    if any(ch.isdigit() for ch in candidate) and _NUMERIC.match(candidate):
        try:
            return _canonical_decimal(Decimal(candidate.replace(",", "")))
        except InvalidOperation:
            pass
    if field_name in _FOLD_CASE:
        return text.lower()
    return text


def material_values(kind: str, fields: dict) -> dict:
    """Normalised material projection of a field dict (missing → None)."""
    return {
        name: normalize_value(fields.get(name), name)
        for name in MATERIAL_FIELDS[kind]
    }


def fingerprint(kind: str, material: dict) -> str:
    body = json.dumps(
        {"kind": kind, "fields": material, "version": FINGERPRINT_VERSION},
        sort_keys=True,
        separators=(",", ":"),
    )
    digest = hashlib.sha256(body.encode("utf-8")).hexdigest()
    return f"v{FINGERPRINT_VERSION}:{digest}"


def record_fingerprint(record: RemoteRecord, baseline: dict | None = None) -> str:
    """Fingerprint of a record, optionally overlaid on a local baseline.

    `baseline` is used when the run fetched only a subset of fields: fields
    the record carries win, everything else comes from the local values.
    """
    if baseline is None:
        merged = record.fields
    else:
        merged = {
            name: record.fields[name] if name in record.fields else baseline.get(name)
            for name in MATERIAL_FIELDS[record.kind]
        }
    return fingerprint(record.kind, material_values(record.kind, merged))


def _priority(record: RemoteRecord, is_new: bool, baseline: dict | None) -> int:
    if record.kind != ITEM:
        return PRIORITY_NEW if is_new else PRIORITY_CHANGED
    source = dict(baseline or {})
    source.update(record.fields)
    stock = _as_number(source.get("stock"))
    reorder = _as_number(source.get("reorder_point"))
    if stock is not None and stock <= 0:
        return PRIORITY_OUT_OF_STOCK
    if stock is not None and reorder and stock <= reorder:
        return PRIORITY_BELOW_REORDER
    return PRIORITY_NEW if is_new else PRIORITY_CHANGED


def _as_number(value):
    norm = normalize_value(value)
    if norm is None:
        return None
    try:
        return Decimal(norm)
    except InvalidOperation:
        return None


def should_write(
    record: RemoteRecord,
    known_fingerprint: str | None,
    baseline: dict | None = None,
) -> Decision:
    """Compare a remote record against the last stored fingerprint."""
    fp = record_fingerprint(record, baseline)
    if known_fingerprint is None:
        return Decision(record.key, True, fp, "new", _priority(record, True, baseline))
    if known_fingerprint != fp:
        return Decision(record.key, True, fp, "changed", _priority(record, False, baseline))
    return Decision(record.key, False, fp, "unchanged", 0)


def order_by_priority(pairs):
    """Sort (record, decision) pairs highest priority first, stable on input order."""
    return sorted(pairs, key=lambda p: -p[1].priority)


def summarize(total: int, changed: int, seconds: float) -> dict:
    """Change-rate statistics for one run."""
    if total <= 0:
        return {
            "change_rate": 0.0,
            "efficiency_gain": 0.0,
            "items_per_second": 0.0,
            "estimated_full_sync_seconds": None,
        }
    per_second = changed / seconds if seconds > 0 else 0.0
    return {
        "change_rate": round(changed / total * 100, 2),
        "efficiency_gain": round((total - changed) / total * 100, 2),
        "items_per_second": round(per_second, 2),
        "estimated_full_sync_seconds": round(total / per_second, 1) if per_second else None,
    }
