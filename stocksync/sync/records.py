"""Remote record shapes shared by the client, detector and reconciler.

The remote source names the same field a dozen ways depending on whether it
came from the REST product endpoint or a report export. Everything is mapped
onto one canonical field set here; anything unrecognised is kept opaquely in
`extra` and never participates in change detection.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime

from ..utils import parse_datetime

ITEM = "item"
VENDOR = "vendor"
KINDS = (ITEM, VENDOR)

ITEM_FIELDS = (
    "name",
    "stock",
    "cost",
    "reorder_point",
    "reorder_quantity",
    "on_order",
    "vendor",
    "location",
    "status",
    "sales_30_days",
    "sales_90_days",
    "consumption_14_days",
    "consumption_30_days",
)
VENDOR_FIELDS = ("name", "email", "payment_terms", "status")
STOCK_FIELDS = ("stock", "on_order")
# Only delivered by the consumption reports of a full run; other fetches leave them out
REPORT_FIELDS = ("consumption_14_days", "consumption_30_days")

_KEY_ALIASES = {
    ITEM: ("productId", "productSku", "sku", "itemSKU", "Product ID", "SKU", "Item ID"),
    VENDOR: ("partyId", "vendorId", "Vendor ID", "vendor_id", "ID", "id"),
}

_FIELD_ALIASES = {
    ITEM: {
        "name": ("productName", "internalName", "itemName", "description", "name",
                 "Product Name", "Description", "Name"),
        "stock": ("quantityOnHand", "totalStock", "stock", "quantity",
                  "Units in stock", "On hand", "Stock"),
        "cost": ("averageCost", "unitCost", "cost", "unitPrice", "Average cost", "Cost"),
        "reorder_point": ("reorderPoint", "reorderLevel", "reorder_point", "Reorder point"),
        "reorder_quantity": ("reorderQuantity", "reorder_quantity", "Reorder quantity"),
        "on_order": ("onOrder", "quantityOnOrder", "on_order", "On order"),
        "vendor": ("primarySupplierName", "supplierName", "supplier", "vendor",
                   "Supplier 1", "Supplier", "Vendor", "Primary Supplier"),
        "location": ("facilityName", "primaryLocation", "location", "Location"),
        "status": ("statusId", "status", "Status"),
        "sales_30_days": ("sales30Days", "Sales last 30 days"),
        "sales_90_days": ("sales90Days", "Sales last 90 days"),
        "consumption_14_days": ("consumption14Days", "Consumption last 14 days"),
        "consumption_30_days": ("consumption30Days", "Consumption last 30 days"),
    },
    VENDOR: {
        "name": ("groupName", "vendorName", "name", "Vendor Name", "Name"),
        "email": ("email", "contactEmail", "Email"),
        "payment_terms": ("paymentTerms", "payment_terms", "Payment Terms"),
        "status": ("statusId", "status", "Status"),
    },
}

_MODIFIED_ALIASES = ("lastUpdatedDate", "lastModifiedDate", "modified_at", "Last modified")


@dataclass(frozen=True)
class SyncFilter:
    """What a run asks the remote source for."""

    modified_since: datetime | None = None
    keys: frozenset[str] | None = None
    fields: tuple[str, ...] | None = None  # None = every canonical field

    def admits(self, record: "RemoteRecord") -> bool:
        if self.keys is not None and record.key not in self.keys:
            return False
        if (
            self.modified_since is not None
            and record.modified_at is not None
            and record.modified_at < self.modified_since
        ):
            return False
        return True


@dataclass
class RemoteRecord:
    kind: str
    key: str
    fields: dict
    extra: dict = field(default_factory=dict)
    modified_at: datetime | None = None


@dataclass
class Page:
    records: list[RemoteRecord]
    next_cursor: int | None
    malformed: int = 0

    @property
    def done(self) -> bool:
        return self.next_cursor is None


def canonical_fields(kind: str) -> tuple[str, ...]:
    return ITEM_FIELDS if kind == ITEM else VENDOR_FIELDS


def _first(payload: dict, names: tuple[str, ...]):
    for name in names:
        if name in payload and payload[name] not in (None, ""):
            return name, payload[name]
    return None, None


def natural_key(kind: str, payload) -> str | None:
    if not isinstance(payload, dict):
        return None
    _, key = _first(payload, _KEY_ALIASES[kind])
    if key is None or not str(key).strip():
        return None
    return str(key).strip()


def record_from_payload(kind: str, payload: dict, fields: tuple[str, ...] | None = None):
    """Map one raw row onto a RemoteRecord. Returns None if it has no natural key."""
    if kind not in KINDS:
        raise ValueError(f"Unknown record kind: {kind}")
    key = natural_key(kind, payload)
    if key is None:
        return None

    consumed = set(_KEY_ALIASES[kind]) | set(_MODIFIED_ALIASES)
    wanted = fields or canonical_fields(kind)
    out = {}
    for name, aliases in _FIELD_ALIASES[kind].items():
        consumed.update(aliases)
        if name not in wanted:
            continue
        alias, value = _first(payload, aliases)
        if alias is not None:
            out[name] = value

    _, modified = _first(payload, _MODIFIED_ALIASES)
    extra = {k: v for k, v in payload.items() if k not in consumed}
    return RemoteRecord(
        kind=kind,
        key=key,
        fields=out,
        extra=extra,
        modified_at=parse_datetime(modified),
    )


def carry_report_fields(record: RemoteRecord, stored: dict) -> RemoteRecord:
    """Fill report-only fields the record lacks from the stored values.

    A product-endpoint fetch never carries consumption, so without this a
    full write would blank the last values the reports delivered.
    """
    if record.kind != ITEM:
        return record
    carried = {
        name: stored[name]
        for name in REPORT_FIELDS
        if name not in record.fields and stored.get(name) is not None
    }
    if not carried:
        return record
    return replace(record, fields={**record.fields, **carried})
