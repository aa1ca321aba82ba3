"""Reconciled store — inventory items and vendors mirrored from the remote source.

Rows are written only by the sync engine's Reconciler. Everything else
(pages, reports, dashboards) reads them.
"""

from sqlalchemy import JSON, Boolean, Column, Float, Index, Integer, String, Text

from ..database import UTCDateTime, utcnow
from .base import Base


class InventoryItem(Base):
    """One product/SKU as last reconciled from the remote catalog."""

    __tablename__ = "inventory_items"
    id = Column(Integer, primary_key=True)
    sku = Column(String(255), nullable=False, unique=True)
    product_name = Column(Text)
    stock = Column(Float, default=0)
    cost = Column(Float)
    reorder_point = Column(Float, default=0)
    reorder_quantity = Column(Float, default=0)
    on_order = Column(Float, default=0)
    vendor = Column(String(255))
    location = Column(String(255))
    status = Column(String(50))
    sales_30_days = Column(Float)
    sales_90_days = Column(Float)
    consumption_14_days = Column(Float)
    consumption_30_days = Column(Float)
    # Stock outlook, derived at write time from the columns above
    sales_velocity = Column(Float)
    consumption_velocity = Column(Float)
    days_until_stockout = Column(Integer)
    stock_status = Column(String(20))
    extra = Column(JSON)
    remote_modified_at = Column(UTCDateTime)

    # Sync bookkeeping: fingerprint lives on the row so both commit together
    fingerprint = Column(String(80))
    is_active = Column(Boolean, nullable=False, default=True)
    last_synced_at = Column(UTCDateTime)
    last_sync_run_id = Column(String(36))
    deactivated_at = Column(UTCDateTime)
    created_at = Column(UTCDateTime, default=utcnow)

    __table_args__ = (
        Index("ix_inventory_items_active_stock", "is_active", "stock"),
    )


class Vendor(Base):
    """Supplier/party record from the remote source."""

    __tablename__ = "vendors"
    id = Column(Integer, primary_key=True)
    vendor_id = Column(String(255), nullable=False, unique=True)
    name = Column(String(255))
    email = Column(String(255))
    payment_terms = Column(String(100))
    status = Column(String(50))
    extra = Column(JSON)
    remote_modified_at = Column(UTCDateTime)

    fingerprint = Column(String(80))
    is_active = Column(Boolean, nullable=False, default=True)
    last_synced_at = Column(UTCDateTime)
    last_sync_run_id = Column(String(36))
    deactivated_at = Column(UTCDateTime)
    created_at = Column(UTCDateTime, default=utcnow)
