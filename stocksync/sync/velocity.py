"""Stock outlook — velocities, days of cover and a coarse stock status per item.

Derived from the reconciled values at write time so the stored outlook always
matches the stock and usage it was computed from:

    sales_velocity        sales_30_days / 30
    consumption_velocity  max(consumption_14_days / 14, consumption_30_days / 30)
    days_until_stockout   stock / (sales + consumption velocity), 999 when nothing moves

Status, first match wins:
    critical     stock <= 0 or at most 7 days of cover
    low          at most 30 days of cover, or less than 30 days of total usage on hand
    overstocked  more than 180 days of cover
    adequate     everything else

Pure functions, no I/O.
"""

from ..utils import safe_float

NO_MOVEMENT_DAYS = 999
CRITICAL_DAYS = 7
LOW_DAYS = 30
OVERSTOCK_DAYS = 180

CRITICAL = "critical"
LOW = "low"
ADEQUATE = "adequate"
OVERSTOCKED = "overstocked"


def _number(value) -> float:
    n = safe_float(value)
    return n if n is not None else 0.0


def derive_stock_metrics(values: dict) -> dict:
    """Outlook columns for one item from its canonical field values."""
    stock = _number(values.get("stock"))
    sales_velocity = _number(values.get("sales_30_days")) / 30
    consumption_velocity = max(
        _number(values.get("consumption_14_days")) / 14,
        _number(values.get("consumption_30_days")) / 30,
    )
    daily_usage = sales_velocity + consumption_velocity
    days = stock / daily_usage if daily_usage > 0 else NO_MOVEMENT_DAYS

    if stock <= 0 or days <= CRITICAL_DAYS:
        status = CRITICAL
    elif days <= LOW_DAYS or stock <= daily_usage * LOW_DAYS:
        status = LOW
    elif days > OVERSTOCK_DAYS:
        status = OVERSTOCKED
    else:
        status = ADEQUATE

    return {
        "sales_velocity": round(sales_velocity, 4),
        "consumption_velocity": round(consumption_velocity, 4),
        "days_until_stockout": min(round(max(days, 0)), NO_MOVEMENT_DAYS),
        "stock_status": status,
    }
