"""Shared utility helpers used across the remote client and sync engine."""

from datetime import datetime, timezone


def safe_int(v):
    """Safely convert a value to int, returning None on failure."""
    if v is None:
        return None
    try:
        return int(float(v))
    except (ValueError, TypeError):
        return None


def safe_float(v):
    """Safely convert a value to float, returning None on failure."""
    if v is None or v == "":
        return None
    if isinstance(v, str):
        v = v.replace("$", "").replace(",", "").strip()
    try:
        return float(v)
    except (ValueError, TypeError):
        return None


def utc(dt):
    """Make a naive datetime UTC-aware (no-op if already aware)."""
    if dt is None:
        return None
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


def parse_datetime(value) -> datetime | None:
    """Parse an ISO-8601 timestamp from the remote source. None if unusable."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return utc(value)
    try:
        return utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        return None


def chunked(items, size: int):
    """Yield consecutive slices of at most `size` items."""
    if size < 1:
        raise ValueError("chunk size must be >= 1")
    for i in range(0, len(items), size):
        yield items[i:i + size]
