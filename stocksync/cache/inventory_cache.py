"""Inventory cache — Redis snapshot of the reconciled store.

Used for: per-SKU item lookups (`inventory:item:{sku}`), vendor lookups
(`vendors:item:{id}`) and the last-sync summary (`inventory:metadata`).

The store is the source of truth. The Reconciler writes through here after
each committed batch; rebuild() regenerates everything from the store. When
Redis is unavailable (or TESTING is set) every call is a no-op, and a cache
error never fails a sync write.
"""

import json
import logging
import os

from sqlalchemy import select

log = logging.getLogger("stocksync.cache")

# Lazy-initialized Redis client
_redis_client = None
_redis_init_attempted = False

_PREFIXES = {"item": "inventory:item:", "vendor": "vendors:item:"}
_KEY_COLUMNS = {"item": "sku", "vendor": "vendor_id"}
METADATA_KEY = "inventory:metadata"


def _get_redis():
    """Lazy-init Redis connection. Returns client or None if unavailable."""
    global _redis_client, _redis_init_attempted

    if _redis_init_attempted:
        return _redis_client

    _redis_init_attempted = True

    if os.environ.get("TESTING"):
        return None

    try:
        from stocksync.config import settings
        if settings.cache_backend != "redis":
            log.info("Cache backend set to %s — skipping Redis", settings.cache_backend)
            return None

        import redis
        _redis_client = redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_connect_timeout=3,
            socket_timeout=2,
            retry_on_timeout=True,
        )
        _redis_client.ping()
        log.info("Redis cache connected: %s", settings.redis_url)
    except Exception as e:
        log.warning("Redis unavailable, inventory cache disabled: %s", e)
        _redis_client = None

    return _redis_client


class InventoryCache:
    def __init__(self, client=None, ttl_seconds: int = 3600):
        self._client = client
        self.ttl_seconds = ttl_seconds

    @property
    def client(self):
        return self._client if self._client is not None else _get_redis()

    def _key(self, kind: str, natural_key: str) -> str:
        return f"{_PREFIXES[kind]}{natural_key}"

    def write_through(self, kind: str, rows: list[dict]) -> int:
        """Cache freshly written rows. Returns how many were cached."""
        r = self.client
        if not r or not rows:
            return 0
        key_col = _KEY_COLUMNS[kind]
        try:
            pipe = r.pipeline()
            for row in rows:
                pipe.setex(self._key(kind, row[key_col]), self.ttl_seconds,
                           json.dumps(row, default=str))
            pipe.execute()
            return len(rows)
        except Exception as e:
            log.warning("Cache write-through failed for %d %s row(s): %s", len(rows), kind, e)
            return 0

    def evict(self, kind: str, keys) -> None:
        r = self.client
        keys = [self._key(kind, k) for k in keys]
        if not r or not keys:
            return
        try:
            r.delete(*keys)
        except Exception as e:
            log.warning("Cache evict failed for %d %s key(s): %s", len(keys), kind, e)

    def get(self, kind: str, natural_key: str) -> dict | None:
        r = self.client
        if not r:
            return None
        try:
            data = r.get(self._key(kind, natural_key))
            return json.loads(data) if data else None
        except Exception as e:
            log.debug("Cache read error for %s %s: %s", kind, natural_key, e)
            return None

    def set_metadata(self, meta: dict) -> None:
        r = self.client
        if not r:
            return
        try:
            r.set(METADATA_KEY, json.dumps(meta, default=str))
        except Exception as e:
            log.warning("Cache metadata write failed: %s", e)

    def get_metadata(self) -> dict | None:
        r = self.client
        if not r:
            return None
        try:
            data = r.get(METADATA_KEY)
            return json.loads(data) if data else None
        except Exception as e:
            log.debug("Cache metadata read error: %s", e)
            return None

    def rebuild(self, session_factory, chunk_size: int = 500) -> dict:
        """Regenerate the cache from the store. Inactive rows are evicted."""
        from stocksync.models import InventoryItem, Vendor

        if not self.client:
            return {"available": False, "cached": 0, "evicted": 0}

        cached = evicted = 0
        for kind, model in (("item", InventoryItem), ("vendor", Vendor)):
            key_col = _KEY_COLUMNS[kind]
            with session_factory() as db:
                rows = db.execute(select(model)).scalars().all()
                active, inactive = [], []
                for row in rows:
                    if row.is_active:
                        active.append({c.name: getattr(row, c.name) for c in model.__table__.columns})
                    else:
                        inactive.append(getattr(row, key_col))
            for i in range(0, len(active), chunk_size):
                cached += self.write_through(kind, active[i:i + chunk_size])
            self.evict(kind, inactive)
            evicted += len(inactive)
        log.info("Cache rebuilt: %d cached, %d evicted", cached, evicted)
        return {"available": True, "cached": cached, "evicted": evicted}


def cache_from_settings(settings) -> InventoryCache:
    return InventoryCache(ttl_seconds=settings.cache_item_ttl_seconds)
