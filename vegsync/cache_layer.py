import threading
import sqlite3
import structlog

log = structlog.get_logger()

class CacheLayer:
    """
    Process-local key/value cache for lookup tables.
    - No time-based expiry; entries live until invalidated
    - Safe for concurrent readers and writers (single lock)
    """
    def __init__(self):
        self._data = {}
        self._lock = threading.Lock()

    def get(self, cache_key: str, default=None):
        with self._lock:
            return self._data.get(cache_key, default)

    def set(self, cache_key: str, value):
        with self._lock:
            self._data[cache_key] = value

    def fetch(self, cache_key: str, fetch_fn):
        with self._lock:
            if cache_key in self._data:
                return self._data[cache_key], True
        fresh = fetch_fn()
        self.set(cache_key, fresh)
        return fresh, False

    def invalidate(self, cache_key: str) -> bool:
        with self._lock:
            return self._data.pop(cache_key, None) is not None

    def invalidate_all(self) -> int:
        with self._lock:
            cleared = len(self._data)
            self._data.clear()
        log.info("cache_invalidated", entries=cleared)
        return cleared


REGION_CACHE_KEY = "regions:name_to_id"

def _normalize_region_name(name) -> str:
    return str(name or "").strip().lower()

class RegionLookup:
    """Resolves remote region names to region ids through a CacheLayer."""

    def __init__(self, conn: sqlite3.Connection, cache: CacheLayer):
        self.conn = conn
        self.cache = cache

    def _load(self) -> dict:
        rows = self.conn.execute("SELECT id, name, code FROM regions").fetchall()
        mapping = {}
        for region_id, name, code in rows:
            mapping[_normalize_region_name(name)] = region_id
            mapping[_normalize_region_name(code)] = region_id
        return mapping

    def region_id(self, name) -> int | None:
        key = _normalize_region_name(name)
        if not key:
            return None
        mapping, _ = self.cache.fetch(REGION_CACHE_KEY, self._load)
        return mapping.get(key)

    def refresh(self):
        self.cache.invalidate(REGION_CACHE_KEY)
