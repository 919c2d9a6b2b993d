"""
Persistent metadata cache.

Two layers:

    RecordStore   — durable key → JSON record table in SQLite
    MetadataCache — LRU cache of MetadataMaps on top of a RecordStore

Persisted layout (one row each):

    meta_cache_url:<url> → the MetadataMap for that URL
    meta_cache_index     → [[url, last_access_ms], ...]

The in-memory recency index is rebuilt from the index record on start, so
membership checks and eviction decisions never touch storage.

An empty MetadataMap is a valid value: it records "checked, nothing found"
and prevents a refetch.
"""

import json
import logging
import math
import sqlite3
import time
from collections import OrderedDict
from pathlib import Path

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "meta_cache_url:"
INDEX_KEY        = "meta_cache_index"

DEFAULT_LIMIT  = 2000
EVICT_FRACTION = 0.1


def _now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Durable record store
# ---------------------------------------------------------------------------

class RecordStore:
    """
    Key → JSON value table in a single SQLite file.

    Args:
        path: database file, or ":memory:" for a throwaway store
    """

    def __init__(self, path: str | Path = ":memory:"):
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        # Only ever used from the event loop, but that loop may not run on
        # the thread that created the store
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        self._conn.execute(
            "CREATE TABLE IF NOT EXISTS records ("
            "  key   TEXT PRIMARY KEY,"
            "  value TEXT NOT NULL"
            ")"
        )
        self._conn.commit()

    def get(self, key: str):
        row = self._conn.execute(
            "SELECT value FROM records WHERE key = ?", (key,)
        ).fetchone()
        return None if row is None else json.loads(row[0])

    def set(self, key: str, value) -> None:
        self.set_many({key: value})

    def set_many(self, items: dict) -> None:
        with self._conn:
            self._conn.executemany(
                "INSERT OR REPLACE INTO records (key, value) VALUES (?, ?)",
                [(k, json.dumps(v, ensure_ascii=False)) for k, v in items.items()],
            )

    def remove(self, keys) -> None:
        with self._conn:
            self._conn.executemany(
                "DELETE FROM records WHERE key = ?", [(k,) for k in keys]
            )

    def clear(self, prefix: str = "") -> None:
        """Delete every record whose key starts with prefix (all if empty)."""
        with self._conn:
            if prefix:
                # substr avoids LIKE treating '_' and '%' in the prefix as wildcards
                self._conn.execute(
                    "DELETE FROM records WHERE substr(key, 1, ?) = ?",
                    (len(prefix), prefix),
                )
            else:
                self._conn.execute("DELETE FROM records")

    def size_bytes(self, prefix: str = "") -> int:
        """Approximate storage used by records under prefix."""
        row = self._conn.execute(
            "SELECT COALESCE(SUM(LENGTH(key) + LENGTH(value)), 0) FROM records "
            "WHERE substr(key, 1, ?) = ?",
            (len(prefix), prefix),
        ).fetchone()
        return int(row[0])

    def close(self) -> None:
        self._conn.close()


# ---------------------------------------------------------------------------
# LRU metadata cache
# ---------------------------------------------------------------------------

class MetadataCache:
    """
    Capacity-bounded, persistent URL → MetadataMap cache.

    When the item count exceeds limit, the least recently used
    ceil(limit * 0.1) entries are evicted in one batch.

    Storage failures are logged and swallowed: a cache that cannot write
    must not turn a successful metadata lookup into an error.

    Args:
        store : RecordStore (or anything with the same get/set_many/remove/
                clear/size_bytes interface)
        limit : maximum number of cached URLs
        clock : returns the current time in milliseconds
    """

    def __init__(self, store: RecordStore, limit: int = DEFAULT_LIMIT, clock=_now_ms):
        if limit < 1:
            raise ValueError(f"Cache limit must be at least 1, got {limit}.")
        self.store  = store
        self.limit  = limit
        self._clock = clock
        self._index: OrderedDict[str, int] = OrderedDict()
        self._index_dirty = False
        self._load_index()

    def __len__(self) -> int:
        return len(self._index)

    def _load_index(self) -> None:
        try:
            saved = self.store.get(INDEX_KEY) or []
        except (sqlite3.Error, ValueError) as e:
            logger.warning("[CACHE] Could not load cache index: %s", e)
            return
        # Oldest first, so the front of the OrderedDict is the LRU end
        for url, ts in sorted(saved, key=lambda pair: pair[1]):
            self._index[url] = ts

    def _save_index(self) -> None:
        self.store.set(INDEX_KEY, [[url, ts] for url, ts in self._index.items()])
        self._index_dirty = False

    def _touch(self, url: str) -> None:
        self._index[url] = self._clock()
        self._index.move_to_end(url)

    def has(self, url: str) -> bool:
        return url in self._index

    def get(self, url: str) -> dict | None:
        """
        Return the cached MetadataMap, or None on a miss.
        A hit refreshes recency; the stored value is not rewritten.
        """
        if url not in self._index:
            return None

        self._touch(url)
        self._index_dirty = True

        try:
            value = self.store.get(CACHE_KEY_PREFIX + url)
        except (sqlite3.Error, ValueError) as e:
            logger.warning("[CACHE] Read failed for %s: %s", url, e)
            return None

        if value is None:
            # Index and records disagree — treat as a miss and forget it
            del self._index[url]
            return None
        return value

    def set(self, url: str, metadata: dict) -> None:
        self._touch(url)
        try:
            self._ensure_capacity()
            self.store.set(CACHE_KEY_PREFIX + url, metadata)
            self._save_index()
        except sqlite3.Error as e:
            logger.warning("[CACHE] Write failed for %s: %s", url, e)

    def flush(self) -> None:
        """Persist recency updates made by get()."""
        if not self._index_dirty:
            return
        try:
            self._save_index()
        except sqlite3.Error as e:
            logger.warning("[CACHE] Index flush failed: %s", e)

    def clear(self) -> int:
        """Drop every cached entry. Returns the number removed."""
        count = len(self._index)
        self._index.clear()
        self._index_dirty = False
        try:
            self.store.clear(CACHE_KEY_PREFIX)
            self.store.remove([INDEX_KEY])
        except sqlite3.Error as e:
            logger.warning("[CACHE] Clear failed: %s", e)
        return count

    def statistics(self) -> dict:
        try:
            storage_bytes = self.store.size_bytes(CACHE_KEY_PREFIX)
        except sqlite3.Error:
            storage_bytes = 0
        return {
            "item_count"    : len(self._index),
            "limit"         : self.limit,
            "storage_bytes" : storage_bytes,
        }

    def _ensure_capacity(self) -> None:
        if len(self._index) <= self.limit:
            return

        evict_count = math.ceil(self.limit * EVICT_FRACTION)
        victims = []
        for url in list(self._index)[:evict_count]:
            del self._index[url]
            victims.append(CACHE_KEY_PREFIX + url)

        logger.info("[CACHE] Evicting %d items", len(victims))
        self.store.remove(victims)
