import json
import logging
import sqlite3
import threading
import time
from pathlib import Path

import zstandard as zstd

from . import config
from .cache import CacheEntry, CacheStore, CacheStoreError, Durability

logger = logging.getLogger(__name__)


class SQLiteCacheStore(CacheStore):
    """SQLite-backed object cache keyed by global cache key."""

    durability = Durability.DISK

    def __init__(self, db_path=config.CACHE_DB, clock=time.time):
        super().__init__(clock=clock)
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            self._conn.execute("PRAGMA busy_timeout=5000")
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS objectcache (
                    key TEXT PRIMARY KEY,
                    payload BLOB,
                    written_at REAL,
                    expires_at REAL,
                    stale_until REAL
                )
                """
            )
            self._conn.commit()
        except sqlite3.Error as exc:
            raise CacheStoreError(f"Cannot open cache database {self.db_path}: {exc}") from exc

    def _encode(self, value):
        raw = json.dumps(value, ensure_ascii=True).encode("utf-8")
        return zstd.ZstdCompressor().compress(raw)

    def _decode(self, payload):
        raw = zstd.ZstdDecompressor().decompress(payload)
        return json.loads(raw.decode("utf-8"))

    def _read_entry(self, key):
        try:
            with self._db_lock:
                row = self._conn.execute(
                    "SELECT payload, written_at, expires_at, stale_until FROM objectcache WHERE key = ?",
                    (key,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise CacheStoreError(f"Cache read failed for {key}: {exc}") from exc
        if not row:
            return None
        payload, written_at, expires_at, stale_until = row
        try:
            value = self._decode(payload)
        except (zstd.ZstdError, ValueError, TypeError) as exc:
            logger.warning("[!] Dropping undecodable cache row %s: %s", key, exc)
            self._delete_entry(key)
            return None
        return CacheEntry(value=value, written_at=written_at, expires_at=expires_at, stale_until=stale_until)

    def _write_entry(self, key, entry):
        payload = self._encode(entry.value)
        try:
            with self._db_lock:
                self._conn.execute(
                    """
                    INSERT INTO objectcache (key, payload, written_at, expires_at, stale_until)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        payload=excluded.payload,
                        written_at=excluded.written_at,
                        expires_at=excluded.expires_at,
                        stale_until=excluded.stale_until
                    """,
                    (key, payload, entry.written_at, entry.expires_at, entry.stale_until),
                )
                self._conn.commit()
        except sqlite3.Error as exc:
            raise CacheStoreError(f"Cache write failed for {key}: {exc}") from exc

    def _delete_entry(self, key):
        try:
            with self._db_lock:
                self._conn.execute("DELETE FROM objectcache WHERE key = ?", (key,))
                self._conn.commit()
        except sqlite3.Error as exc:
            raise CacheStoreError(f"Cache delete failed for {key}: {exc}") from exc

    def _evict_entry(self, key, entry):
        try:
            with self._db_lock:
                self._conn.execute(
                    "DELETE FROM objectcache WHERE key = ? AND written_at = ?",
                    (key, entry.written_at),
                )
                self._conn.commit()
        except sqlite3.Error as exc:
            raise CacheStoreError(f"Cache delete failed for {key}: {exc}") from exc

    def purge_expired(self):
        """Delete rows that can no longer be served, returning how many went."""
        now = self.clock()
        try:
            with self._db_lock:
                cursor = self._conn.execute(
                    """
                    DELETE FROM objectcache
                    WHERE expires_at IS NOT NULL
                      AND expires_at <= ?
                      AND (stale_until IS NULL OR stale_until <= ?)
                    """,
                    (now, now),
                )
                self._conn.commit()
        except sqlite3.Error as exc:
            raise CacheStoreError(f"Cache purge failed: {exc}") from exc
        return cursor.rowcount

    def close(self):
        with self._db_lock:
            self._conn.close()
