import copy
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Optional

from . import config

logger = logging.getLogger(__name__)

TTL_INDEFINITE = 0
TTL_UNCACHEABLE = -1


class Durability(IntEnum):
    """How far a store can be trusted to keep what it is given."""

    NONE = 1
    SCRIPT = 2  # Lives only as long as the current process
    SERVICE = 3  # Shared daemon, survives individual workers
    DISK = 4
    RDBMS = 5


class CacheStoreError(Exception):
    """The backing store could not be read or written."""


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    written_at: float
    expires_at: Optional[float]  # None = never expires
    stale_until: Optional[float]

    def is_fresh(self, now):
        return self.expires_at is None or now < self.expires_at

    def is_servable(self, now):
        """True while the value may still be handed out, fresh or stale."""
        if self.is_fresh(now):
            return True
        return self.stale_until is not None and now < self.stale_until


def _escape_component(component):
    if not isinstance(component, str) or not component:
        raise ValueError(f"Cache key components must be non-empty strings, got {component!r}")
    return component.replace("%", "%25").replace(":", "%3A")


def make_key(*components):
    """Build a global cache key; escaping keeps distinct inputs from colliding."""
    if not components:
        raise ValueError("Cache key needs at least one component")
    return "global:" + ":".join(_escape_component(c) for c in components)


def build_entry(value, ttl, stale_ttl, now):
    if ttl is None or ttl < 0:
        raise ValueError(f"Invalid cache TTL: {ttl!r}")
    expires_at = None if ttl == TTL_INDEFINITE else now + ttl
    stale_until = None
    if expires_at is not None and stale_ttl:
        stale_until = expires_at + stale_ttl
    return CacheEntry(value=value, written_at=now, expires_at=expires_at, stale_until=stale_until)


class CacheStore:
    """
    Base get-or-populate logic shared by all backends.
    Subclasses provide _read_entry, _write_entry, _delete_entry and _evict_entry.
    """

    durability = Durability.NONE

    def __init__(self, clock=time.time):
        self.clock = clock
        self._lock = threading.Lock()
        self._key_locks = {}
        self.stats = {
            "hits": 0,
            "misses": 0,
            "stale_hits": 0,
            "writes": 0,
            "callbacks": 0,
            "singleflight_waits": 0,
        }

    def make_key(self, *components):
        return make_key(*components)

    def query_durability(self):
        return self.durability

    def _read_entry(self, key):
        raise NotImplementedError

    def _write_entry(self, key, entry):
        raise NotImplementedError

    def _delete_entry(self, key):
        raise NotImplementedError

    def _evict_entry(self, key, entry):
        """Delete key only while it still holds the entry that was read."""
        raise NotImplementedError

    def close(self):
        pass

    def _servable_entry(self, key, now):
        entry = self._read_entry(key)
        if entry is None:
            return None
        if not entry.is_servable(now):
            self._evict_entry(key, entry)
            return None
        return entry

    def get(self, key, allow_stale=False):
        """Return the fresh value for key (or a stale one if allowed), else None."""
        now = self.clock()
        entry = self._servable_entry(key, now)
        if entry is None:
            self.stats["misses"] += 1
            return None
        if entry.is_fresh(now):
            self.stats["hits"] += 1
            return entry.value
        if allow_stale:
            self.stats["stale_hits"] += 1
            return entry.value
        self.stats["misses"] += 1
        return None

    def set(self, key, value, ttl=TTL_INDEFINITE, stale_ttl=0):
        entry = build_entry(value, ttl, stale_ttl, self.clock())
        self._write_entry(key, entry)
        self.stats["writes"] += 1
        return True

    def delete(self, key):
        self._delete_entry(key)

    def _acquire_key_lock(self, key):
        with self._lock:
            slot = self._key_locks.get(key)
            if slot is None:
                slot = [threading.Lock(), 0]
                self._key_locks[key] = slot
            slot[1] += 1
        if not slot[0].acquire(blocking=False):
            self.stats["singleflight_waits"] += 1
            slot[0].acquire()
        return slot

    def _release_key_lock(self, key, slot):
        slot[0].release()
        with self._lock:
            slot[1] -= 1
            if slot[1] == 0:
                self._key_locks.pop(key, None)

    def get_with_set_callback(self, key, ttl, callback, stale_ttl=0):
        """
        Return the fresh value for key, populating it through callback otherwise.

        callback(old_value, opts) receives the stale value (or None) and a dict
        holding "ttl" and "stale_ttl". Returning old_value itself, or setting
        opts["ttl"] to TTL_UNCACHEABLE, hands the result back without storing it.
        Concurrent callers for one key are serialized so only one callback runs
        at a time; later callers see whatever the first one stored.
        """
        now = self.clock()
        entry = self._servable_entry(key, now)
        if entry is not None and entry.is_fresh(now):
            self.stats["hits"] += 1
            return entry.value

        slot = self._acquire_key_lock(key)
        try:
            now = self.clock()
            entry = self._servable_entry(key, now)
            if entry is not None and entry.is_fresh(now):
                self.stats["hits"] += 1
                return entry.value
            old_value = None
            if entry is not None:
                self.stats["stale_hits"] += 1
                old_value = entry.value
            else:
                self.stats["misses"] += 1
            opts = {"ttl": ttl, "stale_ttl": stale_ttl}
            self.stats["callbacks"] += 1
            value = callback(old_value, opts)
            if opts["ttl"] == TTL_UNCACHEABLE:
                return value
            if old_value is not None and value is old_value:
                return value
            self.set(key, value, opts["ttl"], opts.get("stale_ttl") or 0)
            return value
        finally:
            self._release_key_lock(key, slot)


class MemoryCacheStore(CacheStore):
    """Process-local LRU store; values are copied in and out."""

    def __init__(self, max_entries=config.MEMORY_CACHE_SIZE, durability=Durability.SCRIPT, clock=time.time):
        super().__init__(clock=clock)
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self.durability = durability
        self._entries = OrderedDict()

    def _read_entry(self, key):
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            self._entries.move_to_end(key)
        return CacheEntry(copy.deepcopy(entry.value), entry.written_at, entry.expires_at, entry.stale_until)

    def _write_entry(self, key, entry):
        stored = CacheEntry(copy.deepcopy(entry.value), entry.written_at, entry.expires_at, entry.stale_until)
        with self._lock:
            self._entries[key] = stored
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def _delete_entry(self, key):
        with self._lock:
            self._entries.pop(key, None)

    def _evict_entry(self, key, entry):
        with self._lock:
            current = self._entries.get(key)
            if current is not None and current.written_at == entry.written_at:
                del self._entries[key]

    def __len__(self):
        with self._lock:
            return len(self._entries)
