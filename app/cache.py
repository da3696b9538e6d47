"""
Thread-safe LRU cache shared by the summarizer, the lorebook scanner and the
vector store.
"""

import threading
from collections import OrderedDict


class LRUCache:
    """Bounded mapping that drops the least recently read or written key first."""

    def __init__(self, max_size=1000):
        self.max_size = max_size
        self._entries = OrderedDict()
        self._lock = threading.RLock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, key, default=None):
        with self._lock:
            try:
                self._entries.move_to_end(key)
            except KeyError:
                self.misses += 1
                return default
            self.hits += 1
            return self._entries[key]

    def put(self, key, value):
        if self.max_size <= 0:
            return
        with self._lock:
            self._entries[key] = value
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)
                self.evictions += 1

    def delete(self, key):
        """Returns True when the key was present."""
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self):
        with self._lock:
            self._entries.clear()
            self.hits = self.misses = self.evictions = 0

    def size(self):
        return len(self._entries)

    def values(self):
        """Snapshot of the cached values, oldest first."""
        with self._lock:
            return list(self._entries.values())

    def get_stats(self):
        with self._lock:
            used = len(self._entries)
            lookups = self.hits + self.misses
            return {
                "size": used,
                "max_size": self.max_size,
                "usage_percent": used * 100 / self.max_size if self.max_size > 0 else 0,
                "hit_rate": self.hits / lookups if lookups else 0.0,
                "evictions": self.evictions,
            }

    __len__ = size

    def __contains__(self, key):
        return key in self._entries

    def __setitem__(self, key, value):
        self.put(key, value)

    def __getitem__(self, key):
        return self.get(key)
