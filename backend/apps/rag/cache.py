"""
In-process LRU cache for decoded artifacts.

Bounded by entry count and by total size in bytes. Every entry leaving the
cache (eviction, delete, clear) is passed to the dispose callback so any
native search index it owns can be closed.
"""
import logging
import threading
from collections import OrderedDict
from typing import Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

V = TypeVar('V')

MAX_ARTIFACT_CACHE_ENTRIES = 5
MAX_ARTIFACT_CACHE_BYTES = 512 * 1024 * 1024


class LRUCache(Generic[V]):
    """Thread-safe least-recently-used cache with an optional byte budget."""

    def __init__(
        self,
        max_entries: int = 64,
        max_bytes: int = 0,
        on_dispose: Optional[Callable[[V, str], None]] = None,
    ):
        self.max_entries = max(1, int(max_entries))
        self.max_bytes = max(0, int(max_bytes))
        self.on_dispose = on_dispose
        self._entries: 'OrderedDict[str, tuple]' = OrderedDict()
        self._total_bytes = 0
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    @property
    def total_bytes(self) -> int:
        return self._total_bytes

    def get(self, key: str) -> Optional[V]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            self._entries.move_to_end(key)
            return entry[0]

    def set(self, key: str, value: V, size: int = 0) -> None:
        if size < 0:
            raise ValueError("Cache entry size cannot be negative")

        with self._lock:
            existing = self._entries.pop(key, None)
            if existing is not None:
                self._total_bytes -= existing[1]
                if existing[0] is not value:
                    self._dispose(key, existing[0])

            self._entries[key] = (value, size)
            self._total_bytes += size
            self._evict()

    def delete(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.pop(key, None)
            if entry is None:
                return False
            self._total_bytes -= entry[1]
        self._dispose(key, entry[0])
        return True

    def clear(self) -> None:
        with self._lock:
            entries = list(self._entries.items())
            self._entries.clear()
            self._total_bytes = 0
        for key, (value, _) in entries:
            self._dispose(key, value)

    def _evict(self) -> None:
        while self._entries and (
            len(self._entries) > self.max_entries
            or (self.max_bytes and self._total_bytes > self.max_bytes)
        ):
            key, (value, size) = self._entries.popitem(last=False)
            self._total_bytes -= size
            logger.info(f"Evicting {key[:12]} from cache ({size} bytes)")
            self._dispose(key, value)

    def _dispose(self, key: str, value: V) -> None:
        if self.on_dispose is None:
            return
        try:
            self.on_dispose(value, key)
        except Exception as e:
            logger.warning(f"Cache dispose callback failed for {key[:12]}: {e}")
