import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Optional

from hls_inspector.configs import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    """Represents a cache entry with metadata."""

    value: Any
    expires_at: float
    size: int = 0


class ResourceCache:
    """
    Thread-safe LRU memory cache of fetched playlists and segments.

    Entries are immutable and keyed by absolute URL, plus the requested span for range
    fetches. A miss or an expired entry is answered by a fresh fetch that stores a new
    entry; an existing entry is never updated in place.
    """

    def __init__(self, max_memory_size: Optional[int] = None, ttl: Optional[int] = None):
        self.maxsize = settings.cache_max_memory_size if max_memory_size is None else max_memory_size
        self.ttl = settings.cache_ttl if ttl is None else ttl
        self._cache: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()
        self._current_size = 0

    @staticmethod
    def key(url: str, byte_range=None) -> str:
        """Cache key of a URL, optionally narrowed to a ``ByteRange``."""
        if byte_range is None:
            return url
        return f"{url}|bytes={byte_range.offset}-{byte_range.last}"

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            if key in self._cache:
                entry = self._cache.pop(key)  # Remove and re-insert for LRU
                if time.time() < entry.expires_at:
                    self._cache[key] = entry
                    return entry.value
                else:
                    # Remove expired entry
                    self._current_size -= entry.size
            return None

    def set(self, key: str, value: Any, size: int = 0) -> None:
        entry = CacheEntry(value=value, expires_at=time.time() + self.ttl, size=size)
        with self._lock:
            if key in self._cache:
                old_entry = self._cache.pop(key)
                self._current_size -= old_entry.size

            if entry.size > self.maxsize:
                logger.debug(f"Not caching {key}: {entry.size} bytes exceed the cache size")
                return

            # Check if we need to make space
            while self._current_size + entry.size > self.maxsize and self._cache:
                _, removed_entry = self._cache.popitem(last=False)
                self._current_size -= removed_entry.size

            self._cache[key] = entry
            self._current_size += entry.size

    def remove(self, key: str) -> None:
        with self._lock:
            if key in self._cache:
                entry = self._cache.pop(key)
                self._current_size -= entry.size

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            self._current_size = 0

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)
