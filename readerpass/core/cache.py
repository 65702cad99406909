"""
In-memory expiring cache.

- Thread-safe (handlers run in the FastAPI threadpool).
- Entries expire after a fixed TTL; time source is injectable for tests.
"""

import threading
import time
from typing import Callable, Dict, Generic, Optional, Tuple, TypeVar

V = TypeVar("V")


class ExpiringCache(Generic[V]):
    def __init__(self, ttl_seconds: float, time_fn: Callable[[], float] = time.monotonic, max_entries: int = 10000):
        self.ttl_seconds = max(0.0, float(ttl_seconds))
        self.time_fn = time_fn
        self.max_entries = max(1, max_entries)
        self._entries: Dict[str, Tuple[float, V]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[V]:
        now = self.time_fn()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if now >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: V) -> None:
        now = self.time_fn()
        with self._lock:
            if len(self._entries) >= self.max_entries and key not in self._entries:
                self._evict_expired(now)
                if len(self._entries) >= self.max_entries:
                    # Drop the entry closest to expiry
                    oldest = min(self._entries, key=lambda k: self._entries[k][0])
                    del self._entries[oldest]
            self._entries[key] = (now + self.ttl_seconds, value)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _evict_expired(self, now: float) -> None:
        expired = [k for k, (expires_at, _) in self._entries.items() if now >= expires_at]
        for k in expired:
            del self._entries[k]
