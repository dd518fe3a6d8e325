from __future__ import annotations

import heapq
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple


class MemoryCache:
    """Process-local TTL cache with the same async surface as RedisCache.

    Expired entries are dropped on read and swept on every write, so keys that
    are never read again do not accumulate. ``clock`` is monotonic seconds and
    can be replaced in tests to move time forward without sleeping.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        # (expires_at, key); stale pairs for overwritten keys are skipped on pop
        self._expiry_heap: List[Tuple[float, str]] = []
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    def _purge_expired(self, now: float) -> None:
        heap = self._expiry_heap
        while heap and heap[0][0] <= now:
            expires_at, key = heapq.heappop(heap)
            entry = self._entries.get(key)
            if entry is not None and entry[1] == expires_at:
                del self._entries[key]

    async def get(self, key: str) -> Optional[str]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= now:
                self._entries.pop(key, None)
                return None
            return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        now = self._clock()
        expires_at = now + max(1, int(ttl_seconds))
        with self._lock:
            self._purge_expired(now)
            self._entries[key] = (value, expires_at)
            heapq.heappush(self._expiry_heap, (expires_at, key))

    async def delete(self, key: str) -> int:
        with self._lock:
            return 1 if self._entries.pop(key, None) is not None else 0

    def evict_all(self) -> None:
        with self._lock:
            self._entries.clear()
            self._expiry_heap.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    async def close(self) -> None:
        self.evict_all()
