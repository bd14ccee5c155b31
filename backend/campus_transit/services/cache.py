from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Any, Dict, Hashable, Optional, Tuple

from campus_transit.core.clock import Clock, utcnow


class TopicCache:
    """Short-lived per-user cache for topic listings.

    Held on the application state; every write path calls ``invalidate()``.
    """

    def __init__(self, ttl_seconds: float = 5, clock: Clock = utcnow) -> None:
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock
        self._entries: Dict[Hashable, Tuple[datetime, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, value = entry
            if self.clock() - stored_at >= self.ttl:
                del self._entries[key]
                return None
            return value

    def put(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._entries[key] = (self.clock(), value)

    def invalidate(self, key: Optional[Hashable] = None) -> None:
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


__all__ = ["TopicCache"]
