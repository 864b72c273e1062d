"""Small TTL cache injected into repositories (no module-level state)."""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, Hashable, Optional, Tuple


class TTLCache:
    """Thread-safe key/value cache whose entries expire after ``ttl_seconds``.

    Keys are tuples whose first element is the user id, so a whole user's
    entries can be dropped with :meth:`invalidate_user` when new data lands.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            now = self._clock()
            # Keys embed query windows, so expired ones are rarely read again
            expired = [k for k, (expires_at, _) in self._entries.items() if now >= expires_at]
            for k in expired:
                del self._entries[k]
            self._entries[key] = (now + self.ttl_seconds, value)

    def invalidate_user(self, user_id: str) -> int:
        with self._lock:
            stale = [k for k in self._entries if isinstance(k, tuple) and k and k[0] == user_id]
            for k in stale:
                del self._entries[k]
            return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
