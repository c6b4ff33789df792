import json
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple


class QueryCache:
    """In-process TTL cache for list queries.

    Entries expire by time only; writes do not invalidate them, so a change can
    stay invisible to list readers for up to ``ttl_seconds``. A ttl of 0
    disables caching.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def make_key(**shape: Any) -> str:
        return json.dumps(shape, sort_keys=True, default=str)

    def get(self, key: str) -> Optional[Any]:
        if self.ttl_seconds <= 0:
            return None
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, value = entry
            if self._clock() - stored_at >= self.ttl_seconds:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any) -> None:
        if self.ttl_seconds <= 0:
            return
        with self._lock:
            now = self._clock()
            self._entries[key] = (now, value)
            expired = [k for k, (stored_at, _) in self._entries.items() if now - stored_at >= self.ttl_seconds]
            for k in expired:
                del self._entries[k]

    def get_or_compute(self, key: str, compute: Callable[[], Any]) -> Any:
        value = self.get(key)
        if value is None:
            value = compute()
            self.set(key, value)
        return value

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
