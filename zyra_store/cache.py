import threading
from typing import Any, Hashable, Optional

from cachetools import TTLCache

_MISSING = object()


class ResponseCache:
    """Small get/set/TTL wrapper shared by the request handlers of one app.

    Keys are plain strings such as ``"orders:<user>:<query>"`` so a whole
    resource can be dropped with ``invalidate_prefix("orders:")``.
    """

    def __init__(self, maxsize: int = 1024, ttl: float = 300):
        self._store = TTLCache(maxsize=maxsize, ttl=ttl)
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable, default: Optional[Any] = None):
        with self._lock:
            value = self._store.get(key, _MISSING)
            if value is _MISSING:
                self.misses += 1
                return default
            self.hits += 1
            return value

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._store[key] = value

    def delete(self, key: Hashable) -> None:
        with self._lock:
            self._store.pop(key, None)

    def invalidate_prefix(self, prefix: str) -> int:
        with self._lock:
            stale = [key for key in list(self._store.keys()) if str(key).startswith(prefix)]
            for key in stale:
                self._store.pop(key, None)
            return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._store
