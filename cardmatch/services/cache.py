# services/cache.py
import time
from typing import Any, Callable, Dict, Optional, Tuple


class TTLCache:
    """
    Read-mostly cache with per-entry expiry. Writes overwrite (last write
    wins per key) and drop every expired entry; there is no cross-key locking.
    """

    def __init__(self, ttl_s: float = 3600.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_s = float(ttl_s)
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Any]] = {}

    def _expired(self, stored_at: float, now: float) -> bool:
        return now - stored_at >= self.ttl_s

    def get(self, key: str) -> Optional[Any]:
        hit = self._entries.get(key)
        if hit is None:
            return None
        stored_at, value = hit
        if self._expired(stored_at, self._clock()):
            self._entries.pop(key, None)
            return None
        return value

    def set(self, key: str, value: Any) -> None:
        now = self._clock()
        stale = [k for k, (stored_at, _) in self._entries.items() if self._expired(stored_at, now)]
        for k in stale:
            del self._entries[k]
        self._entries[key] = (now, value)

    def __len__(self) -> int:
        return len(self._entries)
