import time
from typing import Any, Callable, Hashable, Optional


class TTLCache:
    """
    In-memory cache whose entries expire ``ttl`` seconds after they were set.
    ``ttl=None`` keeps entries forever. The clock is injectable so tests can
    move time without sleeping.
    """

    def __init__(
        self,
        ttl: Optional[float],
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[Hashable, tuple[float, Any]] = {}

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries and not self.is_expired(key)

    def __len__(self) -> int:
        return len(self._entries)

    def is_expired(self, key: Hashable) -> bool:
        """Missing keys count as expired."""
        entry = self._entries.get(key)
        if entry is None:
            return True
        if self.ttl is None:
            return False
        stored_at, _ = entry
        return self._clock() - stored_at >= self.ttl

    def get(self, key: Hashable, default: Any = None) -> Any:
        if self.is_expired(key):
            return default
        return self._entries[key][1]

    def set(self, key: Hashable, value: Any) -> None:
        # whole-value replacement, last writer wins
        self._entries[key] = (self._clock(), value)

    def clear(self) -> None:
        self._entries.clear()
