import logging
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Dict

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    data: Any
    stored_at: float
    ttl: float

    def is_valid(self, now: float) -> bool:
        return now - self.stored_at < self.ttl


class ResponseCache:
    """
    Time-boxed key/value store for fetched payloads.

    Expired entries are evicted only when looked up; nothing sweeps the store
    in the background, so keys that are never read again stay until `clear()`.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._entries: Dict[str, CacheEntry] = {}
        self._clock = clock

    def get(self, key: str) -> Any | None:
        """Returns the cached payload, or None when missing or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not entry.is_valid(self._clock()):
            del self._entries[key]
            logger.debug(f"Evicted expired cache entry: {key}")
            return None
        return entry.data

    def set(self, key: str, data: Any, ttl: float) -> None:
        """Stores (or replaces) the payload for key."""
        if ttl <= 0:
            logger.warning(f"Refusing to cache {key} with non-positive ttl {ttl}")
            return
        self._entries[key] = CacheEntry(data=data, stored_at=self._clock(), ttl=ttl)
        logger.debug(f"Cached {key} for {ttl}s")

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: object) -> bool:
        # Raw membership, does not evict
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


@lru_cache(maxsize=1)
def get_default_cache() -> ResponseCache:
    """Process-wide cache for hosts that do not inject their own."""
    return ResponseCache()
