"""TTL cache for place search results."""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple

import structlog

logger = structlog.get_logger()

DEFAULT_TTL = 5 * 60
MAX_ENTRIES = 50
EVICT_COUNT = 10


class Clock(ABC):
    @abstractmethod
    def now(self) -> float:
        """Current time in seconds."""
        pass


class SystemClock(Clock):
    def now(self) -> float:
        return time.time()


@dataclass
class CacheEntry:
    value: Any
    timestamp: float


class CacheStore(ABC):
    """Backing storage for cache entries."""

    @abstractmethod
    def get(self, key: str) -> Optional[CacheEntry]:
        pass

    @abstractmethod
    def set(self, key: str, entry: CacheEntry) -> None:
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        pass

    @abstractmethod
    def items(self) -> Iterable[Tuple[str, CacheEntry]]:
        pass

    @abstractmethod
    def __len__(self) -> int:
        pass


class InMemoryCacheStore(CacheStore):
    def __init__(self) -> None:
        self._entries: Dict[str, CacheEntry] = {}

    def get(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def set(self, key: str, entry: CacheEntry) -> None:
        self._entries[key] = entry

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def items(self) -> Iterable[Tuple[str, CacheEntry]]:
        return list(self._entries.items())

    def __len__(self) -> int:
        return len(self._entries)


class PlacesCache:
    """Search results keyed by query parameters, valid for ``ttl`` seconds."""

    def __init__(
        self,
        store: Optional[CacheStore] = None,
        clock: Optional[Clock] = None,
        ttl: float = DEFAULT_TTL,
        max_entries: int = MAX_ENTRIES,
        evict_count: int = EVICT_COUNT,
    ) -> None:
        self.store = store or InMemoryCacheStore()
        self.clock = clock or SystemClock()
        self.ttl = ttl
        self.max_entries = max_entries
        self.evict_count = evict_count

    @staticmethod
    def build_key(
        location: str,
        query: str,
        place_type: Optional[str] = None,
        min_rating: Optional[float] = None,
        price_levels: Optional[Sequence[int]] = None,
        radius: Optional[int] = None,
    ) -> str:
        prices = ",".join(str(p) for p in price_levels) if price_levels else ""
        parts = [location, query, place_type or "", min_rating or "", prices, radius or ""]
        return ":".join(str(p) for p in parts)

    def is_expired(self, entry: CacheEntry) -> bool:
        return self.clock.now() - entry.timestamp >= self.ttl

    def get(self, key: str) -> Optional[Any]:
        entry = self.store.get(key)
        if entry is None:
            return None
        if self.is_expired(entry):
            self.store.delete(key)
            logger.debug("places_cache_expired", key=key)
            return None
        return entry.value

    def set(self, key: str, value: Any) -> None:
        self.store.set(key, CacheEntry(value=value, timestamp=self.clock.now()))
        if len(self.store) > self.max_entries:
            self._evict_oldest()

    def _evict_oldest(self) -> None:
        oldest = sorted(self.store.items(), key=lambda item: item[1].timestamp)[: self.evict_count]
        for key, _ in oldest:
            self.store.delete(key)
        logger.debug("places_cache_evicted", count=len(oldest))
