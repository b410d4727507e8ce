import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from cachetools import TLRUCache


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    ttl: float


def _time_to_use(key, entry: CacheEntry, now: float) -> float:
    return now + entry.ttl


class ResponseCache:
    """
    Process-wide keyed cache with a TTL per entry.

    Keys are composite strings such as ``detail_42000_pt``. Expired entries are
    never returned; writes replace the whole entry.
    """

    def __init__(self, maxsize: int = 4096, timer: Callable[[], float] = time.monotonic):
        self._store = TLRUCache(maxsize=maxsize, ttu=_time_to_use, timer=timer)
        self.hits = 0
        self.misses = 0

    @staticmethod
    def key(*parts: Any) -> str:
        return "_".join(str(part) for part in parts)

    def get(self, key: str) -> Optional[Any]:
        entry = self._store.get(key)
        if entry is None:
            self.misses += 1
            return None
        self.hits += 1
        return entry.value

    def set(self, key: str, value: Any, ttl: float) -> None:
        self._store[key] = CacheEntry(value=value, ttl=ttl)

    def delete(self, key: str) -> None:
        self._store.pop(key, None)

    def clear(self) -> None:
        self._store.clear()

    def __contains__(self, key: str) -> bool:
        return key in self._store

    def __len__(self) -> int:
        return len(self._store)

    def stats(self) -> Dict[str, int]:
        self._store.expire()
        return {"hits": self.hits, "misses": self.misses, "keys": len(self._store)}
