"""In-memory caching and request coalescing primitives."""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Hashable, TypeVar

T = TypeVar("T")

MISSING: Any = object()


@dataclass(slots=True)
class CacheStats:
    size: int
    max_size: int
    ttl_seconds: float
    valid_entries: int
    expired_entries: int
    hits: int
    misses: int

    @property
    def hit_rate(self) -> float:
        return self.hits / ((self.hits + self.misses) or 1)

    def as_dict(self) -> dict[str, Any]:
        return {
            "size": self.size,
            "max_size": self.max_size,
            "ttl_seconds": self.ttl_seconds,
            "valid_entries": self.valid_entries,
            "expired_entries": self.expired_entries,
            "hit_rate": self.hit_rate,
        }


class TTLCache:
    """Capacity-bounded LRU cache whose entries expire after a fixed TTL.

    ``None`` is a legitimate cached value; :data:`MISSING` signals a miss.
    """

    def __init__(
        self,
        max_entries: int,
        ttl_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_entries = max(1, int(max_entries))
        self._ttl = float(ttl_seconds)
        self._clock = clock
        self._data: "OrderedDict[Hashable, tuple[float, Any]]" = OrderedDict()
        self._hits = 0
        self._misses = 0

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._data

    def _expired(self, timestamp: float, now: float) -> bool:
        return now - timestamp > self._ttl

    def get(self, key: Hashable) -> Any:
        entry = self._data.get(key)
        if entry is None:
            self._misses += 1
            return MISSING
        timestamp, value = entry
        if self._expired(timestamp, self._clock()):
            del self._data[key]
            self._misses += 1
            return MISSING
        self._hits += 1
        self._data.move_to_end(key)
        return value

    def set(self, key: Hashable, value: Any) -> None:
        self._data.pop(key, None)
        self._data[key] = (self._clock(), value)
        while len(self._data) > self._max_entries:
            self._data.popitem(last=False)

    def clear(self) -> None:
        self._data.clear()

    def cleanup_expired(self) -> int:
        """Drop expired entries and return how many were removed."""

        now = self._clock()
        expired = [
            key for key, (timestamp, _) in self._data.items() if self._expired(timestamp, now)
        ]
        for key in expired:
            del self._data[key]
        return len(expired)

    def stats(self) -> CacheStats:
        now = self._clock()
        expired = sum(
            1 for timestamp, _ in self._data.values() if self._expired(timestamp, now)
        )
        return CacheStats(
            size=len(self._data),
            max_size=self._max_entries,
            ttl_seconds=self._ttl,
            valid_entries=len(self._data) - expired,
            expired_entries=expired,
            hits=self._hits,
            misses=self._misses,
        )


class SingleFlight(Generic[T]):
    """Share one in-flight task per key between concurrent callers."""

    def __init__(self) -> None:
        self._tasks: dict[Hashable, asyncio.Task[T]] = {}

    def __len__(self) -> int:
        return len(self._tasks)

    def in_flight(self, key: Hashable) -> bool:
        return key in self._tasks

    async def run(self, key: Hashable, factory: Callable[[], Awaitable[T]]) -> T:
        task = self._tasks.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._tasks[key] = task
            task.add_done_callback(lambda done, key=key: self._forget(key, done))
        # A cancelled caller abandons the shared call without cancelling it.
        return await asyncio.shield(task)

    def _forget(self, key: Hashable, task: asyncio.Task[T]) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]
        if not task.cancelled():
            task.exception()
