"""Thread-safe TTL cache with least-recently-used eviction."""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

V = TypeVar("V")
Clock = Callable[[], float]


@dataclass(slots=True)
class _Entry(Generic[V]):
    value: V
    stored: float


class TTLCache(Generic[V]):
    """Entries expire ``ttl`` seconds after being written.

    Reads refresh recency but never extend the lifetime of an entry. Once more
    than ``max_entries`` are held, the least recently used one is evicted.
    """

    def __init__(self, ttl: float, *, max_entries: int | None = None, clock: Clock = time.monotonic):
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, _Entry[V]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str, now: float | None = None) -> tuple[V | None, bool]:
        current = self._clock() if now is None else now
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None, False
            if current - entry.stored > self.ttl:
                del self._entries[key]
                return None, False
            self._entries.move_to_end(key)
            return entry.value, True

    def set(self, key: str, value: V, now: float | None = None) -> None:
        current = self._clock() if now is None else now
        with self._lock:
            self._entries[key] = _Entry(value=value, stored=current)
            self._entries.move_to_end(key)
            if self.max_entries is not None:
                while len(self._entries) > self.max_entries:
                    self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
