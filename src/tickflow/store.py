"""Bounded per-instrument tick buffers.

Each ``symbol:exchange`` key owns a FIFO ring of at most ``capacity`` ticks
and a listener registry.  Appending beyond capacity evicts the oldest tick.
Listeners are invoked synchronously, in registration order, after the tick
has been stored.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from typing import Callable, Iterator

from .bus import ListenerRegistry, Subscription
from .types import Tick
from .utils.metrics import TICKS_DROPPED, TICKS_INGESTED

log = logging.getLogger(__name__)

MAX_TICKS_IN_MEMORY = 10_000


def make_key(symbol: str, exchange: str) -> str:
    return f"{symbol}:{exchange}"


def tick_is_valid(tick: Tick) -> bool:
    return (
        math.isfinite(tick.price)
        and tick.price > 0
        and math.isfinite(tick.volume)
        and tick.volume > 0
    )


class _Entry:
    def __init__(self, key: str, capacity: int) -> None:
        self.ticks: deque[Tick] = deque(maxlen=capacity)
        self.listeners: ListenerRegistry[Tick] = ListenerRegistry(f"ticks[{key}]")


class TickStore:
    def __init__(self, capacity: int = MAX_TICKS_IN_MEMORY) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._entries: dict[str, _Entry] = {}

    def _entry(self, key: str) -> _Entry:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Entry(key, self.capacity)
        return entry

    def init(self, key: str) -> None:
        """Create the buffer for ``key`` if it does not exist yet."""
        self._entry(key)

    def add_tick(self, key: str, tick: Tick) -> bool:
        if not tick_is_valid(tick):
            TICKS_DROPPED.labels(reason="invalid").inc()
            log.debug("dropping invalid tick for %s: %s", key, tick)
            return False
        entry = self._entry(key)
        entry.ticks.append(tick)
        TICKS_INGESTED.labels(key=key).inc()
        entry.listeners.publish(tick)
        return True

    def get_ticks_in_range(self, key: str, start: int, end: int) -> list[Tick]:
        entry = self._entries.get(key)
        if entry is None:
            return []
        return [t for t in entry.ticks if start <= t.time <= end]

    def get_all_ticks(self, key: str) -> list[Tick]:
        entry = self._entries.get(key)
        return list(entry.ticks) if entry else []

    def tick_count(self, key: str) -> int:
        entry = self._entries.get(key)
        return len(entry.ticks) if entry else 0

    def add_listener(self, key: str, listener: Callable[[Tick], None]) -> Subscription:
        return self._entry(key).listeners.add(listener)

    def clear(self, key: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            entry.listeners.clear()

    def keys(self) -> list[str]:
        return list(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))
