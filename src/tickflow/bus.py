"""Synchronous publish/subscribe registry.

Every ``add`` returns a :class:`Subscription` token; calling
:meth:`Subscription.unsubscribe` (or leaving its ``with`` block) removes the
callback again.  Exceptions raised by a callback are logged and counted but
never reach the publisher, so one faulty consumer cannot stall the others.
"""

from __future__ import annotations

import logging
from typing import Callable, Generic, TypeVar

from .utils.metrics import LISTENER_ERRORS

T = TypeVar("T")

log = logging.getLogger(__name__)


class Subscription:
    """Disposable handle returned by :meth:`ListenerRegistry.add`."""

    def __init__(self, registry: "ListenerRegistry", callback: Callable) -> None:
        self._registry = registry
        self._callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._registry._remove(self._callback)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.unsubscribe()


class ListenerRegistry(Generic[T]):
    def __init__(self, name: str = "listeners") -> None:
        self.name = name
        self._callbacks: list[Callable[[T], None]] = []

    def add(self, callback: Callable[[T], None]) -> Subscription:
        self._callbacks.append(callback)
        return Subscription(self, callback)

    def _remove(self, callback: Callable[[T], None]) -> None:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            pass

    def publish(self, msg: T) -> int:
        """Deliver ``msg`` to every callback; return how many succeeded."""
        delivered = 0
        # copy so callbacks may unsubscribe while being notified
        for cb in list(self._callbacks):
            try:
                cb(msg)
            except Exception as e:
                LISTENER_ERRORS.labels(registry=self.name).inc()
                log.warning("%s callback %r failed: %s", self.name, cb, e)
            else:
                delivered += 1
        return delivered

    def clear(self) -> None:
        self._callbacks.clear()

    def __len__(self) -> int:
        return len(self._callbacks)
