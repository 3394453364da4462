# src/tickflow/utils/backoff.py
from __future__ import annotations

import logging

log = logging.getLogger(__name__)


class Backoff:
    """Capped exponential reconnect schedule.

    The ``n``-th delay (zero based) is ``min(base_delay * 2**n, max_delay)``.
    Once ``max_attempts`` delays have been handed out :meth:`next_delay`
    returns ``None`` and the caller is expected to give up until
    :meth:`reset` is called.
    """

    def __init__(self, base_delay: float = 1.0, max_delay: float = 10.0,
                 max_attempts: int = 5) -> None:
        if base_delay <= 0 or max_delay <= 0:
            raise ValueError("backoff delays must be positive")
        if max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_attempts = max_attempts
        self.attempt = 0

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    def next_delay(self) -> float | None:
        if self.exhausted:
            return None
        delay = self.delay_for(self.attempt)
        self.attempt += 1
        log.debug("backoff attempt %d/%d (sleep %.2fs)",
                  self.attempt, self.max_attempts, delay)
        return delay

    def reset(self) -> None:
        self.attempt = 0
