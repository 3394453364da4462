"""Detection of power trades: bursts of aggregated volume in a short window.

Ticks are buffered with their receipt time.  After every tick, entries older
than ``time_window_ms`` are dropped and the remaining volume is summed; once
it reaches ``volume_threshold`` a :class:`PowerTrade` is emitted and the
window starts over empty.
"""

from __future__ import annotations

import logging
import math
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Iterable

from .series import SeriesModel
from .types import PowerTrade, Tick
from .utils.metrics import POWER_TRADES

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class PowerTradeSettings:
    enabled: bool = True
    volume_threshold: float = 100.0
    time_window_ms: int = 5_000
    alert_volume_multiplier: float = 3.0
    max_history_count: int = 50
    show_buy_only: bool = False
    show_sell_only: bool = False

    def __post_init__(self) -> None:
        if self.volume_threshold <= 0:
            raise ValueError("volume_threshold must be positive")
        if self.time_window_ms <= 0:
            raise ValueError("time_window_ms must be positive")
        if self.max_history_count < 0:
            raise ValueError("max_history_count must be >= 0")


def _now_ms() -> int:
    return int(time.time() * 1000)


class PowerTradeDetector(SeriesModel[PowerTrade, PowerTradeSettings]):
    """Sliding-window power trade detector and history model.

    ``clock`` returns the receipt time in milliseconds; it is injectable so
    the window can be driven deterministically.
    """

    options_cls = PowerTradeSettings

    def __init__(
        self,
        options: PowerTradeSettings | None = None,
        clock: Callable[[], int] = _now_ms,
        **overrides,
    ) -> None:
        super().__init__(options, **overrides)
        self._clock = clock
        self._seen: set[tuple[int, float]] = set()
        # (received_ms, tick)
        self._buffer: deque[tuple[int, Tick]] = deque()
        self.last_detection_time: int | None = None

    # ------------------------------------------------------------------
    @property
    def buffer_size(self) -> int:
        return len(self._buffer)

    @property
    def window_volume(self) -> float:
        return math.fsum(t.volume for _, t in self._buffer)

    def _evict(self, cutoff: int) -> None:
        while self._buffer and self._buffer[0][0] < cutoff:
            self._buffer.popleft()

    def _reset_window(self) -> None:
        self._buffer.clear()

    def process_tick(self, tick: Tick, received: int | None = None) -> PowerTrade | None:
        opts = self._options
        if not opts.enabled:
            return None
        now = self._clock() if received is None else received

        self._buffer.append((now, tick))
        self._evict(now - opts.time_window_ms)

        # sums are taken over the buffer so evictions leave no float residue
        ticks = [t for _, t in self._buffer]
        volume = math.fsum(t.volume for t in ticks)
        if volume < opts.volume_threshold:
            return None

        buy_volume = math.fsum(t.volume for t in ticks if t.side == "buy")
        notional = math.fsum(t.price * t.volume for t in ticks)
        trade = PowerTrade(
            time=tick.time,
            price=notional / volume,
            volume=volume,
            side="buy" if buy_volume > volume - buy_volume else "sell",
            tick_count=len(self._buffer),
        )
        self._reset_window()
        self.last_detection_time = now
        POWER_TRADES.labels(side=trade.side).inc()
        log.info(
            "power trade %s %.2f @ %.4f (%d ticks)",
            trade.side, trade.volume, trade.price, trade.tick_count,
        )
        self.add_power_trade(trade)
        return trade

    # ------------------------------------------------------------------
    def add_power_trade(self, trade: PowerTrade) -> bool:
        key = (trade.time, trade.price)
        if key in self._seen:
            return False
        self._seen.add(key)
        self._data.append(trade)
        self._trim()
        self.update_all_views()
        return True

    def _trim(self) -> None:
        limit = self._options.max_history_count
        if limit <= 0:
            return
        while len(self._data) > limit:
            old = self._data.pop(0)
            self._seen.discard((old.time, old.price))

    def set_data(self, data: Iterable[PowerTrade] | None) -> None:
        self._data = []
        self._seen = set()
        for trade in data or []:
            key = (trade.time, trade.price)
            if key not in self._seen:
                self._seen.add(key)
                self._data.append(trade)
        self._trim()
        self.update_all_views()

    def upsert(self, point: PowerTrade) -> None:
        self.add_power_trade(point)

    def clear_data(self) -> None:
        self._seen = set()
        self._reset_window()
        super().clear_data()

    def backfill(self, ticks: Iterable[Tick]) -> list[PowerTrade]:
        """Run detection over historical ``ticks`` and replace the history.

        Each tick's own timestamp stands in for its receipt time.
        """
        self._reset_window()
        self._data, self._seen = [], set()
        found = []
        for tick in ticks:
            trade = self.process_tick(tick, received=tick.time)
            if trade is not None:
                found.append(trade)
        self._reset_window()
        self.update_all_views()
        return found

    # ------------------------------------------------------------------
    def get_power_trades(self) -> list[PowerTrade]:
        return self.data()

    def get_recent_power_trades(self, count: int = 10) -> list[PowerTrade]:
        return self._data[-count:] if count > 0 else []

    def is_high_alert(self, trade: PowerTrade) -> bool:
        opts = self._options
        return trade.volume >= opts.volume_threshold * opts.alert_volume_multiplier

    def visible_trades(self) -> list[PowerTrade]:
        """History filtered by the side display options."""
        opts = self._options
        if opts.show_buy_only:
            return [t for t in self._data if t.side == "buy"]
        if opts.show_sell_only:
            return [t for t in self._data if t.side == "sell"]
        return self.data()
