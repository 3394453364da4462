"""Order-flow engine for one instrument.

Live ticks are folded into the open footprint bar, the per-bar delta, the
running cumulative delta and the power-trade detector; each update is pushed
to the matching series model.  :meth:`OrderFlowEngine.load_history` rebuilds
every model from the ticks already in the store.
"""

from __future__ import annotations

import logging
from collections import deque

from .config import Settings, settings
from .connection import WSMode
from .footprint import FootprintAggregator, bar_start
from .power_trades import PowerTradeDetector, PowerTradeSettings
from .series import CumulativeDeltaSeries, DeltaSeries, FootprintSeries
from .service import TickDataService, TickSubscription
from .signals import (
    CumulativeDeltaPoint,
    DeltaPoint,
    cumulative_delta_series,
    delta_series,
    detect_divergences,
)
from .types import FootprintData, Tick

log = logging.getLogger(__name__)


class OrderFlowEngine:
    def __init__(
        self,
        service: TickDataService,
        symbol: str,
        exchange: str | None = None,
        *,
        bar_interval_ms: int = 60_000,
        aggregator: FootprintAggregator | None = None,
        detector: PowerTradeDetector | None = None,
        footprints: FootprintSeries | None = None,
        deltas: DeltaSeries | None = None,
        cumulative: CumulativeDeltaSeries | None = None,
    ) -> None:
        if bar_interval_ms <= 0:
            raise ValueError("bar_interval_ms must be positive")
        self.service = service
        self.symbol = symbol
        self.exchange = exchange or service.default_exchange
        self.bar_interval_ms = bar_interval_ms
        self.footprints = footprints or FootprintSeries()
        self.deltas = deltas or DeltaSeries()
        self.cumulative = cumulative or CumulativeDeltaSeries(self.deltas.options())
        self.detector = detector or PowerTradeDetector()
        if aggregator is None:
            opts = self.footprints.options()
            aggregator = FootprintAggregator(
                tick_size=None if opts.auto_tick_size else opts.custom_tick_size,
                imbalance_ratio=opts.imbalance_ratio,
                value_area_percent=opts.value_area_percent,
            )
        self.aggregator = aggregator
        self._subscription: TickSubscription | None = None
        self._reset_live()

    @classmethod
    def from_settings(
        cls,
        service: TickDataService,
        symbol: str,
        exchange: str | None = None,
        cfg: Settings | None = None,
    ) -> "OrderFlowEngine":
        cfg = cfg or settings
        detector = PowerTradeDetector(
            PowerTradeSettings(
                volume_threshold=cfg.power_trade_volume_threshold,
                time_window_ms=cfg.power_trade_window_ms,
                alert_volume_multiplier=cfg.power_trade_alert_multiplier,
                max_history_count=cfg.power_trade_max_history,
            )
        )
        footprints = FootprintSeries(
            imbalance_ratio=cfg.footprint_imbalance_ratio,
            value_area_percent=cfg.footprint_value_area_percent,
            max_bars_to_show=cfg.footprint_max_bars,
        )
        return cls(
            service,
            symbol,
            exchange,
            bar_interval_ms=cfg.bar_interval_ms,
            detector=detector,
            footprints=footprints,
        )

    def _reset_live(self) -> None:
        self._bar: FootprintData | None = None
        self._bar_buy = 0.0
        self._bar_sell = 0.0
        self._close: float | None = None
        self._cd_base = 0.0
        # (close, cumulative delta) of completed bars
        self._closed: deque[tuple[float, float]] = deque(
            maxlen=self.deltas.options().divergence_window
        )

    @property
    def current_bar(self) -> FootprintData | None:
        return self._bar

    @property
    def running(self) -> bool:
        return self._subscription is not None

    # ------------------------------------------------------------------
    async def start(self, mode: WSMode = WSMode.TICK) -> None:
        if self._subscription is not None:
            return
        self._subscription = await self.service.subscribe_to_ticks(
            self.symbol, self.exchange, self.on_tick, mode
        )
        log.info("order flow engine started for %s:%s", self.symbol, self.exchange)

    async def stop(self) -> None:
        sub, self._subscription = self._subscription, None
        if sub is not None:
            await sub.close()
            log.info("order flow engine stopped for %s:%s", self.symbol, self.exchange)

    # ------------------------------------------------------------------
    def on_tick(self, tick: Tick) -> None:
        self.detector.process_tick(tick)

        start = bar_start(tick.time, self.bar_interval_ms)
        bar = self._bar
        if bar is not None and start < bar.time:
            log.debug("late tick at %d for closed bar; footprint unchanged", tick.time)
            return
        if bar is None or start > bar.time:
            bar = self._roll(start, tick.price)

        self.aggregator.update(bar, tick)
        if tick.side == "buy":
            self._bar_buy += tick.volume
        else:
            self._bar_sell += tick.volume
        self._close = tick.price

        if self.footprints.options().show_value_area:
            self.aggregator.finalize(bar)
        self.footprints.add_footprint(bar)
        self._publish_delta(bar)

    def _roll(self, start: int, price: float) -> FootprintData:
        if self._bar is not None:
            self.aggregator.finalize(self._bar)
            finished = self._bar_buy - self._bar_sell
            self._cd_base += finished
            if self._close is not None:
                self._closed.append((self._close, self._cd_base))
        self._bar = self.aggregator.new_bar(start, price)
        self._bar_buy = self._bar_sell = 0.0
        return self._bar

    def _publish_delta(self, bar: FootprintData) -> None:
        delta = self._bar_buy - self._bar_sell
        cd = self._cd_base + delta
        self.deltas.add_delta(
            DeltaPoint(time=bar.time, delta=delta, buy_volume=self._bar_buy, sell_volume=self._bar_sell)
        )
        self.cumulative.add_cd_point(
            CumulativeDeltaPoint(
                time=bar.time, delta=delta, cumulative_delta=cd, divergence=self._divergence(cd)
            )
        )

    def _divergence(self, cd: float):
        opts = self.deltas.options()
        window = opts.divergence_window
        if not opts.show_divergences or self._close is None or len(self._closed) < window:
            return None
        prices = [c for c, _ in self._closed] + [self._close]
        cds = [v for _, v in self._closed] + [cd]
        return detect_divergences(prices, cds, window)[-1]

    # ------------------------------------------------------------------
    def load_history(self, start: int, end: int) -> list[FootprintData]:
        """Rebuild all models from stored ticks within ``[start, end]`` (ms)."""
        ticks = self.service.get_ticks_in_range(self.symbol, self.exchange, start, end)
        bars = self.aggregator.footprints_for_range(ticks, start, end, self.bar_interval_ms)

        closes: dict[int, float] = {}
        for tick in ticks:
            closes[bar_start(tick.time, self.bar_interval_ms)] = tick.price

        opts = self.deltas.options()
        points = delta_series(bars)
        cds = cumulative_delta_series(
            points,
            [closes[b.time] for b in bars] if opts.show_divergences else None,
            opts.divergence_window,
        )
        self.footprints.set_data(bars)
        self.deltas.set_data(points)
        self.cumulative.set_data(cds)
        found = self.detector.backfill(ticks)

        # continue the last bar live
        self._reset_live()
        if bars:
            last = bars[-1]
            self._bar = last
            self._bar_buy, self._bar_sell = last.buy_volume, last.sell_volume
            self._close = closes[last.time]
            self._cd_base = cds[-1].cumulative_delta - last.delta
            for bar, point in zip(bars[:-1], cds[:-1]):
                self._closed.append((closes[bar.time], point.cumulative_delta))
        log.info(
            "loaded %d bars and %d power trades for %s:%s",
            len(bars), len(found), self.symbol, self.exchange,
        )
        return bars
