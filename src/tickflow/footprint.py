"""Footprint (volume-at-price per bar) aggregation.

Ticks are bucketed into price levels that are multiples of a tick size.  For
each bar the aggregator tracks per-level buy/sell volume and trade counts, the
point of control (POC), diagonal imbalances and, on demand, the value area.

Two ways of building a bar are supported and produce identical results for
the same tick sequence:

* :meth:`FootprintAggregator.build` aggregates a finished list of ticks;
* :meth:`FootprintAggregator.update` folds a single tick into an open bar in
  constant time (one level, the POC and three imbalance flags are touched).
"""

from __future__ import annotations

import logging
import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, NamedTuple

from .types import FootprintData, FootprintLevel, Tick, TickStats

log = logging.getLogger(__name__)

DEFAULT_IMBALANCE_RATIO = 3.0
DEFAULT_VALUE_AREA_PERCENT = 70.0


class TickSizeTier(NamedTuple):
    max_price: float
    tick_size: float


# Finer buckets for cheap instruments, coarser for expensive ones.
# ``max_price`` is exclusive: a price of exactly 250 falls in the 0.10 tier.
TICK_SIZE_BY_PRICE: tuple[TickSizeTier, ...] = (
    TickSizeTier(50, 0.05),
    TickSizeTier(250, 0.05),
    TickSizeTier(500, 0.10),
    TickSizeTier(1000, 0.25),
    TickSizeTier(5000, 0.50),
    TickSizeTier(10000, 1.00),
    TickSizeTier(math.inf, 5.00),
)


def get_tick_size(price: float) -> float:
    for tier in TICK_SIZE_BY_PRICE:
        if price < tier.max_price:
            return tier.tick_size
    return TICK_SIZE_BY_PRICE[-1].tick_size


def round_to_step(price: float, step: float) -> float:
    """Round ``price`` to the nearest multiple of ``step``.

    Ties round away from zero.  Decimal arithmetic keeps the result free of
    binary float noise, so a price that already sits on the grid maps to
    itself.
    """
    if step <= 0:
        raise ValueError("step must be positive")
    dstep = Decimal(repr(step))
    units = (Decimal(repr(price)) / dstep).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return float(units * dstep)


def _apply_tick(levels: dict[float, FootprintLevel], tick: Tick, tick_size: float) -> FootprintLevel:
    price = round_to_step(tick.price, tick_size)
    level = levels.get(price)
    if level is None:
        level = levels[price] = FootprintLevel(price=price)
    level.trades += 1
    if tick.side == "buy":
        level.buy_volume += tick.volume
        level.buy_trades += 1
    else:
        level.sell_volume += tick.volume
        level.sell_trades += 1
    return level


def aggregate_ticks(ticks: Iterable[Tick], tick_size: float) -> dict[float, FootprintLevel]:
    """Bucket ``ticks`` into footprint levels keyed by rounded price."""
    levels: dict[float, FootprintLevel] = {}
    for tick in ticks:
        _apply_tick(levels, tick, tick_size)
    return levels


def compute_poc(levels: dict[float, FootprintLevel]) -> float | None:
    """Return the price with the greatest total volume (lower price wins ties)."""
    if not levels:
        return None
    best = min(levels.values(), key=lambda lvl: (-lvl.total_volume, lvl.price))
    return best.price


def _side_ratio(own: float, diagonal_opposite: float, same_opposite: float) -> float | None:
    opposite = diagonal_opposite if diagonal_opposite > 0 else same_opposite
    if own <= 0 or opposite <= 0:
        return None
    return own / opposite


def _flag_level(
    levels: dict[float, FootprintLevel],
    level: FootprintLevel,
    tick_size: float,
    ratio: float,
) -> None:
    # buy at p is compared with sell one level below, sell at p with buy one above
    below = levels.get(round_to_step(level.price - tick_size, tick_size))
    above = levels.get(round_to_step(level.price + tick_size, tick_size))
    buy_ratio = _side_ratio(
        level.buy_volume, below.sell_volume if below else 0.0, level.sell_volume
    )
    sell_ratio = _side_ratio(
        level.sell_volume, above.buy_volume if above else 0.0, level.buy_volume
    )
    buy_hit = buy_ratio is not None and buy_ratio > ratio
    sell_hit = sell_ratio is not None and sell_ratio > ratio

    if buy_hit and (not sell_hit or buy_ratio >= sell_ratio):
        level.imbalance, level.imbalance_strength = "buy", buy_ratio
    elif sell_hit:
        level.imbalance, level.imbalance_strength = "sell", sell_ratio
    else:
        level.imbalance, level.imbalance_strength = None, None


def detect_imbalances(
    levels: dict[float, FootprintLevel],
    tick_size: float,
    ratio: float = DEFAULT_IMBALANCE_RATIO,
) -> None:
    """Set ``imbalance`` on every level in place."""
    for level in levels.values():
        _flag_level(levels, level, tick_size, ratio)


def compute_value_area(
    levels: dict[float, FootprintLevel],
    poc: float | None,
    percent: float = DEFAULT_VALUE_AREA_PERCENT,
) -> tuple[float | None, float | None]:
    """Return ``(vah, val)`` covering ``percent`` of the bar volume.

    The area starts at the POC and grows one level at a time towards the
    heavier neighbour until the target volume is reached.
    """
    total = sum(lvl.total_volume for lvl in levels.values())
    if poc is None or poc not in levels or total <= 0:
        return None, None

    prices = sorted(levels)
    lo = hi = prices.index(poc)
    covered = levels[poc].total_volume
    target = total * percent / 100.0

    while covered < target and (lo > 0 or hi < len(prices) - 1):
        up = levels[prices[hi + 1]].total_volume if hi < len(prices) - 1 else -1.0
        down = levels[prices[lo - 1]].total_volume if lo > 0 else -1.0
        if up >= down:
            hi += 1
            covered += up
        else:
            lo -= 1
            covered += down
    return prices[hi], prices[lo]


def tick_stats(ticks: Iterable[Tick]) -> TickStats:
    count = 0
    buy = sell = notional = 0.0
    lo, hi = math.inf, -math.inf
    for t in ticks:
        count += 1
        if t.side == "buy":
            buy += t.volume
        else:
            sell += t.volume
        notional += t.price * t.volume
        lo = min(lo, t.price)
        hi = max(hi, t.price)
    if count == 0:
        return TickStats()
    total = buy + sell
    return TickStats(
        tick_count=count,
        buy_volume=buy,
        sell_volume=sell,
        delta=buy - sell,
        avg_price=notional / total if total > 0 else 0.0,
        min_price=lo,
        max_price=hi,
    )


def bar_start(time_ms: int, bar_ms: int) -> int:
    return time_ms - time_ms % bar_ms


class FootprintAggregator:
    """Builds :class:`FootprintData` bars from ticks.

    Parameters
    ----------
    tick_size:
        Explicit bucket size.  When ``None`` the size is looked up from
        :data:`TICK_SIZE_BY_PRICE` using the first price seen for a bar.
    imbalance_ratio:
        Volume multiple one side must exceed to flag an imbalance.
    value_area_percent:
        Share of the bar volume covered by the value area.
    """

    def __init__(
        self,
        tick_size: float | None = None,
        imbalance_ratio: float = DEFAULT_IMBALANCE_RATIO,
        value_area_percent: float = DEFAULT_VALUE_AREA_PERCENT,
    ) -> None:
        if tick_size is not None and tick_size <= 0:
            raise ValueError("tick_size must be positive")
        if imbalance_ratio <= 0:
            raise ValueError("imbalance_ratio must be positive")
        self.tick_size = tick_size
        self.imbalance_ratio = imbalance_ratio
        self.value_area_percent = value_area_percent

    def resolve_tick_size(self, price: float) -> float:
        return self.tick_size if self.tick_size is not None else get_tick_size(price)

    def aggregate(self, ticks: Iterable[Tick], tick_size: float) -> dict[float, FootprintLevel]:
        return aggregate_ticks(ticks, tick_size)

    def new_bar(self, time: int, reference_price: float) -> FootprintData:
        return FootprintData(time=time, tick_size=self.resolve_tick_size(reference_price))

    def build(self, time: int, ticks: list[Tick], tick_size: float | None = None) -> FootprintData:
        if tick_size is None:
            tick_size = self.resolve_tick_size(ticks[0].price) if ticks else (self.tick_size or 0.05)
        levels = self.aggregate(ticks, tick_size)
        detect_imbalances(levels, tick_size, self.imbalance_ratio)
        fp = FootprintData(time=time, tick_size=tick_size, levels=levels, poc=compute_poc(levels))
        self.finalize(fp)
        return fp

    def update(self, fp: FootprintData, tick: Tick) -> FootprintLevel:
        """Fold one tick into an open bar in O(1)."""
        level = _apply_tick(fp.levels, tick, fp.tick_size)

        # only ``level`` grew, so the maximum is either the old POC or ``level``
        current = fp.levels.get(fp.poc) if fp.poc is not None else None
        if (
            current is None
            or level.total_volume > current.total_volume
            or (level.total_volume == current.total_volume and level.price < current.price)
        ):
            fp.poc = level.price

        step = fp.tick_size
        for price in (level.price, round_to_step(level.price - step, step),
                      round_to_step(level.price + step, step)):
            neighbour = fp.levels.get(price)
            if neighbour is not None:
                _flag_level(fp.levels, neighbour, step, self.imbalance_ratio)
        return level

    def finalize(self, fp: FootprintData) -> FootprintData:
        """Refresh the value area of ``fp`` (linear in the number of levels)."""
        fp.vah, fp.val = compute_value_area(fp.levels, fp.poc, self.value_area_percent)
        return fp

    def footprints_for_range(
        self, ticks: Iterable[Tick], start: int, end: int, bar_ms: int
    ) -> list[FootprintData]:
        """Split ticks within ``[start, end]`` into bars of ``bar_ms``."""
        if bar_ms <= 0:
            raise ValueError("bar_ms must be positive")
        buckets: dict[int, list[Tick]] = {}
        for tick in ticks:
            if start <= tick.time <= end:
                buckets.setdefault(bar_start(tick.time, bar_ms), []).append(tick)
        return [self.build(t, buckets[t]) for t in sorted(buckets)]
