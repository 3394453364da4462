"""Stateless order-flow signals.

* per-bar delta and cumulative delta series, with trailing-window divergence
  between price and cumulative delta;
* OI sense: the quadrant implied by the joint sign of price change and open
  interest change (long/short buildup, short covering, long unwinding);
* put/call ratio sentiment for option chains.
"""

from __future__ import annotations

from dataclasses import dataclass
from itertools import accumulate
from typing import Iterable, Literal, NamedTuple, Protocol, Sequence

Divergence = Literal["bullish", "bearish"]
Sentiment = Literal["bullish", "bearish", "neutral"]
Strength = Literal["strong", "weak", "none"]

LONG_BUILDUP = "long_buildup"
SHORT_BUILDUP = "short_buildup"
SHORT_COVERING = "short_covering"
LONG_UNWINDING = "long_unwinding"
NEUTRAL = "neutral"

# Put/call ratio bands
PCR_BULLISH_BELOW = 0.7
PCR_BEARISH_ABOVE = 1.3


class _HasVolumes(Protocol):
    buy_volume: float
    sell_volume: float


@dataclass(frozen=True)
class DeltaPoint:
    time: int
    delta: float
    buy_volume: float = 0.0
    sell_volume: float = 0.0


@dataclass(frozen=True)
class CumulativeDeltaPoint:
    time: int
    delta: float
    cumulative_delta: float
    divergence: Divergence | None = None


class OISenseSignal(NamedTuple):
    signal: str
    label: str
    sentiment: Sentiment
    strength: Strength


_OI_SENSE = {
    LONG_BUILDUP: OISenseSignal(LONG_BUILDUP, "Long Buildup", "bullish", "strong"),
    SHORT_BUILDUP: OISenseSignal(SHORT_BUILDUP, "Short Buildup", "bearish", "strong"),
    SHORT_COVERING: OISenseSignal(SHORT_COVERING, "Short Covering", "bullish", "weak"),
    LONG_UNWINDING: OISenseSignal(LONG_UNWINDING, "Long Unwinding", "bearish", "weak"),
    NEUTRAL: OISenseSignal(NEUTRAL, "Neutral", "neutral", "none"),
}


def delta(level: _HasVolumes) -> float:
    return level.buy_volume - level.sell_volume


def cumulative_delta(deltas: Iterable[float]) -> list[float]:
    """Running sum of ``deltas``."""
    return list(accumulate(deltas))


def delta_series(bars: Iterable) -> list[DeltaPoint]:
    """One :class:`DeltaPoint` per footprint bar (anything with ``time`` and volumes)."""
    return [
        DeltaPoint(time=b.time, delta=delta(b), buy_volume=b.buy_volume, sell_volume=b.sell_volume)
        for b in bars
    ]


def detect_divergences(
    prices: Sequence[float],
    cumulative: Sequence[float],
    window: int = 5,
    min_change: float = 0.0,
) -> list[Divergence | None]:
    """Flag bars where price and cumulative delta moved in opposite directions.

    Each bar ``i >= window`` compares ``prices[i] - prices[i - window]`` with
    the matching cumulative delta change.  Moves not exceeding ``min_change``
    in magnitude count as flat.
    """
    if len(prices) != len(cumulative):
        raise ValueError("prices and cumulative delta must have equal length")
    if window <= 0:
        raise ValueError("window must be positive")
    out: list[Divergence | None] = [None] * len(prices)
    for i in range(window, len(prices)):
        dp = prices[i] - prices[i - window]
        dcd = cumulative[i] - cumulative[i - window]
        if dp > min_change and dcd < -min_change:
            out[i] = "bearish"
        elif dp < -min_change and dcd > min_change:
            out[i] = "bullish"
    return out


def cumulative_delta_series(
    points: Sequence[DeltaPoint],
    closes: Sequence[float] | None = None,
    window: int = 5,
) -> list[CumulativeDeltaPoint]:
    """Cumulative delta for time-ordered ``points``.

    When bar ``closes`` are given, divergences over ``window`` bars are
    attached to each point.
    """
    cds = cumulative_delta(p.delta for p in points)
    divs: list[Divergence | None] = [None] * len(points)
    if closes is not None:
        divs = detect_divergences(closes, cds, window)
    return [
        CumulativeDeltaPoint(time=p.time, delta=p.delta, cumulative_delta=cd, divergence=d)
        for p, cd, d in zip(points, cds, divs)
    ]


def percent_change(previous: float, current: float) -> float:
    if previous == 0:
        return 0.0
    return (current - previous) / abs(previous) * 100.0


def classify_oi_sense(
    price_change_pct: float, oi_change_pct: float, threshold: float = 0.0
) -> OISenseSignal:
    price_up = price_change_pct > threshold
    price_down = price_change_pct < -threshold
    oi_up = oi_change_pct > threshold
    oi_down = oi_change_pct < -threshold

    if price_up and oi_up:
        return _OI_SENSE[LONG_BUILDUP]
    if price_down and oi_up:
        return _OI_SENSE[SHORT_BUILDUP]
    if price_up and oi_down:
        return _OI_SENSE[SHORT_COVERING]
    if price_down and oi_down:
        return _OI_SENSE[LONG_UNWINDING]
    return _OI_SENSE[NEUTRAL]


def strike_oi_sense(
    call_oi_change: float, put_oi_change: float, price_change_pct: float, threshold: float = 0.0
) -> OISenseSignal:
    # call OI growth reads bullish, put OI growth bearish
    return classify_oi_sense(price_change_pct, call_oi_change - put_oi_change, threshold)


def put_call_ratio(total_put_oi: float, total_call_oi: float) -> float:
    return total_put_oi / total_call_oi if total_call_oi > 0 else 0.0


def pcr_sentiment(pcr: float) -> Sentiment:
    if pcr < PCR_BULLISH_BELOW:
        return "bullish"
    if pcr > PCR_BEARISH_ABOVE:
        return "bearish"
    return "neutral"
