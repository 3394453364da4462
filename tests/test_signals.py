import pytest
from hypothesis import given, strategies as st

from tickflow.signals import (
    LONG_BUILDUP,
    LONG_UNWINDING,
    NEUTRAL,
    SHORT_BUILDUP,
    SHORT_COVERING,
    DeltaPoint,
    classify_oi_sense,
    cumulative_delta,
    cumulative_delta_series,
    delta,
    delta_series,
    detect_divergences,
    pcr_sentiment,
    percent_change,
    put_call_ratio,
    strike_oi_sense,
)
from tickflow.types import FootprintData, FootprintLevel


@given(st.lists(st.integers(-1000, 1000)))
def test_cumulative_delta_is_running_sum(deltas):
    cds = cumulative_delta(deltas)
    assert len(cds) == len(deltas)
    if deltas:
        assert cds[-1] == sum(deltas)
        assert cds[0] == deltas[0]
    for i in range(1, len(cds)):
        assert cds[i] - cds[i - 1] == deltas[i]


@pytest.mark.parametrize(
    "price, oi, signal, sentiment, strength",
    [
        (1.0, 2.0, LONG_BUILDUP, "bullish", "strong"),
        (-1.0, 2.0, SHORT_BUILDUP, "bearish", "strong"),
        (1.0, -2.0, SHORT_COVERING, "bullish", "weak"),
        (-1.0, -2.0, LONG_UNWINDING, "bearish", "weak"),
        (0.0, 5.0, NEUTRAL, "neutral", "none"),
        (5.0, 0.0, NEUTRAL, "neutral", "none"),
    ],
)
def test_oi_sense_quadrants(price, oi, signal, sentiment, strength):
    result = classify_oi_sense(price, oi)
    assert (result.signal, result.sentiment, result.strength) == (signal, sentiment, strength)


def test_oi_sense_threshold_is_strict():
    assert classify_oi_sense(0.5, 0.5, threshold=0.5).signal == NEUTRAL
    assert classify_oi_sense(0.51, -0.51, threshold=0.5).signal == SHORT_COVERING
    assert classify_oi_sense(-0.51, 0.51, threshold=0.5).label == "Short Buildup"


@given(
    st.floats(-100, 100, allow_nan=False),
    st.floats(-100, 100, allow_nan=False),
    st.floats(0, 10, allow_nan=False),
)
def test_oi_sense_neutral_inside_threshold(price, oi, threshold):
    result = classify_oi_sense(price, oi, threshold)
    if abs(price) <= threshold or abs(oi) <= threshold:
        assert result.signal == NEUTRAL
    else:
        assert result.signal != NEUTRAL


def test_strike_oi_sense_uses_net_call_minus_put():
    assert strike_oi_sense(500, 100, 1.0).signal == LONG_BUILDUP
    assert strike_oi_sense(100, 500, 1.0).signal == SHORT_COVERING


def test_delta_series_from_bars():
    bar = FootprintData(
        time=60_000,
        tick_size=1.0,
        levels={100.0: FootprintLevel(100.0, buy_volume=7, sell_volume=3)},
    )
    assert delta(bar.levels[100.0]) == 4
    assert delta_series([bar]) == [DeltaPoint(time=60_000, delta=4, buy_volume=7, sell_volume=3)]


def test_divergences():
    prices = [100, 101, 102, 103]
    cds = [0, -5, -10, 20]
    assert detect_divergences(prices, cds, window=2) == [None, None, "bearish", None]
    assert detect_divergences([103, 102, 101], [0, 5, 10], window=2) == [None, None, "bullish"]
    assert detect_divergences([1, 2], [0, -1], window=1, min_change=5) == [None, None]
    with pytest.raises(ValueError):
        detect_divergences([1], [1, 2])
    with pytest.raises(ValueError):
        detect_divergences([1], [1], window=0)


def test_cumulative_delta_series_with_closes():
    points = [DeltaPoint(time=i, delta=d) for i, d in enumerate([5, -10, -10])]
    series = cumulative_delta_series(points, closes=[100, 101, 102], window=2)
    assert [p.cumulative_delta for p in series] == [5, -5, -15]
    assert [p.divergence for p in series] == [None, None, "bearish"]
    assert all(p.divergence is None for p in cumulative_delta_series(points))


def test_percent_change_and_pcr():
    assert percent_change(200, 210) == 5.0
    assert percent_change(-100, -90) == 10.0
    assert percent_change(0, 10) == 0.0
    assert put_call_ratio(60, 100) == 0.6
    assert put_call_ratio(10, 0) == 0.0
    assert pcr_sentiment(0.6) == "bullish"
    assert pcr_sentiment(0.7) == "neutral"
    assert pcr_sentiment(1.3) == "neutral"
    assert pcr_sentiment(1.31) == "bearish"
