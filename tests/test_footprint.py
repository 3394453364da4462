import pytest
from hypothesis import given, strategies as st

from fixtures.ticks import make_tick
from tickflow.footprint import (
    FootprintAggregator,
    aggregate_ticks,
    bar_start,
    compute_poc,
    compute_value_area,
    detect_imbalances,
    get_tick_size,
    round_to_step,
    tick_stats,
)
from tickflow.types import FootprintLevel

STEPS = [0.05, 0.10, 0.25, 0.50, 1.0, 5.0]

rows = st.lists(
    st.tuples(st.integers(0, 40), st.integers(1, 20), st.sampled_from(["buy", "sell"])),
    min_size=1,
    max_size=60,
)


def ticks_from(rows):
    return [
        make_tick(time=i, price=100 + p * 0.25, volume=float(v), side=s)
        for i, (p, v, s) in enumerate(rows)
    ]


def level(price, buy=0.0, sell=0.0):
    return FootprintLevel(price=price, buy_volume=buy, sell_volume=sell)


@pytest.mark.parametrize(
    "price, size",
    [
        (10, 0.05),
        (50, 0.05),
        (249.99, 0.05),
        (250, 0.10),
        (499.99, 0.10),
        (500, 0.25),
        (999.5, 0.25),
        (1000, 0.50),
        (4999.95, 0.50),
        (5000, 1.00),
        (9999, 1.00),
        (10000, 5.00),
        (10000.01, 5.00),
        (75000, 5.00),
    ],
)
def test_tick_size_tiers(price, size):
    assert get_tick_size(price) == size


def test_round_to_step_half_away_from_zero():
    assert round_to_step(100.025, 0.05) == 100.05
    assert round_to_step(100.024, 0.05) == 100.0
    assert round_to_step(-0.025, 0.05) == -0.05
    assert round_to_step(2501.3, 0.5) == 2501.5
    with pytest.raises(ValueError):
        round_to_step(1.0, 0)


@given(st.floats(0.01, 1_000_000, allow_nan=False, allow_infinity=False), st.sampled_from(STEPS))
def test_bucketing_is_idempotent(price, step):
    once = round_to_step(price, step)
    assert round_to_step(once, step) == once
    assert abs(once - price) <= step / 2 + 1e-9


def test_aggregate_splits_sides_and_counts_trades():
    ticks = [
        make_tick(price=100.0, volume=5, side="buy"),
        make_tick(price=100.02, volume=3, side="sell"),
        make_tick(price=100.1, volume=2, side="buy"),
    ]
    levels = aggregate_ticks(ticks, 0.05)
    assert set(levels) == {100.0, 100.1}
    lvl = levels[100.0]
    assert (lvl.buy_volume, lvl.sell_volume, lvl.delta) == (5, 3, 2)
    assert (lvl.trades, lvl.buy_trades, lvl.sell_trades) == (2, 1, 1)


@given(rows)
def test_poc_has_max_volume_and_lowest_price_on_ties(rows):
    levels = aggregate_ticks(ticks_from(rows), 0.5)
    poc = compute_poc(levels)
    best = max(lvl.total_volume for lvl in levels.values())
    assert levels[poc].total_volume == best
    assert all(lvl.total_volume < best or lvl.price >= poc for lvl in levels.values())


def test_poc_tie_goes_to_lower_price():
    assert compute_poc({100.0: level(100.0, buy=5), 101.0: level(101.0, sell=5)}) == 100.0
    assert compute_poc({}) is None


@given(rows)
def test_level_deltas_sum_to_tick_delta(rows):
    ticks = ticks_from(rows)
    levels = aggregate_ticks(ticks, 0.5)
    buy = sum(t.volume for t in ticks if t.side == "buy")
    sell = sum(t.volume for t in ticks if t.side == "sell")
    assert sum(lvl.delta for lvl in levels.values()) == buy - sell
    for lvl in levels.values():
        assert lvl.delta == lvl.buy_volume - lvl.sell_volume


def test_diagonal_buy_and_sell_imbalances():
    levels = {
        99.0: level(99.0, buy=1, sell=2),
        100.0: level(100.0, buy=10, sell=1),
        101.0: level(101.0, buy=1, sell=9),
        102.0: level(102.0, buy=2),
    }
    detect_imbalances(levels, 1.0, 3.0)
    assert levels[100.0].imbalance == "buy"
    assert levels[100.0].imbalance_strength == 5.0
    assert levels[101.0].imbalance == "sell"
    assert levels[101.0].imbalance_strength == 4.5
    assert levels[99.0].imbalance is None


def test_imbalance_falls_back_to_same_level():
    levels = {100.0: level(100.0, buy=10, sell=2)}
    detect_imbalances(levels, 1.0, 3.0)
    assert levels[100.0].imbalance == "buy"


def test_no_imbalance_without_opposite_volume_or_at_exact_ratio():
    levels = {100.0: level(100.0, buy=10), 105.0: level(105.0, buy=6, sell=2)}
    detect_imbalances(levels, 1.0, 3.0)
    assert levels[100.0].imbalance is None
    assert levels[105.0].imbalance is None


def test_stronger_side_wins():
    levels = {
        99.0: level(99.0, sell=1),
        100.0: level(100.0, buy=4, sell=40),
        101.0: level(101.0, buy=2),
    }
    detect_imbalances(levels, 1.0, 3.0)
    # buy 4/1 = 4 against sell 40/2 = 20
    assert levels[100.0].imbalance == "sell"
    assert levels[100.0].imbalance_strength == 20.0


def test_value_area_grows_towards_heavier_side():
    levels = {
        98.0: level(98.0, buy=10),
        99.0: level(99.0, buy=20),
        100.0: level(100.0, buy=40),
        101.0: level(101.0, sell=20),
        102.0: level(102.0, sell=10),
    }
    assert compute_value_area(levels, 100.0, 70) == (101.0, 99.0)
    assert compute_value_area(levels, 100.0, 100) == (102.0, 98.0)
    assert compute_value_area({}, None) == (None, None)


@given(rows)
def test_incremental_update_matches_batch_build(rows):
    ticks = ticks_from(rows)
    agg = FootprintAggregator(tick_size=0.5)
    batch = agg.build(0, ticks)

    live = agg.new_bar(0, ticks[0].price)
    for tick in ticks:
        agg.update(live, tick)
    agg.finalize(live)

    assert live.levels == batch.levels
    assert live.poc == batch.poc
    assert (live.vah, live.val) == (batch.vah, batch.val)


def test_build_resolves_tick_size_from_price():
    agg = FootprintAggregator()
    fp = agg.build(0, [make_tick(price=2500.3, volume=4)])
    assert fp.tick_size == 0.5
    assert list(fp.levels) == [2500.5]
    assert fp.poc == 2500.5
    assert (fp.buy_volume, fp.sell_volume, fp.total_volume, fp.delta) == (4, 0, 4, 4)

    empty = agg.build(0, [])
    assert empty.levels == {} and empty.poc is None and empty.vah is None


def test_footprints_for_range_aligns_bars():
    ticks = [
        make_tick(time=0, price=100.0),
        make_tick(time=30_000, price=100.5, side="sell"),
        make_tick(time=60_000, price=101.0),
        make_tick(time=125_000, price=99.0),
        make_tick(time=200_000, price=99.0),
    ]
    agg = FootprintAggregator(tick_size=0.5)
    bars = agg.footprints_for_range(ticks, 0, 130_000, 60_000)
    assert [b.time for b in bars] == [0, 60_000, 120_000]
    assert bars[0].delta == 0
    assert bar_start(125_000, 60_000) == 120_000
    with pytest.raises(ValueError):
        agg.footprints_for_range(ticks, 0, 1, 0)


def test_tick_stats():
    stats = tick_stats(
        [
            make_tick(price=100.0, volume=2, side="buy"),
            make_tick(price=102.0, volume=2, side="sell"),
        ]
    )
    assert stats.tick_count == 2
    assert (stats.buy_volume, stats.sell_volume, stats.delta) == (2, 2, 0)
    assert stats.avg_price == 101.0
    assert (stats.min_price, stats.max_price) == (100.0, 102.0)
    assert tick_stats([]).tick_count == 0


def test_aggregator_rejects_bad_settings():
    with pytest.raises(ValueError):
        FootprintAggregator(tick_size=0)
    with pytest.raises(ValueError):
        FootprintAggregator(imbalance_ratio=0)
