import pytest

from fixtures.ticks import make_tick
from fixtures.ws import FakeConnection, tick_msg
from tickflow.config import Settings
from tickflow.engine import OrderFlowEngine
from tickflow.footprint import FootprintAggregator
from tickflow.power_trades import PowerTradeDetector
from tickflow.series import DeltaSeries
from tickflow.service import TickDataService

TICKS = [
    make_tick(time=0, price=100.0, volume=5, side="buy"),
    make_tick(time=30_000, price=101.0, volume=2, side="sell"),
    make_tick(time=60_000, price=100.0, volume=1, side="buy"),
    make_tick(time=61_000, price=99.0, volume=4, side="sell"),
    make_tick(time=125_000, price=102.0, volume=3, side="buy"),
    make_tick(time=130_000, price=102.0, volume=1, side="buy"),
]


def make_engine(service=None, **kwargs):
    service = service or TickDataService(FakeConnection())
    kwargs.setdefault("aggregator", FootprintAggregator(tick_size=1.0))
    kwargs.setdefault("detector", PowerTradeDetector(clock=lambda: 0, volume_threshold=1_000))
    return OrderFlowEngine(service, "NIFTY", "NSE", **kwargs)


def test_ticks_roll_into_bars():
    engine = make_engine()
    for tick in TICKS:
        engine.on_tick(tick)

    assert [b.time for b in engine.footprints.data()] == [0, 60_000, 120_000]
    assert [(p.time, p.delta) for p in engine.deltas.data()] == [(0, 3), (60_000, -3), (120_000, 4)]
    assert [p.cumulative_delta for p in engine.cumulative.data()] == [3, 0, 4]
    assert engine.current_bar.time == 120_000
    assert engine.current_bar.poc == 102.0


def test_live_bars_match_batch_build():
    engine = make_engine()
    for tick in TICKS:
        engine.on_tick(tick)
    batch = FootprintAggregator(tick_size=1.0).footprints_for_range(TICKS, 0, 200_000, 60_000)

    live = engine.footprints.data()
    assert [b.levels for b in live] == [b.levels for b in batch]
    assert [b.poc for b in live] == [b.poc for b in batch]
    # completed bars carry their value area
    assert (live[0].vah, live[0].val) == (batch[0].vah, batch[0].val)


def test_late_tick_leaves_footprint_alone():
    engine = make_engine(detector=PowerTradeDetector(clock=lambda: 0, volume_threshold=10))
    for tick in TICKS[:3]:
        engine.on_tick(tick)
    before = [(p.time, p.delta) for p in engine.deltas.data()]

    engine.on_tick(make_tick(time=1_000, price=100.0, volume=9, side="sell"))

    assert [(p.time, p.delta) for p in engine.deltas.data()] == before
    assert engine.footprints.data()[0].sell_volume == 2
    # the detector still saw it
    assert len(engine.detector) == 1


def test_bearish_divergence_on_live_bars():
    engine = make_engine(bar_interval_ms=1_000, deltas=DeltaSeries(divergence_window=2))
    for i, price in enumerate([100.0, 101.0, 102.0]):
        engine.on_tick(make_tick(time=i * 1_000, price=price, volume=5, side="sell"))

    points = engine.cumulative.data()
    assert [p.cumulative_delta for p in points] == [-5, -10, -15]
    assert [p.divergence for p in points] == [None, None, "bearish"]


def test_divergences_can_be_switched_off():
    engine = make_engine(
        bar_interval_ms=1_000,
        deltas=DeltaSeries(divergence_window=2, show_divergences=False),
    )
    for i, price in enumerate([100.0, 101.0, 102.0]):
        engine.on_tick(make_tick(time=i * 1_000, price=price, volume=5, side="sell"))
    assert all(p.divergence is None for p in engine.cumulative.data())


def test_power_trades_are_detected_live():
    engine = make_engine(detector=PowerTradeDetector(clock=lambda: 0, volume_threshold=10))
    engine.on_tick(make_tick(time=0, volume=4))
    engine.on_tick(make_tick(time=1, volume=6, side="sell"))
    [trade] = engine.detector.get_power_trades()
    assert trade.volume == 10
    assert trade.side == "sell"


def test_history_then_live_matches_all_live():
    service = TickDataService(FakeConnection())
    for tick in TICKS[:-1]:
        service.store.add_tick("NIFTY:NSE", tick)

    engine = make_engine(service)
    bars = engine.load_history(0, 200_000)
    assert [b.time for b in bars] == [0, 60_000, 120_000]
    engine.on_tick(TICKS[-1])

    reference = make_engine()
    for tick in TICKS:
        reference.on_tick(tick)

    assert engine.deltas.data() == reference.deltas.data()
    assert engine.cumulative.data() == reference.cumulative.data()
    assert engine.footprints.data()[-1].levels == reference.footprints.data()[-1].levels


def test_history_backfills_power_trades():
    service = TickDataService(FakeConnection())
    for tick in TICKS:
        service.store.add_tick("NIFTY:NSE", tick)
    engine = make_engine(
        service, detector=PowerTradeDetector(volume_threshold=5, time_window_ms=60_000)
    )
    engine.load_history(0, 200_000)
    assert [p.time for p in engine.detector.get_power_trades()] == [0, 61_000]


def test_history_outside_range_is_empty():
    engine = make_engine()
    assert engine.load_history(0, 1_000) == []
    assert engine.current_bar is None
    assert engine.footprints.data() == []


@pytest.mark.asyncio
async def test_start_and_stop_follow_subscription():
    conn = FakeConnection()
    engine = make_engine(TickDataService(conn))

    await engine.start()
    await engine.start()
    assert engine.running
    assert [e[0] for e in conn.events] == ["subscribe"]

    conn.deliver(tick_msg("NIFTY", 100.0, volume=2, time=5_000))
    assert engine.current_bar.time == 0
    assert engine.deltas.data()[-1].delta == 2

    await engine.stop()
    assert not engine.running
    assert conn.events[-1] == ("close", 0)
    conn.deliver(tick_msg("NIFTY", 100.0, volume=2, time=6_000))
    assert engine.deltas.data()[-1].delta == 2


def test_from_settings():
    cfg = Settings(bar_interval_ms=5_000, power_trade_volume_threshold=42, footprint_max_bars=7)
    engine = OrderFlowEngine.from_settings(TickDataService(FakeConnection()), "NIFTY", cfg=cfg)
    assert engine.bar_interval_ms == 5_000
    assert engine.exchange == "NSE"
    assert engine.detector.options().volume_threshold == 42
    assert engine.footprints.options().max_bars_to_show == 7


def test_rejects_bad_interval():
    with pytest.raises(ValueError):
        make_engine(bar_interval_ms=0)
