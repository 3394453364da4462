"""Offline analysis commands: classifiers and tick-file replay."""
from __future__ import annotations

import json
from pathlib import Path

import typer

from ...config import settings
from ...connection import tick_from_payload
from ...footprint import FootprintAggregator
from ...power_trades import PowerTradeDetector
from ...signals import (
    classify_oi_sense,
    cumulative_delta_series,
    delta_series,
    pcr_sentiment,
    percent_change,
    put_call_ratio,
)
from ...types import Tick

app = typer.Typer(help="Order-flow analysis utilities")


@app.command("oi-sense")
def oi_sense(
    price_change: float | None = typer.Option(None, "--price-change", help="Price change in percent"),
    oi_change: float | None = typer.Option(None, "--oi-change", help="Open interest change in percent"),
    prev_price: float | None = typer.Option(None, "--prev-price", help="Previous price"),
    price: float | None = typer.Option(None, "--price", help="Current price"),
    prev_oi: float | None = typer.Option(None, "--prev-oi", help="Previous open interest"),
    oi: float | None = typer.Option(None, "--oi", help="Current open interest"),
    threshold: float = typer.Option(
        settings.oi_sense_threshold, "--threshold", help="Minimum move in percent"
    ),
) -> None:
    """Classify a price/open-interest move into its OI-sense quadrant."""

    if price_change is None:
        if prev_price is None or price is None:
            raise typer.BadParameter("give --price-change or both --prev-price and --price")
        price_change = percent_change(prev_price, price)
    if oi_change is None:
        if prev_oi is None or oi is None:
            raise typer.BadParameter("give --oi-change or both --prev-oi and --oi")
        oi_change = percent_change(prev_oi, oi)

    signal = classify_oi_sense(price_change, oi_change, threshold)
    typer.echo(f"{signal.label} ({signal.sentiment}, {signal.strength})")


@app.command("pcr")
def pcr(
    put_oi: float = typer.Option(..., "--put-oi", help="Total put open interest"),
    call_oi: float = typer.Option(..., "--call-oi", help="Total call open interest"),
) -> None:
    """Print the put/call ratio and its sentiment."""

    ratio = put_call_ratio(put_oi, call_oi)
    typer.echo(f"PCR {ratio:.2f} ({pcr_sentiment(ratio)})")


def load_ticks(path: Path) -> tuple[list[Tick], int]:
    """Read one JSON tick payload per line; returns the ticks and the skipped count."""
    ticks: list[Tick] = []
    skipped = 0
    with path.open() as fh:
        for line in fh:
            line = line.strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                skipped += 1
                continue
            tick = tick_from_payload(payload) if isinstance(payload, dict) else None
            if tick is None:
                skipped += 1
            else:
                ticks.append(tick)
    ticks.sort(key=lambda t: t.time)
    return ticks, skipped


@app.command("replay")
def replay(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON lines tick file"),
    bar_interval: int = typer.Option(60, "--bar-interval", help="Bar length in seconds"),
    tick_size: float | None = typer.Option(None, "--tick-size", help="Fixed price bucket size"),
    threshold: float = typer.Option(
        settings.power_trade_volume_threshold, "--threshold", help="Power trade volume threshold"
    ),
    window: int = typer.Option(
        settings.power_trade_window_ms, "--window", help="Power trade window in milliseconds"
    ),
) -> None:
    """Build footprints, cumulative delta and power trades from a tick file."""

    if bar_interval <= 0:
        raise typer.BadParameter("bar interval must be positive")
    ticks, skipped = load_ticks(path)
    if skipped:
        typer.echo(f"skipped {skipped} unusable lines", err=True)
    if not ticks:
        typer.echo("no ticks")
        raise typer.Exit(code=1)

    aggregator = FootprintAggregator(
        tick_size=tick_size,
        imbalance_ratio=settings.footprint_imbalance_ratio,
        value_area_percent=settings.footprint_value_area_percent,
    )
    bar_ms = bar_interval * 1000
    bars = aggregator.footprints_for_range(ticks, ticks[0].time, ticks[-1].time, bar_ms)
    cds = cumulative_delta_series(delta_series(bars))
    for bar, cd in zip(bars, cds):
        imbalances = sum(1 for lvl in bar.levels.values() if lvl.imbalance)
        typer.echo(
            f"{bar.time} poc={bar.poc} vah={bar.vah} val={bar.val} "
            f"delta={bar.delta:g} cd={cd.cumulative_delta:g} imbalances={imbalances}"
        )

    detector = PowerTradeDetector(volume_threshold=threshold, time_window_ms=window)
    for trade in detector.backfill(ticks):
        flag = " HIGH" if detector.is_high_alert(trade) else ""
        typer.echo(f"power trade {trade.time} {trade.side} {trade.volume:g} @ {trade.price:.4f}{flag}")
