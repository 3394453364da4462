"""Live streaming CLI commands."""
from __future__ import annotations

import asyncio

import typer
from prometheus_client import start_http_server

from ...config import settings
from ...connection import WSMode
from ...engine import OrderFlowEngine
from ...logging_conf import setup_logging
from ...service import TickDataService

app = typer.Typer(help="Live tick streaming")


def _parse_mode(value: str) -> WSMode:
    try:
        return WSMode[value.upper()]
    except KeyError:
        raise typer.BadParameter("mode must be one of: ltp, quote, tick") from None


def summarize(engine: OrderFlowEngine) -> list[str]:
    stats = engine.service.tick_stats(engine.symbol, engine.exchange)
    lines = [
        f"{engine.symbol}:{engine.exchange} ticks={stats.tick_count} "
        f"buy={stats.buy_volume:g} sell={stats.sell_volume:g} delta={stats.delta:g} "
        f"vwap={stats.avg_price:.4f}",
        f"bars={len(engine.footprints)}",
    ]
    bar = engine.current_bar
    if bar is not None:
        imbalances = sum(1 for lvl in bar.levels.values() if lvl.imbalance)
        lines.append(
            f"last bar {bar.time}: poc={bar.poc} delta={bar.delta:g} "
            f"levels={len(bar.levels)} imbalances={imbalances}"
        )
    cds = engine.cumulative.data()
    if cds:
        lines.append(f"cumulative delta={cds[-1].cumulative_delta:g}")
    trades = engine.detector.get_power_trades()
    lines.append(f"power trades={len(trades)}")
    for trade in engine.detector.get_recent_power_trades(5):
        flag = " HIGH" if engine.detector.is_high_alert(trade) else ""
        lines.append(f"  {trade.time} {trade.side} {trade.volume:g} @ {trade.price:.4f}{flag}")
    return lines


async def _watch(
    symbol: str, exchange: str, mode: WSMode, duration: float, bar_interval_ms: int
) -> OrderFlowEngine:
    cfg = settings.model_copy(update={"bar_interval_ms": bar_interval_ms})
    service = TickDataService.from_settings(cfg)
    engine = OrderFlowEngine.from_settings(service, symbol, exchange, cfg)

    def _echo_power_trade() -> None:
        recent = engine.detector.get_recent_power_trades(1)
        if recent:
            trade = recent[0]
            typer.echo(f"power trade {trade.side} {trade.volume:g} @ {trade.price:.4f}")

    engine.detector.attach(_echo_power_trade)
    await engine.start(mode)
    try:
        if duration > 0:
            await asyncio.sleep(duration)
        else:
            await asyncio.Event().wait()
    finally:
        engine.detector.detach()
        await engine.stop()
        await service.close_all()
    return engine


@app.command("watch")
def watch(
    symbol: str = typer.Argument(..., help="Trading symbol"),
    exchange: str = typer.Option(settings.default_exchange, "--exchange", help="Exchange code"),
    mode: str = typer.Option("tick", "--mode", help="Subscription mode: ltp, quote or tick"),
    duration: float = typer.Option(
        0.0, "--duration", help="Seconds to stream (0 runs until interrupted)"
    ),
    bar_interval: int = typer.Option(
        settings.bar_interval_ms // 1000, "--bar-interval", help="Footprint bar length in seconds"
    ),
    metrics_port: int = typer.Option(0, "--metrics-port", help="Expose Prometheus metrics on this port"),
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level (e.g., INFO, DEBUG)"),
) -> None:
    """Stream ticks for SYMBOL and print an order-flow summary on exit."""

    setup_logging(level=log_level)
    ws_mode = _parse_mode(mode)
    if bar_interval <= 0:
        raise typer.BadParameter("bar interval must be positive")
    if metrics_port:
        start_http_server(metrics_port)

    try:
        engine = asyncio.run(_watch(symbol, exchange, ws_mode, duration, bar_interval * 1000))
    except KeyboardInterrupt:
        typer.echo("interrupted")
        raise typer.Exit(code=130)
    for line in summarize(engine):
        typer.echo(line)
