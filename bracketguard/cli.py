"""
CLI entrypoint for bracketguard.

Provides commands to run the service, run a single reconciliation pass,
report positions and place a bracket order.
"""
import asyncio
import json
import signal
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from bracketguard.config.config import DEFAULT_CONFIG_PATH, Config, load_config
from bracketguard.exceptions import BracketGuardError
from bracketguard.monitoring.logger import get_logger, setup_logging

app = typer.Typer(
    name="bracketguard",
    help="Bracket orders and orphaned protective order cleanup for Binance USDⓈ-M futures",
    add_completion=False,
)

logger = get_logger(__name__)


def _load(config_path: Path, log_file: Optional[Path] = None) -> Config:
    config = load_config(str(config_path))
    setup_logging(
        config.monitoring.log_level,
        config.monitoring.log_format,
        str(log_file) if log_file else config.monitoring.log_file,
    )
    return config


def _build_service(config: Config):
    from bracketguard.runtime.service import BracketGuardService

    try:
        return BracketGuardService(config)
    except BracketGuardError as e:
        typer.secho(f"❌ {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)


@app.command()
def run(
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
    with_health: Optional[bool] = typer.Option(None, "--with-health/--no-health", help="Serve /health and /status (default: health.enabled)"),
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="Path to log file"),
):
    """
    Run the reconciler until interrupted (Ctrl+C / SIGTERM).

    Example:
        bracketguard run --config bracketguard/config/config.yaml
    """
    config = _load(config_path, log_file)
    service = _build_service(config)

    if with_health if with_health is not None else config.health.enabled:
        from bracketguard.health import start_health_server

        start_health_server(service, config.health.host, config.health.port)

    async def run_service():
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                pass  # Windows: KeyboardInterrupt still ends asyncio.run
        await service.start()
        try:
            await stop.wait()
        finally:
            logger.info("Shutdown requested")
            await service.stop()

    try:
        asyncio.run(run_service())
    except BracketGuardError as e:
        logger.critical("SERVICE_FAILED", error=str(e), error_type=type(e).__name__, exc_info=True)
        raise typer.Exit(1)


@app.command()
def reconcile(
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
):
    """
    Run one reconciliation pass and print its summary as JSON.
    """
    config = _load(config_path)
    service = _build_service(config)

    async def run_pass():
        try:
            return await service.reconcile_once()
        finally:
            await service.stop()

    summary = asyncio.run(run_pass())
    typer.echo(json.dumps(summary.to_dict(), indent=2))
    if summary.aborted:
        raise typer.Exit(1)


@app.command()
def positions(
    symbol: Optional[str] = typer.Option(None, "--symbol", help="Only this symbol, e.g. BTCUSDT"),
    show_zero: bool = typer.Option(False, "--show-zero", help="Include zero-quantity legs"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON instead of a table"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
):
    """
    Show open positions with margin used, liquidation price and ROE.

    Liquidation prices marked * are local estimates, not exchange figures.
    """
    config = _load(config_path)
    service = _build_service(config)

    async def fetch():
        try:
            return await service.position_report(symbol=symbol, show_zero=show_zero)
        finally:
            await service.stop()

    try:
        reports = asyncio.run(fetch())
    except BracketGuardError as e:
        typer.secho(f"❌ {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    if as_json:
        typer.echo(json.dumps([r.to_dict() for r in reports], indent=2))
        return

    console = Console()
    if not reports:
        console.print("[yellow]No open positions.[/yellow]")
        return

    table = Table(title="Positions")
    for column in ("Symbol", "Dir", "Margin", "Lev", "Qty", "Entry", "Mark", "Liq", "Margin used", "uPnL", "ROE %"):
        table.add_column(column, justify="left" if column in ("Symbol", "Dir", "Margin") else "right")
    for r in reports:
        liquidation = "-" if r.liquidation_price is None else f"{r.liquidation_price}{'*' if r.liquidation_price_is_estimate else ''}"
        pnl_style = "green" if r.unrealized_pnl >= 0 else "red"
        table.add_row(
            r.symbol,
            r.direction,
            r.margin_type,
            str(r.leverage),
            str(r.quantity),
            str(r.entry_price),
            str(r.mark_price),
            liquidation,
            str(r.margin_used),
            f"[{pnl_style}]{r.unrealized_pnl}[/{pnl_style}]",
            f"[{pnl_style}]{r.roe}[/{pnl_style}]",
        )
    console.print(table)


@app.command()
def place(
    symbol: str = typer.Argument(..., help="Symbol, e.g. BTCUSDT"),
    side: str = typer.Argument(..., help="Entry side: BUY (long) or SELL (short)"),
    quantity: str = typer.Argument(..., help="Entry quantity in base units"),
    stop_loss: str = typer.Option(..., "--stop-loss", "--sl", help="Stop-loss trigger price"),
    take_profit: str = typer.Option(..., "--take-profit", "--tp", help="Take-profit trigger price"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
):
    """
    Place a market entry with stop-loss and take-profit in one batch.

    Example:
        bracketguard place BTCUSDT BUY 0.01 --sl 60000 --tp 70000
    """
    config = _load(config_path)
    network = "TESTNET" if config.exchange.use_testnet else "MAINNET"
    if not yes and not typer.confirm(f"Place {side.upper()} {quantity} {symbol.upper()} on {network}?"):
        raise typer.Abort()

    service = _build_service(config)

    async def submit():
        try:
            return await service.place_bracket(symbol, side, quantity, stop_loss, take_profit)
        finally:
            await service.stop()

    try:
        placement = asyncio.run(submit())
    except BracketGuardError as e:
        typer.secho(f"❌ {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    typer.echo(json.dumps(placement.to_dict(), indent=2))
    if not placement.ok:
        typer.secho("⚠️  Bracket not fully placed; see per-leg errors above", fg=typer.colors.YELLOW, err=True)
        raise typer.Exit(2)


def main():
    app()


if __name__ == "__main__":
    main()
