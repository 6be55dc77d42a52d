"""Prism CLI -- operator control surface for the trading loop.

Commands:
    run          -- Start the trading cycle orchestrator and the sync poller
    status       -- Last committed account snapshot and open positions
    trades       -- Recent trade history from the ledger
    check-close  -- Dry-run a close reason through the validation gate

All commands read settings from ``PRISM_*`` environment variables
(see ``prism.config.settings.Settings.from_env``).
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel

from prism.cli.formatters import (
    format_account_table,
    format_positions_table,
    format_run_banner,
    format_trades_table,
    format_validation_result,
)
from prism.config.settings import Settings
from prism.exchange.base import ExchangeGateway
from prism.store.ledger import Ledger, PositionNotFoundError

app = typer.Typer(
    name="prism",
    help="Prism perpetual futures trading loop CLI",
    rich_markup_mode="rich",
)
console = Console()


def _load_settings(db_path: Optional[str]) -> Settings:
    settings = Settings.from_env()
    if db_path is not None:
        settings = settings.model_copy(update={"db_path": Path(db_path)})
    return settings


def _open_ledger(settings: Settings) -> Ledger:
    path = settings.db_path.expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    return Ledger(path)


def _build_gateway(settings: Settings) -> ExchangeGateway:
    """Live Binance gateway, or a paper exchange priced from Binance public data."""
    from prism.exchange.binance import MAINNET_URL, TESTNET_URL, BinanceFuturesGateway
    from prism.exchange.paper import PaperExchange

    base_url = TESTNET_URL if settings.exchange.testnet else MAINNET_URL
    if settings.exchange.is_live:
        return BinanceFuturesGateway(
            api_key=settings.exchange.api_key,
            api_secret=settings.exchange.api_secret,
            base_url=base_url,
        )
    return PaperExchange(
        initial_balance=settings.exchange.paper_initial_balance,
        market_data=BinanceFuturesGateway(base_url=base_url),
    )


async def _serve(settings: Settings, gateway: ExchangeGateway, once: bool) -> None:
    from prism.agent.actions import ActionExecutor
    from prism.agent.llm.client import LLMDecisionStep
    from prism.execution.account import AccountService
    from prism.execution.market import MarketDataCollector
    from prism.execution.reconciler import PositionReconciler
    from prism.execution.runner import TradingCycleOrchestrator, require_live_confirmation
    from prism.execution.validation import DecisionValidationGate
    from prism.risk.engine import RiskEngine

    cfg = settings.trading
    ledger = _open_ledger(settings)
    reconciler = PositionReconciler(gateway, ledger)
    risk = RiskEngine(reconciler, cfg)
    account = AccountService(gateway, ledger)
    market = MarketDataCollector(gateway, intervals=cfg.kline_intervals, limit=cfg.kline_limit)
    gate = DecisionValidationGate(ledger, min_holding_hours=cfg.min_holding_hours)
    executor = ActionExecutor(reconciler, gate, risk, account, cfg)

    step = LLMDecisionStep(settings.llm, executor)
    orchestrator = TradingCycleOrchestrator(
        reconciler,
        risk,
        account,
        market,
        decision_step=step if step.is_available else None,
        config=cfg,
        live=settings.exchange.is_live,
    )

    try:
        if once:
            if settings.exchange.is_live:
                require_live_confirmation()
            summary = await orchestrator.run_cycle()
            if summary is not None:
                console.print(
                    f"[green]Cycle {summary['iteration']} complete[/green] "
                    f"balance={summary['total_balance']:.2f} "
                    f"positions={len(summary['positions'])}"
                )
            return

        await orchestrator.start()
        reconciler.start_polling(cfg.sync_interval_seconds)
        try:
            await orchestrator.run_forever()
        finally:
            await reconciler.stop_polling()
            await orchestrator.stop()
    finally:
        await gateway.close()
        ledger.close()


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------


@app.command()
def run(
    db_path: Optional[str] = typer.Option(None, help="Ledger SQLite path"),
    once: bool = typer.Option(False, "--once", help="Run a single cycle and exit"),
    yes_i_mean_live: bool = typer.Option(
        False,
        "--yes-i-mean-live",
        help="Required confirmation flag for live trading",
    ),
) -> None:
    """Start the trading loop in the foreground (Ctrl-C to stop)."""
    from prism.execution.runner import CycleStepError
    from prism.risk.rules import AccountBreachError

    settings = _load_settings(db_path)
    mode = settings.exchange.mode

    if settings.exchange.is_live and not yes_i_mean_live:
        console.print(
            Panel(
                "[bold red]DANGER: Live exchange mode configured![/bold red]\n\n"
                "PRISM_EXCHANGE_MODE=live trades real funds on Binance futures.\n"
                "Add [bold]--yes-i-mean-live[/bold] to confirm, and set "
                "[bold]PRISM_LIVE_CONFIRMED=true[/bold].",
                title="Live Mode Warning",
                border_style="red",
            )
        )
        raise typer.Exit(1)

    console.print(
        format_run_banner(
            mode,
            settings.trading.symbols,
            settings.trading.interval_minutes,
            str(settings.db_path),
            settings.llm.model if settings.llm.api_key else None,
        )
    )

    gateway = _build_gateway(settings)
    try:
        asyncio.run(_serve(settings, gateway, once))
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted, trading loop stopped.[/yellow]")
    except AccountBreachError as exc:
        console.print(
            Panel(
                f"[bold red]Account breach ({exc.kind}):[/bold red] {exc}\n"
                "All positions were closed and the loop stopped.",
                title="Trading Stopped",
                border_style="red",
            )
        )
        raise typer.Exit(2)
    except CycleStepError as exc:
        console.print(
            Panel(f"[red]Cycle failed at {exc.step}:[/red] {exc.cause}", title="Cycle", border_style="red")
        )
        raise typer.Exit(1)
    except ValueError as exc:
        console.print(Panel(f"[red]{exc}[/red]", title="Configuration", border_style="red"))
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------


@app.command()
def status(
    db_path: Optional[str] = typer.Option(None, help="Ledger SQLite path"),
) -> None:
    """Show the last committed account snapshot and open positions."""
    settings = _load_settings(db_path)
    try:
        ledger = _open_ledger(settings)
    except Exception as exc:
        console.print(
            Panel(
                f"[red]Could not open ledger:[/red] {exc}",
                title="Status",
                border_style="red",
            )
        )
        return

    snapshot = ledger.latest_snapshot()
    positions = ledger.get_positions()
    orders = ledger.find_active_orders()
    ledger.close()

    console.print(format_account_table(snapshot))
    if positions:
        console.print(format_positions_table(positions, orders))
    else:
        console.print("[dim]No open positions.[/dim]")


# ---------------------------------------------------------------------------
# trades
# ---------------------------------------------------------------------------


@app.command()
def trades(
    db_path: Optional[str] = typer.Option(None, help="Ledger SQLite path"),
    symbol: Optional[str] = typer.Option(None, help="Filter by symbol"),
    limit: int = typer.Option(20, help="Max trades to display"),
) -> None:
    """List recent trades, newest first."""
    settings = _load_settings(db_path)
    ledger = _open_ledger(settings)
    records = ledger.get_trades(limit=limit, symbol=symbol.upper() if symbol else None)
    ledger.close()

    if not records:
        console.print(
            Panel(
                "[dim]No trades found matching the given filters.[/dim]",
                title="Trades",
                border_style="dim",
            )
        )
        return

    console.print(format_trades_table(records))
    console.print(f"\n[dim]{len(records)} trade(s) shown[/dim]")


# ---------------------------------------------------------------------------
# check-close
# ---------------------------------------------------------------------------


@app.command(name="check-close")
def check_close(
    symbol: str = typer.Argument(help="Position symbol, e.g. BTCUSDT"),
    reason: str = typer.Argument(help="Proposed close reason"),
    side: Optional[str] = typer.Option(None, help="long or short, if both are open"),
    db_path: Optional[str] = typer.Option(None, help="Ledger SQLite path"),
) -> None:
    """Dry-run a close reason against the position's stored exit plan."""
    from prism.execution.validation import DecisionValidationGate

    settings = _load_settings(db_path)
    ledger = _open_ledger(settings)
    gate = DecisionValidationGate(ledger, min_holding_hours=settings.trading.min_holding_hours)
    symbol = symbol.upper()
    try:
        result = gate.validate(symbol, reason, side=side.lower() if side else None)
    except PositionNotFoundError as exc:
        console.print(Panel(f"[yellow]{exc}[/yellow]", title="Close Validation", border_style="yellow"))
        raise typer.Exit(1)
    finally:
        ledger.close()

    console.print(format_validation_result(symbol, reason, result))
    if not result.allow:
        raise typer.Exit(1)
