"""Rich output formatters for the Prism CLI.

Each function accepts plain data and returns a Rich renderable (Table,
Panel, etc.).  The caller is responsible for printing via
``console.print()``.  This separation keeps the formatters testable
without capturing stdout.
"""

from __future__ import annotations

from datetime import datetime

from rich.panel import Panel
from rich.table import Table

from prism.execution.validation import ValidationResult
from prism.store.models import AccountSnapshot, Order, Position, Trade


def _ts(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value is not None else "-"


def _pnl(value: float, fmt: str = "{:+.2f}") -> str:
    color = "green" if value > 0 else "red" if value < 0 else "white"
    return f"[{color}]{fmt.format(value)}[/{color}]"


def format_account_table(snapshot: AccountSnapshot | None) -> Table:
    """Build a Rich Table with the last committed account snapshot.

    Parameters
    ----------
    snapshot : AccountSnapshot | None
        Output of ``Ledger.latest_snapshot()``, or None on an empty ledger.
    """
    table = Table(title="Prism Account", show_lines=True)
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_column("Status", justify="center")

    if snapshot is None:
        table.add_row("Snapshot", "None", "[yellow]NO DATA[/yellow]")
        return table

    m = snapshot.metrics
    table.add_row("Iteration", str(snapshot.iteration), "")
    table.add_row("Recorded", _ts(snapshot.recorded_at), "")
    table.add_row("Total Balance", f"{m.total_balance:.2f}", "")
    table.add_row("Available", f"{m.available:.2f}", "")
    table.add_row("Unrealized PnL", _pnl(m.unrealized_pnl), "")
    table.add_row("Initial Balance", f"{m.initial_balance:.2f}", "")
    table.add_row("Peak Balance", f"{m.peak_balance:.2f}", "")
    table.add_row("Return", _pnl(m.return_percent, "{:+.2f}%"), "")

    dd = m.drawdown_from_peak
    status = (
        "[green]OK[/green]" if dd < 10
        else "[yellow]WATCH[/yellow]" if dd < 15
        else "[red]ALERT[/red]"
    )
    table.add_row("Drawdown (peak)", f"{dd:.2f}%", status)
    table.add_row("Drawdown (initial)", f"{m.drawdown_from_initial:.2f}%", "")

    sharpe = m.sharpe_ratio
    status = (
        "[green]OK[/green]" if sharpe > 0.5
        else "[yellow]WATCH[/yellow]" if sharpe > 0
        else "[red]ALERT[/red]"
    )
    table.add_row("Sharpe Ratio", f"{sharpe:.3f}", status)
    return table


def format_positions_table(
    positions: list[Position],
    orders: list[Order] | None = None,
) -> Table:
    """Render open positions with their active protective orders.

    Parameters
    ----------
    positions : list[Position]
        Rows from ``Ledger.get_positions()``.
    orders : list[Order] | None
        Active orders; trigger prices are shown next to their position.
    """
    by_position: dict[str, list[Order]] = {}
    for order in orders or []:
        by_position.setdefault(order.position_id, []).append(order)

    table = Table(title="Open Positions", show_lines=True)
    table.add_column("Symbol", style="bold")
    table.add_column("Side", justify="center")
    table.add_column("Qty", justify="right")
    table.add_column("Entry", justify="right")
    table.add_column("Mark", justify="right")
    table.add_column("Lev", justify="right")
    table.add_column("PnL", justify="right")
    table.add_column("PnL %", justify="right")
    table.add_column("Peak %", justify="right")
    table.add_column("Held", justify="right")
    table.add_column("SL / TP", justify="right")

    for p in positions:
        side = "[green]LONG[/green]" if p.side.value == "long" else "[red]SHORT[/red]"
        triggers = " / ".join(
            f"{o.order_type.value[0].upper()}{o.trigger_price:g}"
            for o in by_position.get(p.id, [])
        )
        table.add_row(
            p.symbol,
            side,
            f"{p.quantity:g}",
            f"{p.entry_price:.2f}",
            f"{p.current_price:.2f}",
            f"{p.leverage}x",
            _pnl(p.unrealized_pnl),
            _pnl(p.pnl_percent(), "{:+.2f}%"),
            f"{p.peak_pnl_percent:.2f}%",
            f"{p.holding_hours():.1f}h",
            triggers or "-",
        )
    return table


def format_trades_table(trades: list[Trade]) -> Table:
    """Render trade records as a Rich Table.

    Parameters
    ----------
    trades : list[Trade]
        Rows from ``Ledger.get_trades()`` (newest first).
    """
    table = Table(title="Trades", show_lines=True)
    table.add_column("Time", style="cyan")
    table.add_column("Symbol", style="bold")
    table.add_column("Type", justify="center")
    table.add_column("Side", justify="center")
    table.add_column("Price", justify="right")
    table.add_column("Qty", justify="right")
    table.add_column("Fee", justify="right")
    table.add_column("PnL", justify="right")
    table.add_column("Reason")

    for t in trades:
        kind = (
            "[blue]OPEN[/blue]" if t.trade_type.value == "open"
            else "[magenta]CLOSE[/magenta]"
        )
        reason = t.reason if len(t.reason) <= 40 else t.reason[:37] + "..."
        table.add_row(
            _ts(t.executed_at),
            t.symbol,
            kind,
            t.side.value.upper(),
            f"{t.price:.2f}",
            f"{t.quantity:g}",
            f"{t.fee:.4f}",
            _pnl(t.pnl) if t.trade_type.value == "close" else "-",
            reason,
        )
    return table


def format_validation_result(
    symbol: str,
    reason: str,
    result: ValidationResult,
) -> Panel:
    """Render a close-validation outcome as a Rich Panel."""
    plan = ", ".join(t.value for t in result.plan_types) or "none"
    matched = ", ".join(t.value for t in result.reason_types) or "none"
    lines = [
        f"  Symbol:        {symbol}",
        f"  Reason:        {reason}",
        f"  Plan types:    {plan}",
        f"  Reason types:  {matched}",
        "",
    ]
    if result.allow:
        lines.append("[bold green]ALLOWED[/bold green]")
        lines.append(f"  {result.message}")
        border = "green"
    else:
        lines.append(f"[bold red]REJECTED[/bold red] ({result.code})")
        lines.append(f"  {result.message}")
        border = "red"
    return Panel("\n".join(lines), title="Close Validation (dry run)", border_style=border)


def format_run_banner(
    mode: str,
    symbols: list[str],
    interval_minutes: int,
    db_path: str,
    llm_model: str | None,
) -> Panel:
    """Startup banner for ``prism run``."""
    color = "red" if mode == "live" else "green"
    return Panel(
        f"[bold {color}]{mode.upper()} TRADING[/bold {color}]\n\n"
        f"  Symbols:    {', '.join(symbols)}\n"
        f"  Interval:   every {interval_minutes} min\n"
        f"  Ledger:     {db_path}\n"
        f"  Decisions:  {llm_model or '[yellow]disabled (no LLM key)[/yellow]'}",
        title=f"Prism ({mode.upper()})",
        border_style=color,
    )
