"""Table formatter module for Rich portfolio tables.

Every ``create_*`` method returns a Rich renderable so callers (and tests)
can inspect it; ``show`` prints one to the shared console. Amounts arrive in
the reference currency and are converted to the display currency with the
rate passed in.
"""

from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional

from rich.panel import Panel
from rich.table import Table

from data.models.transaction import Transaction, TransactionType
from financial.currency_handler import format_money, format_quantity
from financial.pnl_calculator import PortfolioValuation, TradeStats, allocation_breakdown
from portfolio.equity_timeline import EquityPoint
from .console_output import _safe_emoji, get_console

STALE_MARKER = "*"


def _pnl_markup(text: str, value: Decimal) -> str:
    if value > 0:
        return f"[green]{text}[/green]"
    if value < 0:
        return f"[red]{text}[/red]"
    return text


def _pct(value: Decimal) -> str:
    sign = "+" if value > 0 else ""
    return f"{sign}{float(value):.2f}%"


def _date(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "N/A"


class TableFormatter:
    """Creates portfolio and transaction tables.

    Args:
        currency: Display currency code
        exchange_rate: Display-currency units per reference-currency unit
    """

    def __init__(self, currency: str = "USD", exchange_rate: Decimal = Decimal('1')):
        self.currency = currency.upper()
        self.exchange_rate = Decimal(str(exchange_rate))
        self.console = get_console()

    def money(self, amount: Optional[Decimal]) -> str:
        """Format a reference-currency amount in the display currency."""
        if amount is None:
            return "N/A"
        return format_money(amount * self.exchange_rate, self.currency)

    def show(self, renderable) -> None:
        self.console.print(renderable)

    def create_holdings_table(self, valuation: PortfolioValuation) -> Table:
        """Holdings with price, market value and unrealized P&L.

        Prices that are not live (cached, last known or cost fallback) are
        marked with an asterisk and explained in the caption.
        """
        table = Table(title=f"{_safe_emoji('📊')} Holdings ({self.currency})", show_header=True,
                      header_style="bold magenta")
        table.add_column("Symbol", style="cyan", no_wrap=True)
        table.add_column("Kind", style="dim")
        table.add_column("Quantity", justify="right", style="bright_white")
        table.add_column("Avg Cost", justify="right")
        table.add_column("Price", justify="right", style="yellow")
        table.add_column("Market Value", justify="right", style="bright_yellow")
        table.add_column("Invested", justify="right")
        table.add_column("Realized P&L", justify="right")
        table.add_column("Unrealized P&L", justify="right")

        for row in valuation.rows:
            price = self.money(row.price)
            if row.is_stale:
                price = f"{price}{STALE_MARKER}"
            elif row.price_source == "estimate":
                price = f"~{price}"
            pnl = f"{self.money(row.unrealized_pnl)} {_pct(row.unrealized_pct)}"
            table.add_row(
                row.symbol,
                row.holding.kind.value,
                format_quantity(row.holding.quantity),
                self.money(row.holding.average_cost),
                price,
                self.money(row.market_value),
                self.money(row.holding.total_invested),
                _pnl_markup(pnl, row.unrealized_pnl),
            )

        notes = []
        if valuation.has_stale_prices:
            notes.append(f"{STALE_MARKER} stale price (live quote unavailable)")
        if any(r.price_source == "estimate" for r in valuation.rows):
            notes.append("~ estimated from assumed annual growth")
        if notes:
            table.caption = "; ".join(notes)
        return table

    def create_summary_panel(self, valuation: PortfolioValuation) -> Panel:
        """Portfolio totals."""
        lines = [
            f"Total invested:   {self.money(valuation.total_invested)}",
            f"Market value:     {self.money(valuation.total_market_value)}",
            "Unrealized P&L:   " + _pnl_markup(
                f"{self.money(valuation.total_unrealized_pnl)} {_pct(valuation.total_unrealized_pct)}",
                valuation.total_unrealized_pnl),
            "Realized P&L:     " + _pnl_markup(self.money(valuation.realized_pnl), valuation.realized_pnl),
            f"Net deposited:    {self.money(valuation.total_deposited)}",
        ]
        if valuation.cash_balance is not None:
            lines.append(f"Cash balance:     {self.money(valuation.cash_balance)}")
        lines.append(f"Total equity:     [bold]{self.money(valuation.total_equity)}[/bold]")
        if valuation.has_stale_prices:
            lines.append(f"[yellow]Stale prices: {', '.join(valuation.stale_instruments)}[/yellow]")
        return Panel("\n".join(lines), title=f"{_safe_emoji('💰')} Portfolio Summary",
                     subtitle=f"as of {_date(valuation.as_of)}", expand=False)

    def create_allocation_table(self, valuation: PortfolioValuation) -> Table:
        table = Table(title="Allocation", show_header=True, header_style="bold magenta")
        table.add_column("Symbol", style="cyan")
        table.add_column("Market Value", justify="right")
        table.add_column("Weight", justify="right", style="bright_blue")
        for symbol, market_value, pct in allocation_breakdown(valuation):
            table.add_row(symbol, self.money(market_value), f"{float(pct):.1f}%")
        return table

    def create_transactions_table(self, transactions: Iterable[Transaction],
                                  include_reversed: bool = False) -> Table:
        """Transaction log, newest first."""
        table = Table(title="Transactions", show_header=True, header_style="bold magenta")
        table.add_column("ID", style="dim", no_wrap=True)
        table.add_column("Time", no_wrap=True)
        table.add_column("Type")
        table.add_column("Symbol", style="cyan")
        table.add_column("Quantity", justify="right")
        table.add_column("Price", justify="right")
        table.add_column("Gross", justify="right")
        table.add_column("Realized P&L", justify="right")
        table.add_column("Note")

        ordered = sorted(transactions, key=lambda t: t.sort_key, reverse=True)
        for tx in ordered:
            if tx.is_reversed and not include_reversed:
                continue
            if tx.type.is_cash_movement:
                quantity = f"{tx.quantity} {tx.currency}"
                price = ""
            else:
                quantity = format_quantity(tx.quantity)
                price = self.money(tx.price_per_unit)
            realized = ""
            if tx.type is TransactionType.SELL and tx.realized_pnl is not None:
                realized = _pnl_markup(self.money(tx.realized_pnl), tx.realized_pnl)
            note = tx.note
            if tx.is_reversed:
                note = f"reversed {_date(tx.reversed_at)}" + (f" ({note})" if note else "")
            table.add_row(
                tx.transaction_id,
                _date(tx.timestamp),
                tx.type.value,
                tx.symbol or "-",
                quantity,
                price,
                self.money(tx.gross_amount),
                realized,
                note,
                style="dim strike" if tx.is_reversed else None,
            )
        return table

    def create_trade_stats_table(self, stats: TradeStats) -> Table:
        """Win/loss statistics and realized P&L per symbol."""
        table = Table(title="Trade Statistics", show_header=False)
        table.add_column("Metric", style="cyan")
        table.add_column("Value", justify="right")
        table.add_row("Closing trades", str(stats.trades))
        table.add_row("Wins / losses", f"{stats.wins} / {stats.losses}")
        table.add_row("Win rate", f"{float(stats.win_rate):.1f}%")
        table.add_row("Max profit", _pnl_markup(self.money(stats.max_profit), stats.max_profit))
        table.add_row("Max loss", _pnl_markup(self.money(stats.max_loss), stats.max_loss))
        table.add_row("Avg profit", self.money(stats.avg_profit))
        table.add_row("Avg loss", self.money(stats.avg_loss))
        table.add_row("Net realized", _pnl_markup(self.money(stats.net_realized), stats.net_realized))
        for symbol, value in sorted(stats.by_symbol.items()):
            table.add_row(f"  {symbol}", _pnl_markup(self.money(value), value))
        return table

    def create_equity_table(self, points: List[EquityPoint]) -> Table:
        """Historical equity series as a table."""
        table = Table(title="Equity History", show_header=True, header_style="bold magenta")
        table.add_column("Time", no_wrap=True)
        table.add_column("Invested", justify="right")
        table.add_column("Market Value", justify="right")
        table.add_column("Cash", justify="right")
        table.add_column("Total Equity", justify="right", style="bold")
        for point in points:
            equity = self.money(point.total_equity)
            if point.is_estimated:
                equity = f"{equity}{STALE_MARKER}"
            table.add_row(
                _date(point.time),
                self.money(point.invested),
                _pnl_markup(self.money(point.realized_pnl), point.realized_pnl),
                self.money(point.market_value),
                self.money(point.cash_balance),
                equity,
            )
        if any(p.is_estimated for p in points):
            table.caption = f"{STALE_MARKER} some prices estimated at cost (no history)"
        return table
