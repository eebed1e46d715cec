"""
P&L (Profit & Loss) calculation module for portfolio valuation.

This module values holdings against current quotes, aggregates portfolio
totals, and derives trade statistics from the transaction log. Realized P&L
is always carried from the ledger; only unrealized P&L is computed here.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Mapping, Optional

from data.models.holding import Holding
from data.models.ledger_state import LedgerState
from data.models.market_data import PriceQuote
from data.models.transaction import Transaction
from utils.timezone_utils import utc_now
from .calculations import calculate_percentage, estimate_non_liquid_price

logger = logging.getLogger(__name__)

PRICE_SOURCE_ESTIMATE = "estimate"
PRICE_SOURCE_LAST_KNOWN = "last_known"
PRICE_SOURCE_COST = "cost"


@dataclass
class HoldingValuation:
    """Valuation of one holding at a point in time."""
    holding: Holding
    price: Decimal
    market_value: Decimal
    unrealized_pnl: Decimal
    unrealized_pct: Decimal
    is_stale: bool = False
    price_source: str = "unknown"

    @property
    def instrument_id(self) -> str:
        return self.holding.instrument_id

    @property
    def symbol(self) -> str:
        return self.holding.symbol


@dataclass
class PortfolioValuation:
    """Aggregate valuation of all active holdings plus ledger-level figures."""
    rows: list[HoldingValuation] = field(default_factory=list)
    total_invested: Decimal = Decimal('0')
    total_market_value: Decimal = Decimal('0')
    total_unrealized_pnl: Decimal = Decimal('0')
    total_unrealized_pct: Decimal = Decimal('0')
    realized_pnl: Decimal = Decimal('0')
    cash_balance: Optional[Decimal] = None
    total_deposited: Decimal = Decimal('0')
    as_of: Optional[datetime] = None

    @property
    def total_equity(self) -> Decimal:
        """Market value of holdings plus cash (when cash is tracked)."""
        return self.total_market_value + (self.cash_balance or Decimal('0'))

    @property
    def stale_instruments(self) -> list[str]:
        return [row.instrument_id for row in self.rows if row.is_stale]

    @property
    def has_stale_prices(self) -> bool:
        return any(row.is_stale for row in self.rows)


@dataclass
class TradeStats:
    """Statistics over closing trades (active sells)."""
    trades: int = 0
    wins: int = 0
    losses: int = 0
    win_rate: Decimal = Decimal('0')
    max_profit: Decimal = Decimal('0')
    max_loss: Decimal = Decimal('0')
    avg_profit: Decimal = Decimal('0')
    avg_loss: Decimal = Decimal('0')
    realized_gain: Decimal = Decimal('0')
    realized_loss: Decimal = Decimal('0')
    by_symbol: dict[str, Decimal] = field(default_factory=dict)

    @property
    def net_realized(self) -> Decimal:
        return self.realized_gain + self.realized_loss


class PnLCalculator:
    """
    Values holdings and portfolios.

    Liquid holdings are priced from quotes. When no quote is available the
    holding's last known price is used, then its average cost, and the row
    is flagged stale. Non-liquid holdings always use the compound-growth
    estimate.
    """

    def value_holding(self, holding: Holding, quote: Optional[PriceQuote] = None,
                      as_of: Optional[datetime] = None) -> HoldingValuation:
        """
        Value a single holding.

        Args:
            holding: Holding to value
            quote: Current quote for the holding's instrument, if any
            as_of: Valuation time (used by the non-liquid estimate)

        Returns:
            HoldingValuation for the holding
        """
        when = as_of or utc_now()
        is_stale = False

        if holding.is_non_liquid:
            price = estimate_non_liquid_price(holding.average_cost, holding.assumed_annual_growth_pct,
                                              holding.acquired_at, when)
            source = PRICE_SOURCE_ESTIMATE
        elif quote is not None:
            price = quote.price
            source = quote.source
            is_stale = quote.is_stale
        elif holding.last_price is not None:
            price = holding.last_price
            source = PRICE_SOURCE_LAST_KNOWN
            is_stale = True
        else:
            price = holding.average_cost
            source = PRICE_SOURCE_COST
            is_stale = True

        market_value = holding.quantity * price
        unrealized = market_value - holding.total_invested
        return HoldingValuation(
            holding=holding,
            price=price,
            market_value=market_value,
            unrealized_pnl=unrealized,
            unrealized_pct=calculate_percentage(unrealized, holding.total_invested),
            is_stale=is_stale,
            price_source=source,
        )

    def value_portfolio(self, state: LedgerState, quotes: Optional[Mapping[str, PriceQuote]] = None,
                        as_of: Optional[datetime] = None) -> PortfolioValuation:
        """
        Value every active holding of a ledger snapshot.

        Args:
            state: Ledger snapshot
            quotes: Current quotes by instrument id
            as_of: Valuation time

        Returns:
            PortfolioValuation with per-holding rows and totals
        """
        quotes = quotes or {}
        when = as_of or utc_now()
        rows = [self.value_holding(h, quotes.get(h.instrument_id), when) for h in state.holdings]

        total_invested = sum((r.holding.total_invested for r in rows), Decimal('0'))
        total_market = sum((r.market_value for r in rows), Decimal('0'))
        total_unrealized = total_market - total_invested

        valuation = PortfolioValuation(
            rows=rows,
            total_invested=total_invested,
            total_market_value=total_market,
            total_unrealized_pnl=total_unrealized,
            total_unrealized_pct=calculate_percentage(total_unrealized, total_invested),
            realized_pnl=state.realized_pnl,
            cash_balance=state.cash_balance,
            total_deposited=state.total_deposited,
            as_of=when,
        )
        if valuation.has_stale_prices:
            logger.warning(f"Valuation uses fallback prices for: {', '.join(valuation.stale_instruments)}")
        return valuation


def calculate_trade_stats(transactions: Iterable[Transaction]) -> TradeStats:
    """
    Win/loss statistics over active sells.

    A sell with positive realized P&L is a win; anything else (including
    break-even) counts as a loss.
    """
    sells = [t for t in transactions if t.is_sell() and not t.is_reversed]
    stats = TradeStats(trades=len(sells))
    if not sells:
        return stats

    realized = [(t, t.realized_pnl or Decimal('0')) for t in sells]
    wins = [r for _, r in realized if r > 0]
    losses = [r for _, r in realized if r <= 0]

    stats.wins = len(wins)
    stats.losses = len(losses)
    stats.win_rate = Decimal(len(wins)) * 100 / Decimal(len(sells))
    if wins:
        stats.max_profit = max(wins)
        stats.avg_profit = sum(wins, Decimal('0')) / len(wins)
        stats.realized_gain = sum(wins, Decimal('0'))
    if losses:
        stats.max_loss = min(losses)
        stats.avg_loss = sum(losses, Decimal('0')) / len(losses)
        stats.realized_loss = sum(losses, Decimal('0'))

    for tx, value in realized:
        key = tx.symbol or tx.instrument_id or ''
        stats.by_symbol[key] = stats.by_symbol.get(key, Decimal('0')) + value
    return stats


def realized_pnl_series(transactions: Iterable[Transaction]) -> list[tuple[datetime, Decimal]]:
    """
    Cumulative realized P&L after each active sell, in log order.
    """
    sells = sorted((t for t in transactions if t.is_sell() and not t.is_reversed), key=lambda t: t.sort_key)
    series = []
    running = Decimal('0')
    for tx in sells:
        running += tx.realized_pnl or Decimal('0')
        series.append((tx.timestamp, running))
    return series


def allocation_breakdown(valuation: PortfolioValuation) -> list[tuple[str, Decimal, Decimal]]:
    """
    Share of total market value per holding.

    Returns:
        List of (symbol, market_value, percent) sorted by market value, largest first
    """
    total = valuation.total_market_value
    rows = sorted(valuation.rows, key=lambda r: r.market_value, reverse=True)
    return [(r.symbol, r.market_value, calculate_percentage(r.market_value, total)) for r in rows]
