"""
Unit tests for P&L calculator module.

Tests cover holding valuation with live, stale and fallback prices,
portfolio totals and trade statistics.
"""

import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
import sys

# Add the parent directory to the path so we can import the financial modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from data.models.holding import Holding
from data.models.instrument import CryptoInstrument, EquityInstrument, NonLiquidInstrument
from data.models.ledger_state import LedgerState
from data.models.market_data import PriceQuote
from data.models.transaction import Transaction, TransactionType
from financial.pnl_calculator import (
    PRICE_SOURCE_COST,
    PRICE_SOURCE_ESTIMATE,
    PRICE_SOURCE_LAST_KNOWN,
    PnLCalculator,
    allocation_breakdown,
    calculate_trade_stats,
    realized_pnl_series,
)

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
BTC = CryptoInstrument(id='crypto:BTC', display_symbol='BTC', display_name='Bitcoin', coin_id='bitcoin')
AAPL = EquityInstrument(id='equity:AAPL', display_symbol='AAPL', display_name='Apple', ticker='AAPL')
LAND = NonLiquidInstrument(id='nonliquid:LAND', display_symbol='LAND', display_name='Land',
                           assumed_annual_growth_pct=Decimal('5'), acquired_at=T0)


def _sell(tx_id, symbol, realized, hours, reversed_at=None):
    return Transaction(
        transaction_id=tx_id,
        type=TransactionType.SELL,
        instrument_id=f'equity:{symbol}',
        symbol=symbol,
        quantity=1,
        price_per_unit=1,
        gross_amount=1,
        realized_pnl=realized,
        cost_basis=1,
        timestamp=T0 + timedelta(hours=hours),
        sequence=hours,
        reversed_at=reversed_at,
    )


class TestValueHolding(unittest.TestCase):
    """Test single-holding valuation."""

    def setUp(self):
        self.calculator = PnLCalculator()
        self.holding = Holding(instrument=BTC, quantity='0.5', average_cost='30000',
                               total_invested='15000', created_at=T0)

    def test_live_quote(self):
        quote = PriceQuote(instrument_id=BTC.id, price='40000', as_of=T0, source='coingecko')
        row = self.calculator.value_holding(self.holding, quote, T0)
        self.assertEqual(row.market_value, Decimal('20000'))
        self.assertEqual(row.unrealized_pnl, Decimal('5000'))
        self.assertEqual(row.unrealized_pct.quantize(Decimal('0.01')), Decimal('33.33'))
        self.assertFalse(row.is_stale)
        self.assertEqual(row.price_source, 'coingecko')

    def test_stale_quote_is_flagged(self):
        quote = PriceQuote(instrument_id=BTC.id, price='40000', as_of=T0, source='coingecko').as_stale()
        row = self.calculator.value_holding(self.holding, quote, T0)
        self.assertTrue(row.is_stale)
        self.assertEqual(row.market_value, Decimal('20000'))

    def test_last_known_price(self):
        self.holding.last_price = Decimal('28000')
        self.holding.last_price_at = T0
        row = self.calculator.value_holding(self.holding, None, T0)
        self.assertEqual(row.price, Decimal('28000'))
        self.assertEqual(row.unrealized_pnl, Decimal('-1000'))
        self.assertTrue(row.is_stale)
        self.assertEqual(row.price_source, PRICE_SOURCE_LAST_KNOWN)

    def test_average_cost_fallback(self):
        row = self.calculator.value_holding(self.holding, None, T0)
        self.assertEqual(row.price, Decimal('30000'))
        self.assertEqual(row.unrealized_pnl, Decimal('0'))
        self.assertTrue(row.is_stale)
        self.assertEqual(row.price_source, PRICE_SOURCE_COST)

    def test_non_liquid_uses_estimate(self):
        land = Holding(instrument=LAND, quantity=1, average_cost=1000000, total_invested=1000000,
                       created_at=T0)
        quote = PriceQuote(instrument_id=LAND.id, price='1', as_of=T0, source='static')
        row = self.calculator.value_holding(land, quote, T0 + timedelta(days=365.25))
        self.assertEqual(row.price, Decimal('1050000'))
        self.assertEqual(row.unrealized_pnl, Decimal('50000'))
        self.assertFalse(row.is_stale)
        self.assertEqual(row.price_source, PRICE_SOURCE_ESTIMATE)


class TestValuePortfolio(unittest.TestCase):
    """Test portfolio totals."""

    def setUp(self):
        self.state = LedgerState(
            holdings=[
                Holding(instrument=BTC, quantity='0.5', average_cost='30000', total_invested='15000', created_at=T0),
                Holding(instrument=AAPL, quantity='10', average_cost='150', total_invested='1500', created_at=T0),
            ],
            realized_pnl=Decimal('250'),
            cash_balance=Decimal('1000'),
            total_deposited=Decimal('17000'),
        )
        self.quotes = {
            BTC.id: PriceQuote(instrument_id=BTC.id, price='32000', as_of=T0, source='coingecko'),
            AAPL.id: PriceQuote(instrument_id=AAPL.id, price='140', as_of=T0, source='yahoo'),
        }

    def test_totals(self):
        valuation = PnLCalculator().value_portfolio(self.state, self.quotes, T0)
        self.assertEqual(valuation.total_invested, Decimal('16500'))
        self.assertEqual(valuation.total_market_value, Decimal('17400'))
        self.assertEqual(valuation.total_unrealized_pnl, Decimal('900'))
        self.assertEqual(valuation.realized_pnl, Decimal('250'))
        self.assertEqual(valuation.total_equity, Decimal('18400'))
        self.assertFalse(valuation.has_stale_prices)

    def test_missing_quote_marks_stale(self):
        del self.quotes[AAPL.id]
        valuation = PnLCalculator().value_portfolio(self.state, self.quotes, T0)
        self.assertEqual(valuation.stale_instruments, [AAPL.id])
        self.assertEqual(valuation.total_market_value, Decimal('17500'))

    def test_equity_without_cash_tracking(self):
        self.state.cash_balance = None
        valuation = PnLCalculator().value_portfolio(self.state, self.quotes, T0)
        self.assertEqual(valuation.total_equity, valuation.total_market_value)

    def test_empty_portfolio(self):
        valuation = PnLCalculator().value_portfolio(LedgerState(), {}, T0)
        self.assertEqual(valuation.rows, [])
        self.assertEqual(valuation.total_unrealized_pct, Decimal('0'))

    def test_allocation_breakdown(self):
        valuation = PnLCalculator().value_portfolio(self.state, self.quotes, T0)
        allocation = allocation_breakdown(valuation)
        self.assertEqual([symbol for symbol, _, _ in allocation], ['BTC', 'AAPL'])
        total_pct = sum((pct for _, _, pct in allocation), Decimal('0'))
        self.assertAlmostEqual(float(total_pct), 100.0, places=6)


class TestTradeStats(unittest.TestCase):
    """Test statistics over closing trades."""

    def test_no_sells(self):
        stats = calculate_trade_stats([])
        self.assertEqual(stats.trades, 0)
        self.assertEqual(stats.win_rate, Decimal('0'))

    def test_wins_and_losses(self):
        sells = [
            _sell('tx:1', 'AAPL', '100', 1),
            _sell('tx:2', 'AAPL', '-40', 2),
            _sell('tx:3', 'MSFT', '300', 3),
            _sell('tx:4', 'MSFT', '0', 4),
            _sell('tx:5', 'MSFT', '999', 5, reversed_at=T0),
        ]
        stats = calculate_trade_stats(sells)
        self.assertEqual(stats.trades, 4)
        self.assertEqual(stats.wins, 2)
        # Break-even counts as a loss
        self.assertEqual(stats.losses, 2)
        self.assertEqual(stats.win_rate, Decimal('50'))
        self.assertEqual(stats.max_profit, Decimal('300'))
        self.assertEqual(stats.max_loss, Decimal('-40'))
        self.assertEqual(stats.avg_profit, Decimal('200'))
        self.assertEqual(stats.avg_loss, Decimal('-20'))
        self.assertEqual(stats.net_realized, Decimal('360'))
        self.assertEqual(stats.by_symbol, {'AAPL': Decimal('60'), 'MSFT': Decimal('300')})

    def test_realized_series_is_cumulative(self):
        sells = [
            _sell('tx:2', 'AAPL', '-40', 2),
            _sell('tx:1', 'AAPL', '100', 1),
            _sell('tx:3', 'MSFT', '5', 3, reversed_at=T0),
        ]
        series = realized_pnl_series(sells)
        self.assertEqual(series, [
            (T0 + timedelta(hours=1), Decimal('100')),
            (T0 + timedelta(hours=2), Decimal('60')),
        ])


if __name__ == '__main__':
    unittest.main()
