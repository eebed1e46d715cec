"""
Tests for the ledger aggregate.

Covers weighted-average buys and sells, reversal, cash tracking, strong
exception safety and persistence failures.
"""

import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).parent.parent))

from data.models.instrument import CryptoInstrument, EquityInstrument, NonLiquidInstrument
from data.models.transaction import TransactionType
from data.repositories.base_repository import PersistenceError
from data.repositories.memory_repository import InMemoryRepository
from portfolio.ledger import (
    AlreadyReversedError,
    HoldingNotFoundError,
    InsufficientBalanceError,
    InsufficientQuantityError,
    InvalidArgumentError,
    Ledger,
    TransactionNotFoundError,
)

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
X = EquityInstrument(id='equity:X', display_symbol='X', display_name='X Corp', ticker='X')
BTC = CryptoInstrument(id='crypto:BTC', display_symbol='BTC', display_name='Bitcoin', coin_id='bitcoin')


def at(hours: int) -> datetime:
    return T0 + timedelta(hours=hours)


class TestWeightedAverageScenarios(unittest.TestCase):
    """Buy/sell/reverse walk-through without cash tracking."""

    def setUp(self):
        self.ledger = Ledger(track_cash=False)

    def _scenario_a(self):
        self.ledger.buy(X, 10, 100, timestamp=at(1))
        self.ledger.buy(X, 10, 200, timestamp=at(2))

    def test_scenario_a_buys_blend_cost(self):
        self.ledger.buy(X, 10, 100, timestamp=at(1))
        holding = self.ledger.get_holding(X.id)
        self.assertEqual((holding.quantity, holding.average_cost, holding.total_invested),
                         (Decimal('10'), Decimal('100'), Decimal('1000')))

        self.ledger.buy(X, 10, 200, timestamp=at(2))
        holding = self.ledger.get_holding(X.id)
        self.assertEqual(holding.quantity, Decimal('20'))
        self.assertEqual(holding.average_cost, Decimal('150'))
        self.assertEqual(holding.total_invested, Decimal('3000'))

    def test_scenario_b_partial_sell(self):
        self._scenario_a()
        tx = self.ledger.sell(X.id, 5, 300, timestamp=at(3))

        self.assertEqual(tx.gross_amount, Decimal('1500'))
        self.assertEqual(tx.cost_basis, Decimal('750'))
        self.assertEqual(tx.realized_pnl, Decimal('750'))
        holding = self.ledger.get_holding(X.id)
        self.assertEqual(holding.quantity, Decimal('15'))
        self.assertEqual(holding.average_cost, Decimal('150'))
        self.assertEqual(holding.total_invested, Decimal('2250'))
        self.assertEqual(self.ledger.realized_pnl, Decimal('750'))

    def test_scenario_c_full_sell_removes_holding(self):
        self._scenario_a()
        self.ledger.sell(X.id, 5, 300, timestamp=at(3))
        tx = self.ledger.sell(X.id, 15, 150, timestamp=at(4))

        self.assertEqual(tx.realized_pnl, Decimal('0'))
        self.assertIsNone(self.ledger.get_holding(X.id))
        self.assertEqual(self.ledger.holdings, [])
        self.assertEqual(self.ledger.realized_pnl, Decimal('750'))
        # The instrument stays registered so the sell can still be reversed
        self.assertIn(X.id, self.ledger.instruments)

    def test_scenario_d_reverse_sell_restores_holding(self):
        self._scenario_a()
        sell = self.ledger.sell(X.id, 5, 300, timestamp=at(3))
        reversed_tx = self.ledger.reverse_transaction(sell.transaction_id)

        self.assertTrue(reversed_tx.is_reversed)
        holding = self.ledger.get_holding(X.id)
        self.assertEqual(holding.quantity, Decimal('20'))
        self.assertEqual(holding.average_cost, Decimal('150'))
        self.assertEqual(holding.total_invested, Decimal('3000'))
        self.assertEqual(self.ledger.realized_pnl, Decimal('0'))
        # Reversal keeps the record
        self.assertEqual(len(self.ledger.all_transactions), 3)
        self.assertEqual(len(self.ledger.transactions), 2)

    def test_reverse_full_sell_recreates_holding(self):
        self._scenario_a()
        sell = self.ledger.sell(X.id, 20, 100, timestamp=at(3))
        self.assertIsNone(self.ledger.get_holding(X.id))

        self.ledger.reverse_transaction(sell.transaction_id)
        holding = self.ledger.get_holding(X.id)
        self.assertEqual(holding.quantity, Decimal('20'))
        self.assertEqual(holding.total_invested, Decimal('3000'))
        self.assertEqual(self.ledger.realized_pnl, Decimal('0'))

    def test_reverse_latest_buy_restores_previous_holding(self):
        self.ledger.buy(X, 10, 100, timestamp=at(1))
        second = self.ledger.buy(X, 10, 200, timestamp=at(2))
        self.ledger.reverse_transaction(second.transaction_id)

        holding = self.ledger.get_holding(X.id)
        self.assertEqual(holding.quantity, Decimal('10'))
        self.assertEqual(holding.average_cost, Decimal('100'))
        self.assertEqual(holding.total_invested, Decimal('1000'))

    def test_reverse_only_buy_removes_holding(self):
        buy = self.ledger.buy(BTC, '0.5', 30000, timestamp=at(1))
        self.ledger.reverse_transaction(buy.transaction_id)
        self.assertIsNone(self.ledger.get_holding(BTC.id))

    def test_sell_keeps_average_cost(self):
        self.ledger.buy(BTC, '0.3', '31000', timestamp=at(1))
        self.ledger.buy(BTC, '0.2', '29000.5', timestamp=at(2))
        before = self.ledger.get_holding(BTC.id).average_cost
        self.ledger.sell(BTC.id, '0.15', '35000', timestamp=at(3))
        self.assertEqual(self.ledger.get_holding(BTC.id).average_cost, before)

    def test_liquidate_uses_last_price(self):
        self.ledger.buy(X, 4, 50, timestamp=at(1))
        self.ledger.record_price(X.id, 60, at(2))
        tx = self.ledger.liquidate(X.id, timestamp=at(3))
        self.assertEqual(tx.price_per_unit, Decimal('60'))
        self.assertEqual(tx.realized_pnl, Decimal('40'))
        self.assertEqual(tx.note, 'liquidated')
        self.assertIsNone(self.ledger.get_holding(X.id))

    def test_liquidate_without_price_uses_cost(self):
        self.ledger.buy(X, 4, 50, timestamp=at(1))
        tx = self.ledger.liquidate(X.id, timestamp=at(3))
        self.assertEqual(tx.realized_pnl, Decimal('0'))

    def test_liquidate_written_off_non_liquid(self):
        land = NonLiquidInstrument(id='nonliquid:LAND', display_symbol='LAND', display_name='Land',
                                   assumed_annual_growth_pct=Decimal('-100'))
        self.ledger.buy(land, 2, 500, timestamp=T0)
        tx = self.ledger.liquidate(land.id, timestamp=T0 + timedelta(days=365))

        self.assertEqual(tx.price_per_unit, Decimal('0'))
        self.assertEqual(tx.gross_amount, Decimal('0'))
        self.assertEqual(tx.realized_pnl, Decimal('-1000'))
        self.assertIsNone(self.ledger.get_holding(land.id))
        self.assertEqual(self.ledger.realized_pnl, Decimal('-1000'))

        self.ledger.reverse_transaction(tx.transaction_id)
        holding = self.ledger.get_holding(land.id)
        self.assertEqual((holding.quantity, holding.average_cost), (Decimal('2'), Decimal('500')))
        self.assertEqual(self.ledger.realized_pnl, Decimal('0'))

    def test_explicit_zero_price_still_rejected(self):
        self.ledger.buy(X, 4, 50, timestamp=at(1))
        with self.assertRaises(InvalidArgumentError):
            self.ledger.liquidate(X.id, price_per_unit=0, timestamp=at(2))
        with self.assertRaises(InvalidArgumentError):
            self.ledger.sell(X.id, 4, 0, timestamp=at(2))

    def test_non_liquid_buy_sets_acquired_at(self):
        land = NonLiquidInstrument(id='nonliquid:LAND', display_symbol='LAND', display_name='Land',
                                   assumed_annual_growth_pct=Decimal('5'))
        self.ledger.buy(land, 1, 1000000, timestamp=at(5))
        self.assertEqual(self.ledger.get_holding(land.id).acquired_at, at(5))

    def test_kind_conflict_rejected(self):
        self.ledger.buy(X, 1, 10, timestamp=at(1))
        impostor = CryptoInstrument(id=X.id, display_symbol='X', display_name='X coin', coin_id='x')
        with self.assertRaises(InvalidArgumentError):
            self.ledger.buy(impostor, 1, 10)

    def test_record_price_ignores_older_quotes(self):
        self.ledger.buy(X, 1, 10, timestamp=at(1))
        self.assertTrue(self.ledger.record_price(X.id, 12, at(5)))
        self.assertFalse(self.ledger.record_price(X.id, 11, at(4)))
        self.assertEqual(self.ledger.get_holding(X.id).last_price, Decimal('12'))


class TestRejectedOperations(unittest.TestCase):
    """Rejected operations leave the ledger untouched."""

    def setUp(self):
        self.repository = InMemoryRepository()
        self.ledger = Ledger(self.repository, track_cash=True)
        self.ledger.deposit(5000, timestamp=at(0))
        self.ledger.buy(X, 10, 100, timestamp=at(1))
        self.before = self.ledger.snapshot()
        self.saves = self.repository.save_count

    def assertUnchanged(self):
        self.assertEqual(self.ledger.snapshot(), self.before)
        self.assertEqual(self.repository.save_count, self.saves)

    def test_invalid_quantity_and_price(self):
        for quantity, price in ((0, 10), (-1, 10), (1, 0), (1, -5), ('abc', 10), (1, float('nan'))):
            with self.subTest(quantity=quantity, price=price):
                with self.assertRaises(InvalidArgumentError):
                    self.ledger.buy(X, quantity, price)
                self.assertUnchanged()

    def test_oversell(self):
        with self.assertRaises(InsufficientQuantityError):
            self.ledger.sell(X.id, 11, 100)
        self.assertUnchanged()

    def test_sell_unknown_holding(self):
        with self.assertRaises(HoldingNotFoundError):
            self.ledger.sell(BTC.id, 1, 100)
        self.assertUnchanged()

    def test_buy_beyond_cash(self):
        with self.assertRaises(InsufficientBalanceError):
            self.ledger.buy(BTC, 1, 4001)
        self.assertUnchanged()

    def test_invalid_timestamp(self):
        with self.assertRaises(InvalidArgumentError):
            self.ledger.buy(X, 1, 10, timestamp='not a date')
        self.assertUnchanged()

    def test_double_reversal(self):
        sell = self.ledger.sell(X.id, 2, 120, timestamp=at(2))
        self.ledger.reverse_transaction(sell.transaction_id)
        before = self.ledger.snapshot()
        with self.assertRaises(AlreadyReversedError):
            self.ledger.reverse_transaction(sell.transaction_id)
        self.assertEqual(self.ledger.snapshot(), before)

    def test_sell_dated_before_latest_trade(self):
        with self.assertRaises(InvalidArgumentError):
            self.ledger.sell(X.id, 5, 120, timestamp=at(0))
        self.assertUnchanged()

    def test_buy_dated_before_latest_trade(self):
        self.ledger.sell(X.id, 4, 120, timestamp=at(3))
        before = self.ledger.snapshot()
        with self.assertRaises(InvalidArgumentError):
            self.ledger.buy(X, 1, 100, timestamp=at(2))
        self.assertEqual(self.ledger.snapshot(), before)

    def test_trade_time_is_per_instrument(self):
        self.ledger.buy(BTC, 1, 100, timestamp=at(0))
        self.assertEqual(self.ledger.get_holding(BTC.id).quantity, Decimal('1'))

    def test_reversed_trade_does_not_block_earlier_dates(self):
        late = self.ledger.buy(X, 1, 100, timestamp=at(10))
        self.ledger.reverse_transaction(late.transaction_id)
        self.ledger.sell(X.id, 2, 110, timestamp=at(5))
        self.assertEqual(self.ledger.get_holding(X.id).quantity, Decimal('8'))

    def test_unknown_transaction(self):
        with self.assertRaises(TransactionNotFoundError):
            self.ledger.reverse_transaction('tx:missing')
        self.assertUnchanged()

    def test_reverse_buy_after_units_sold(self):
        buy = self.ledger.transactions[-1]
        self.ledger.sell(X.id, 6, 100, timestamp=at(2))
        before = self.ledger.snapshot()
        with self.assertRaises(InsufficientQuantityError):
            self.ledger.reverse_transaction(buy.transaction_id)
        self.assertEqual(self.ledger.snapshot(), before)


class TestCashTracking(unittest.TestCase):
    """Deposits, withdrawals and the cash balance."""

    def setUp(self):
        self.ledger = Ledger(track_cash=True)

    def test_cash_flows(self):
        self.ledger.deposit(1000, timestamp=at(0))
        self.ledger.buy(X, 5, 100, timestamp=at(1))
        self.assertEqual(self.ledger.cash_balance, Decimal('500'))

        self.ledger.sell(X.id, 5, 120, timestamp=at(2))
        self.assertEqual(self.ledger.cash_balance, Decimal('1100'))

        with self.assertRaises(InsufficientBalanceError):
            self.ledger.withdraw(2000)
        self.ledger.withdraw(100, timestamp=at(3))
        self.assertEqual(self.ledger.cash_balance, Decimal('1000'))
        self.assertEqual(self.ledger.total_deposited, Decimal('900'))

    def test_buy_requires_cash(self):
        with self.assertRaises(InsufficientBalanceError):
            self.ledger.buy(X, 1, 1)

    def test_deposit_in_display_currency(self):
        tx = self.ledger.deposit(16_000_000, 'IDR', Decimal('1') / Decimal('16000'), timestamp=at(0))
        self.assertEqual(tx.type, TransactionType.DEPOSIT)
        self.assertEqual(tx.currency, 'IDR')
        self.assertEqual(tx.gross_amount, Decimal('1000'))
        self.assertEqual(self.ledger.cash_balance, Decimal('1000'))

    def test_reverse_deposit(self):
        deposit = self.ledger.deposit(1000, timestamp=at(0))
        self.ledger.buy(X, 9, 100, timestamp=at(1))
        with self.assertRaises(InsufficientBalanceError):
            self.ledger.reverse_transaction(deposit.transaction_id)

        extra = self.ledger.deposit(50, timestamp=at(2))
        self.ledger.reverse_transaction(extra.transaction_id)
        self.assertEqual(self.ledger.cash_balance, Decimal('100'))
        self.assertEqual(self.ledger.total_deposited, Decimal('1000'))

    def test_reverse_buy_refunds_cash(self):
        self.ledger.deposit(1000, timestamp=at(0))
        buy = self.ledger.buy(X, 5, 100, timestamp=at(1))
        self.ledger.reverse_transaction(buy.transaction_id)
        self.assertEqual(self.ledger.cash_balance, Decimal('1000'))

    def test_write_off_leaves_cash_unchanged(self):
        land = NonLiquidInstrument(id='nonliquid:LAND', display_symbol='LAND', display_name='Land',
                                   assumed_annual_growth_pct=Decimal('-150'))
        self.ledger.deposit(1000, timestamp=at(0))
        self.ledger.buy(land, 1, 600, timestamp=at(1))
        self.ledger.liquidate(land.id, timestamp=at(1) + timedelta(days=400))
        self.assertEqual(self.ledger.cash_balance, Decimal('400'))
        self.assertEqual(self.ledger.realized_pnl, Decimal('-600'))

    def test_without_cash_tracking(self):
        ledger = Ledger(track_cash=False)
        ledger.buy(X, 5, 100, timestamp=at(1))
        self.assertIsNone(ledger.cash_balance)
        ledger.deposit(300, timestamp=at(2))
        with self.assertRaises(InsufficientBalanceError):
            ledger.withdraw(301)
        ledger.withdraw(300, timestamp=at(3))
        self.assertEqual(ledger.total_deposited, Decimal('0'))


class TestPersistence(unittest.TestCase):
    """Saving through the repository."""

    def test_every_mutation_saves_a_snapshot(self):
        repository = InMemoryRepository()
        ledger = Ledger(repository, track_cash=False)
        ledger.buy(X, 2, 10, timestamp=at(1))
        ledger.sell(X.id, 1, 12, timestamp=at(2))
        self.assertEqual(repository.save_count, 2)

        restored = Ledger.load(repository, track_cash=False)
        self.assertEqual(restored.get_holding(X.id).quantity, Decimal('1'))
        self.assertEqual(restored.realized_pnl, Decimal('2'))
        self.assertEqual([t.transaction_id for t in restored.transactions],
                         [t.transaction_id for t in ledger.transactions])

    def test_failed_save_keeps_memory_state(self):
        repository = InMemoryRepository(fail_saves=True)
        ledger = Ledger(repository, track_cash=False)
        ledger.buy(X, 2, 10, timestamp=at(1))

        self.assertIsInstance(ledger.last_persistence_error, PersistenceError)
        self.assertEqual(ledger.get_holding(X.id).quantity, Decimal('2'))
        self.assertIsNone(repository.load())

        repository.fail_saves = False
        ledger.buy(X, 1, 10, timestamp=at(2))
        self.assertIsNone(ledger.last_persistence_error)
        stored = repository.load()
        self.assertEqual(len(stored.transactions), 2)
        self.assertEqual(stored.holdings[0].quantity, Decimal('3'))

    def test_load_empty_repository(self):
        ledger = Ledger.load(InMemoryRepository())
        self.assertEqual(ledger.holdings, [])
        self.assertEqual(ledger.cash_balance, Decimal('0'))

    def test_enabling_cash_rebuilds_balance_from_log(self):
        repository = InMemoryRepository()
        ledger = Ledger(repository, track_cash=False)
        ledger.deposit(1000, timestamp=at(0))
        ledger.buy(X, 2, 100, timestamp=at(1))

        with_cash = Ledger.load(repository, track_cash=True)
        self.assertEqual(with_cash.cash_balance, Decimal('800'))
        without_cash = Ledger.load(repository, track_cash=False)
        self.assertIsNone(without_cash.cash_balance)

    def test_sequence_continues_after_load(self):
        repository = InMemoryRepository()
        ledger = Ledger(repository, track_cash=False)
        first = ledger.buy(X, 1, 10, timestamp=at(1))
        restored = Ledger.load(repository, track_cash=False)
        second = restored.buy(X, 1, 10, timestamp=at(1))
        self.assertGreater(second.sequence, first.sequence)

    def test_clear(self):
        repository = InMemoryRepository()
        ledger = Ledger(repository, track_cash=True)
        ledger.deposit(10, timestamp=at(0))
        ledger.clear()
        self.assertEqual(ledger.all_transactions, [])
        self.assertEqual(ledger.cash_balance, Decimal('0'))
        self.assertTrue(repository.load().is_empty())


if __name__ == '__main__':
    unittest.main()
