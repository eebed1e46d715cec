"""
Unit tests for point-in-time replay of the transaction log.

The replayed positions must agree with the holdings the ledger keeps
incrementally, and reversed transactions must not count.
"""

import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
import sys

# Add the parent directory to the path so we can import our modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from data.models.instrument import CryptoInstrument, EquityInstrument
from portfolio.ledger import InvalidArgumentError, Ledger
from portfolio.position_calculator import (
    active_log,
    replay_cash,
    replay_deposits,
    replay_positions,
    replay_realized_pnl,
)

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
X = EquityInstrument(id='equity:X', display_symbol='X', display_name='X Corp', ticker='X')
ETH = CryptoInstrument(id='crypto:ETH', display_symbol='ETH', display_name='Ethereum', coin_id='ethereum')


def at(hours):
    return T0 + timedelta(hours=hours)


class TestReplay(unittest.TestCase):
    """Test replaying the log at past instants."""

    def setUp(self):
        self.ledger = Ledger(track_cash=True)
        self.ledger.deposit(10000, timestamp=at(0))
        self.ledger.buy(X, 10, 100, timestamp=at(1))
        self.ledger.buy(ETH, '1.5', 2000, timestamp=at(2))
        self.ledger.buy(X, 10, 200, timestamp=at(3))
        self.sell = self.ledger.sell(X.id, 5, 300, timestamp=at(4))
        self.ledger.withdraw(500, timestamp=at(5))
        self.log = self.ledger.all_transactions

    def test_matches_current_holdings(self):
        positions = replay_positions(self.log)
        for holding in self.ledger.holdings:
            position = positions[holding.instrument_id]
            self.assertEqual(position.quantity, holding.quantity)
            self.assertEqual(position.total_invested, holding.total_invested)
            self.assertEqual(position.average_cost, holding.average_cost)
        self.assertEqual(replay_cash(self.log), self.ledger.cash_balance)
        self.assertEqual(replay_realized_pnl(self.log), self.ledger.realized_pnl)
        self.assertEqual(replay_deposits(self.log), self.ledger.total_deposited)

    def test_positions_at_past_instant(self):
        positions = replay_positions(self.log, at(2))
        self.assertEqual(positions[X.id].quantity, Decimal('10'))
        self.assertEqual(positions[X.id].average_cost, Decimal('100'))
        self.assertEqual(positions[ETH.id].total_invested, Decimal('3000'))
        self.assertEqual(replay_cash(self.log, at(2)), Decimal('6000'))
        self.assertEqual(replay_realized_pnl(self.log, at(3)), Decimal('0'))

    def test_cutoff_is_inclusive(self):
        self.assertEqual(len(active_log(self.log, at(1))), 2)
        self.assertEqual(replay_positions(self.log, at(0)), {})

    def test_reversed_transactions_skipped(self):
        self.ledger.reverse_transaction(self.sell.transaction_id)
        log = self.ledger.all_transactions
        self.assertEqual(replay_positions(log)[X.id].quantity, Decimal('20'))
        self.assertEqual(replay_realized_pnl(log), Decimal('0'))
        self.assertEqual(replay_cash(log), self.ledger.cash_balance)

    def test_backdated_sell_cannot_break_replay(self):
        self.ledger.buy(X, 10, 100, timestamp=at(48))
        with self.assertRaises(InvalidArgumentError):
            self.ledger.sell(X.id, 25, 150, timestamp=at(24))
        self.ledger.sell(X.id, 25, 150, timestamp=at(48))

        log = self.ledger.all_transactions
        self.assertNotIn(X.id, replay_positions(log))
        self.assertIsNone(self.ledger.get_holding(X.id))
        self.assertEqual(replay_realized_pnl(log), self.ledger.realized_pnl)
        self.assertEqual(replay_cash(log), self.ledger.cash_balance)

    def test_fully_sold_instrument_omitted(self):
        self.ledger.sell(ETH.id, '1.5', 2100, timestamp=at(6))
        self.assertNotIn(ETH.id, replay_positions(self.ledger.all_transactions))


if __name__ == '__main__':
    unittest.main()
