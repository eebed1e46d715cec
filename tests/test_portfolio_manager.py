"""
Tests for PortfolioManager and the command line interface.

Prices come from a static feed and exchange rates from the fallback table,
so nothing here touches the network.
"""

import shutil
import tempfile
import json
import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).parent.parent))

import bloomboard_cli
from config.settings import Settings
from data.models.instrument import CryptoInstrument, NonLiquidInstrument
from data.repositories.json_repository import JSONRepository
from data.repositories.memory_repository import InMemoryRepository
from display.console_output import set_plain_output
from financial.currency_handler import CurrencyHandler
from market_data.price_feed import StaticPriceFeed
from market_data.price_service import PriceService
from portfolio.ledger import HoldingNotFoundError, Ledger
from portfolio.portfolio_manager import PortfolioManager, PortfolioManagerError

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
BTC = CryptoInstrument(id='crypto:BTC', display_symbol='BTC', display_name='Bitcoin', coin_id='bitcoin')


class TestPortfolioManager(unittest.TestCase):
    """Test the manager over an in-memory ledger."""

    def setUp(self):
        self.test_dir = Path(tempfile.mkdtemp(prefix="test_manager_"))
        self.feed = StaticPriceFeed({BTC.id: '50000'}, as_of=T0 + timedelta(hours=1))
        self.ledger = Ledger(InMemoryRepository(), track_cash=True)
        self.manager = PortfolioManager(
            self.ledger,
            PriceService(self.feed),
            CurrencyHandler(live_rates=False),
            Settings(),
        )

    def tearDown(self):
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def test_display_currency_amounts_converted(self):
        deposit = self.manager.deposit(16_000_000, currency='IDR', timestamp=T0)
        self.assertEqual(deposit.gross_amount, Decimal('1000'))
        self.assertEqual(self.ledger.cash_balance, Decimal('1000'))

        buy = self.manager.buy(BTC, '0.01', 640_000_000, currency='idr', timestamp=T0)
        self.assertEqual(buy.price_per_unit, Decimal('40000'))
        self.assertEqual(self.ledger.cash_balance, Decimal('600'))
        self.assertEqual(self.manager.exchange_rate, Decimal('16000'))

    def test_refresh_records_last_price(self):
        self.manager.deposit(1000, timestamp=T0)
        self.manager.buy(BTC, '0.01', 40000, timestamp=T0)
        quotes = self.manager.refresh_prices()

        self.assertEqual(quotes[BTC.id].price, Decimal('50000'))
        holding = self.ledger.get_holding(BTC.id)
        self.assertEqual(holding.last_price, Decimal('50000'))
        valuation = self.manager.get_valuation(T0 + timedelta(hours=2))
        self.assertEqual(valuation.total_market_value, Decimal('500'))
        self.assertEqual(valuation.total_equity, Decimal('1100'))
        self.assertFalse(valuation.has_stale_prices)

    def test_failed_refresh_keeps_last_known_price(self):
        self.manager.deposit(1000, timestamp=T0)
        self.manager.buy(BTC, '0.01', 40000, timestamp=T0)
        self.manager.refresh_prices()

        self.feed.failing.add(BTC.id)
        self.manager.price_service.cache.invalidate_all()
        self.manager.refresh_prices()
        valuation = self.manager.get_valuation()
        self.assertTrue(valuation.has_stale_prices)
        self.assertEqual(valuation.total_market_value, Decimal('500'))

    def test_zero_quote_ignored(self):
        self.manager.deposit(1000, timestamp=T0)
        self.manager.buy(BTC, '0.01', 40000, timestamp=T0)
        self.feed.set_price(BTC.id, 0)

        quotes = self.manager.refresh_prices()
        self.assertEqual(quotes, {})
        self.assertIsNone(self.ledger.get_holding(BTC.id).last_price)
        valuation = self.manager.get_valuation(T0 + timedelta(hours=2))
        self.assertTrue(valuation.has_stale_prices)
        self.assertEqual(valuation.total_market_value, Decimal('400'))

    def test_sell_and_liquidate_by_symbol(self):
        self.manager.deposit(1000, timestamp=T0)
        self.manager.buy(BTC, '0.02', 40000, timestamp=T0)
        sell = self.manager.sell('btc', '0.01', 45000, timestamp=T0 + timedelta(hours=1))
        self.assertEqual(sell.realized_pnl, Decimal('50'))

        self.manager.refresh_prices()
        liquidation = self.manager.liquidate('BTC', timestamp=T0 + timedelta(hours=2))
        self.assertEqual(liquidation.price_per_unit, Decimal('50000'))
        self.assertIsNone(self.ledger.get_holding(BTC.id))

        stats = self.manager.get_trade_stats()
        self.assertEqual((stats.trades, stats.wins), (2, 2))
        self.assertEqual(self.manager.get_realized_series()[-1][1], Decimal('150'))

    def test_find_instrument(self):
        with self.assertRaises(HoldingNotFoundError):
            self.manager.find_instrument('ETH')
        self.manager.deposit(1000, timestamp=T0)
        self.manager.buy(BTC, '0.01', 40000, timestamp=T0)
        self.assertIs(self.manager.find_instrument('crypto:BTC'), self.ledger.get_instrument(BTC.id))

    def test_equity_series(self):
        self.manager.deposit(1000, timestamp=T0)
        land = NonLiquidInstrument(id='nonliquid:LAND', display_symbol='LAND', display_name='Land')
        self.manager.buy(land, 1, 400, timestamp=T0)
        points = self.manager.get_equity_series(samples=4, now=T0 + timedelta(days=3))
        self.assertEqual(len(points), 4)
        self.assertTrue(all(p.total_equity == Decimal('1000') for p in points))

    def test_export_import_round_trip(self):
        self.manager.deposit(1000, timestamp=T0)
        self.manager.buy(BTC, '0.01', 40000, timestamp=T0)
        path = self.manager.export_csv(str(self.test_dir / 'exports' / 'ledger.csv'))
        self.assertTrue(path.exists())

        self.manager.clear()
        self.assertEqual(self.ledger.holdings, [])

        metadata = self.manager.import_csv(str(path))
        self.assertEqual(metadata['display_currency'], 'IDR')
        self.assertEqual(self.ledger.get_holding(BTC.id).quantity, Decimal('0.01'))
        self.assertEqual(self.ledger.cash_balance, Decimal('600'))

    def test_import_missing_file(self):
        with self.assertRaises(PortfolioManagerError):
            self.manager.import_csv(str(self.test_dir / 'missing.csv'))


class TestCommandLine(unittest.TestCase):
    """Drive the CLI end to end against a temporary ledger file."""

    def setUp(self):
        self.test_dir = Path(tempfile.mkdtemp(prefix="test_cli_"))
        self.data_file = self.test_dir / 'ledger.json'
        self.config_file = self.test_dir / 'config.json'
        self.config_file.write_text(json.dumps({
            'price_feed': {'cache_file': str(self.test_dir / 'price_cache.json')},
            'logging': {'level': 'WARNING', 'file': ''},
        }), encoding='utf-8')

    def tearDown(self):
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def run_cli(self, *args):
        argv = ['--config', str(self.config_file), '--data-file', str(self.data_file), '--no-prices', *args]
        return bloomboard_cli.main(argv)

    def stored_state(self):
        return JSONRepository(str(self.data_file)).load()

    def test_trading_session(self):
        self.assertEqual(self.run_cli('deposit', '1000'), 0)
        self.assertEqual(self.run_cli('buy', 'crypto', 'BTC', '0.01', '40000', '--feed-key', 'bitcoin'), 0)
        self.assertEqual(self.run_cli('buy', 'nonliquid', 'LAND', '1', '100', '--growth', '5'), 0)
        self.assertEqual(self.run_cli('sell', 'btc', '0.005', '50000'), 0)
        for command in (['show'], ['history', '--all'], ['stats'], ['equity', '--samples', '3']):
            with self.subTest(command=command):
                self.assertEqual(self.run_cli(*command), 0)

        state = self.stored_state()
        self.assertEqual(state.cash_balance, Decimal('750'))
        self.assertEqual(state.realized_pnl, Decimal('50'))
        symbols = sorted(h.symbol for h in state.holdings)
        self.assertEqual(symbols, ['BTC', 'LAND'])

    def test_rejected_commands_return_error(self):
        self.assertEqual(self.run_cli('buy', 'equity', 'AAPL', '1', '190'), 1)
        self.assertEqual(self.run_cli('sell', 'AAPL', '1', '190'), 1)
        self.assertEqual(self.run_cli('deposit', '-5'), 1)
        self.assertEqual(self.run_cli('reverse', 'tx:missing'), 1)
        self.assertIsNone(self.stored_state())

    def test_reverse_and_clear(self):
        self.run_cli('deposit', '1000')
        deposit = self.stored_state().transactions[0]
        self.assertEqual(self.run_cli('reverse', deposit.transaction_id), 0)
        self.assertEqual(self.stored_state().cash_balance, Decimal('0'))

        self.assertEqual(self.run_cli('clear'), 1)
        self.assertEqual(len(self.stored_state().transactions), 1)
        self.assertEqual(self.run_cli('clear', '--yes'), 0)
        self.assertTrue(self.stored_state().is_empty())

    def test_export_and_import(self):
        export_path = self.test_dir / 'backup.csv'
        self.run_cli('deposit', '500')
        self.run_cli('buy', 'equity', 'BBCA.JK', '100', '0.5')
        self.assertEqual(self.run_cli('export', str(export_path)), 0)
        self.assertTrue(export_path.exists())

        self.assertEqual(self.run_cli('import', str(export_path)), 1)
        self.assertEqual(self.run_cli('import', str(export_path), '--yes'), 0)
        state = self.stored_state()
        self.assertEqual(state.holdings[0].instrument.quote_currency, 'IDR')
        self.assertEqual(state.cash_balance, Decimal('450'))

    def test_plain_output(self):
        try:
            self.assertEqual(self.run_cli('--plain', 'show'), 0)
        finally:
            set_plain_output(False)

    def test_unknown_command(self):
        with self.assertRaises(SystemExit):
            self.run_cli('rebalance')


if __name__ == '__main__':
    unittest.main()
