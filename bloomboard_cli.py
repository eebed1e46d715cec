#!/usr/bin/env python3
"""Bloomboard portfolio ledger - command line interface.

Usage:
    python bloomboard_cli.py show
    python bloomboard_cli.py deposit 1000
    python bloomboard_cli.py buy crypto BTC 0.01 65000 --feed-key bitcoin
    python bloomboard_cli.py buy equity BBCA.JK 100 9500 --currency IDR
    python bloomboard_cli.py buy nonliquid LAND 1 1000000 --growth 5
    python bloomboard_cli.py sell BTC 0.005 70000
    python bloomboard_cli.py reverse tx:...
    python bloomboard_cli.py export backup.csv
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from config.settings import Settings, configure_system
from data.models.instrument import (
    CryptoInstrument,
    EquityInstrument,
    Instrument,
    InstrumentKind,
    NonLiquidInstrument,
    equity_quote_currency,
)
from data.repositories.base_repository import RepositoryError
from display.console_output import print_error, print_header, print_info, print_success, print_warning, set_plain_output
from display.table_formatter import TableFormatter
from financial.calculations import to_decimal
from portfolio.ledger import HoldingNotFoundError, LedgerError
from portfolio.portfolio_manager import PortfolioManager, PortfolioManagerError
from utils.timezone_utils import parse_timestamp

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings, debug: bool = False) -> None:
    """Configure root logging from settings; --debug forces DEBUG."""
    log_config = settings.get_logging_config()
    level_name = 'DEBUG' if debug else str(log_config.get('level', 'INFO')).upper()
    kwargs = {
        'level': getattr(logging, level_name, logging.INFO),
        'format': log_config.get('format'),
        'force': True,
    }
    if log_config.get('file'):
        kwargs['filename'] = log_config['file']
    logging.basicConfig(**kwargs)
    logging.getLogger("yfinance").setLevel(logging.ERROR)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Single-user portfolio ledger",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('--config', help='JSON configuration file')
    parser.add_argument('--data-file', help='Ledger file (overrides repository path)')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')
    parser.add_argument('--no-prices', action='store_true', help='Skip live prices and exchange rates')
    parser.add_argument('--plain', action='store_true', help='Plain colored output without Rich formatting')

    sub = parser.add_subparsers(dest='command', required=True)

    show = sub.add_parser('show', help='Show holdings and portfolio summary')
    show.add_argument('--currency', help='Display currency (defaults to settings)')

    buy = sub.add_parser('buy', help='Buy units of an instrument')
    buy.add_argument('kind', choices=[k.value for k in InstrumentKind] + ['stock'])
    buy.add_argument('symbol')
    buy.add_argument('quantity')
    buy.add_argument('price', help='Price per unit')
    buy.add_argument('--name', help='Display name')
    buy.add_argument('--feed-key', help='Coin id (crypto) or ticker (equity) for price lookups')
    buy.add_argument('--quote-currency', help='Currency the equity feed quotes in')
    buy.add_argument('--growth', default='0', help='Assumed annual growth %% (non-liquid)')
    buy.add_argument('--acquired', help='Acquisition time (non-liquid)')
    buy.add_argument('--description', default='', help='Description (non-liquid)')
    _add_trade_options(buy)

    sell = sub.add_parser('sell', help='Sell units of a holding')
    sell.add_argument('symbol', help='Symbol or instrument id')
    sell.add_argument('quantity')
    sell.add_argument('price', help='Price per unit')
    _add_trade_options(sell)

    liquidate = sub.add_parser('liquidate', help='Sell a whole holding')
    liquidate.add_argument('symbol', help='Symbol or instrument id')
    liquidate.add_argument('--price', help='Price per unit (defaults to the latest known price)')
    liquidate.add_argument('--currency', help='Currency of --price')
    liquidate.add_argument('--at', help='Trade time (ISO-8601, defaults to now)')

    for name, help_text in (('deposit', 'Add capital'), ('withdraw', 'Withdraw capital')):
        cash = sub.add_parser(name, help=help_text)
        cash.add_argument('amount')
        _add_trade_options(cash)

    reverse = sub.add_parser('reverse', help='Reverse a transaction')
    reverse.add_argument('transaction_id')

    history = sub.add_parser('history', help='Show the transaction log')
    history.add_argument('--all', action='store_true', help='Include reversed transactions')

    sub.add_parser('stats', help='Show trade statistics')

    equity = sub.add_parser('equity', help='Show the historical equity series')
    equity.add_argument('--samples', type=int, help='Number of sample points')

    export = sub.add_parser('export', help='Export the ledger to a CSV file')
    export.add_argument('path')

    import_ = sub.add_parser('import', help='Replace the ledger with a CSV export')
    import_.add_argument('path')
    import_.add_argument('--yes', action='store_true', help='Confirm replacing the current ledger')

    clear = sub.add_parser('clear', help='Erase the ledger')
    clear.add_argument('--yes', action='store_true', help='Confirm erasing the ledger')
    return parser


def _add_trade_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('--currency', help='Currency of the price or amount (defaults to the reference currency)')
    parser.add_argument('--at', help='Time (ISO-8601, defaults to now)')
    parser.add_argument('--note', help='Free-text note')


def make_instrument(args: argparse.Namespace) -> Instrument:
    """Create a new instrument from buy arguments."""
    kind = InstrumentKind.parse(args.kind)
    symbol = args.symbol.upper()
    instrument_id = f"{kind.value}:{symbol}"
    name = args.name or symbol

    if kind is InstrumentKind.CRYPTO:
        return CryptoInstrument(id=instrument_id, display_symbol=symbol, display_name=name,
                                coin_id=args.feed_key or args.symbol.lower())
    if kind is InstrumentKind.EQUITY:
        ticker = args.feed_key or symbol
        return EquityInstrument(id=instrument_id, display_symbol=symbol, display_name=name, ticker=ticker,
                                quote_currency=(args.quote_currency or equity_quote_currency(ticker)).upper())
    return NonLiquidInstrument(
        id=instrument_id,
        display_symbol=symbol,
        display_name=name,
        assumed_annual_growth_pct=to_decimal(args.growth),
        acquired_at=parse_timestamp(args.acquired),
        description=args.description,
    )


def _formatter(manager: PortfolioManager, currency: Optional[str] = None) -> TableFormatter:
    display = (currency or manager.display_currency).upper()
    if display == manager.reference_currency:
        return TableFormatter(display)
    rate = manager.currency_handler.get_exchange_rate(manager.reference_currency, display)
    return TableFormatter(display, rate)


def run_command(manager: PortfolioManager, args: argparse.Namespace) -> int:
    """Execute one subcommand against the manager."""
    command = args.command

    if command == 'show':
        if not args.no_prices:
            manager.refresh_prices()
        valuation = manager.get_valuation()
        formatter = _formatter(manager, args.currency)
        print_header("Portfolio")
        if valuation.rows:
            formatter.show(formatter.create_holdings_table(valuation))
            formatter.show(formatter.create_allocation_table(valuation))
        else:
            print_info("Portfolio is currently empty")
        formatter.show(formatter.create_summary_panel(valuation))
        if valuation.has_stale_prices:
            print_warning(f"Price data may be stale for: {', '.join(valuation.stale_instruments)}")
        return 0

    if command == 'buy':
        try:
            instrument = manager.find_instrument(args.symbol)
        except HoldingNotFoundError:
            instrument = make_instrument(args)
        tx = manager.buy(instrument, args.quantity, args.price, currency=args.currency,
                         timestamp=args.at, note=args.note)
        print_success(f"Bought {tx.quantity} {tx.symbol} @ {tx.price_per_unit} {tx.currency} ({tx.transaction_id})")
        return 0

    if command == 'sell':
        tx = manager.sell(args.symbol, args.quantity, args.price, currency=args.currency,
                          timestamp=args.at, note=args.note)
        print_success(f"Sold {tx.quantity} {tx.symbol}: realized {tx.realized_pnl} {tx.currency} ({tx.transaction_id})")
        return 0

    if command == 'liquidate':
        if not args.no_prices and args.price is None:
            manager.refresh_prices()
        tx = manager.liquidate(args.symbol, args.price, currency=args.currency, timestamp=args.at)
        print_success(f"Liquidated {tx.quantity} {tx.symbol} @ {tx.price_per_unit}: realized {tx.realized_pnl}")
        return 0

    if command in ('deposit', 'withdraw'):
        operation = manager.deposit if command == 'deposit' else manager.withdraw
        tx = operation(args.amount, currency=args.currency, timestamp=args.at, note=args.note)
        print_success(f"{tx.type.value.capitalize()} of {tx.quantity} {tx.currency} recorded "
                      f"({tx.gross_amount} {manager.reference_currency})")
        return 0

    if command == 'reverse':
        tx = manager.reverse(args.transaction_id)
        print_success(f"Reversed {tx.type.value} {tx.transaction_id}")
        return 0

    if command == 'history':
        formatter = _formatter(manager)
        transactions = manager.ledger.all_transactions if args.all else manager.ledger.transactions
        formatter.show(formatter.create_transactions_table(transactions, include_reversed=args.all))
        return 0

    if command == 'stats':
        formatter = _formatter(manager)
        formatter.show(formatter.create_trade_stats_table(manager.get_trade_stats()))
        return 0

    if command == 'equity':
        points = manager.get_equity_series(args.samples)
        if not points:
            print_info("No transactions yet")
            return 0
        formatter = _formatter(manager)
        formatter.show(formatter.create_equity_table(points))
        return 0

    if command == 'export':
        if not args.no_prices:
            manager.refresh_prices()
        path = manager.export_csv(args.path)
        print_success(f"Exported ledger to {path}")
        return 0

    if command == 'import':
        if not args.yes and not manager.ledger.snapshot().is_empty():
            print_warning("Importing replaces the current ledger; re-run with --yes to confirm")
            return 1
        metadata = manager.import_csv(args.path)
        print_success(f"Imported {len(manager.ledger.holdings)} holdings and "
                      f"{len(manager.ledger.all_transactions)} transactions")
        if metadata.get('exported_at'):
            print_info(f"Export created {metadata['exported_at']}")
        return 0

    if command == 'clear':
        if not args.yes:
            print_warning("This erases every holding and transaction; re-run with --yes to confirm")
            return 1
        manager.clear()
        print_success("Ledger cleared")
        return 0

    raise ValueError(f"Unknown command: {command}")


def main(argv: Optional[List[str]] = None) -> int:
    """Parse arguments and run one command."""
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = configure_system(args.config)
    if args.data_file:
        settings.set(f'repository.{settings.get_repository_type()}.path', str(Path(args.data_file)))
    configure_logging(settings, debug=args.debug or settings.is_development_mode())
    if args.plain:
        set_plain_output(True)

    try:
        manager = PortfolioManager.from_settings(settings, offline=args.no_prices)
        status = run_command(manager, args)
    except (LedgerError, RepositoryError, PortfolioManagerError, ValueError) as e:
        logger.error(f"{args.command} failed: {e}")
        print_error(str(e))
        return 1

    if manager.ledger.last_persistence_error is not None:
        print_warning(f"Ledger changes could not be saved: {manager.ledger.last_persistence_error}")
    return status


if __name__ == "__main__":
    sys.exit(main())
