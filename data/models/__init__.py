"""Data models for the portfolio ledger.

This module contains the core data structures used throughout the ledger,
designed to serialize losslessly to both the JSON store and CSV exports.
"""

from .instrument import (
    Instrument, InstrumentKind, CryptoInstrument, EquityInstrument,
    NonLiquidInstrument, instrument_from_dict, equity_quote_currency,
)
from .holding import Holding
from .transaction import Transaction, TransactionType, new_transaction_id
from .ledger_state import LedgerState
from .market_data import PriceQuote, PricePoint

__all__ = [
    'Instrument', 'InstrumentKind', 'CryptoInstrument', 'EquityInstrument',
    'NonLiquidInstrument', 'instrument_from_dict', 'equity_quote_currency',
    'Holding', 'Transaction', 'TransactionType', 'new_transaction_id',
    'LedgerState', 'PriceQuote', 'PricePoint',
]
