"""
Portfolio ledger and the operations built on it.

This module provides:
- Ledger: holdings, transaction log, realized P&L and cash, with reversal
- trade_processor: weighted-average cost arithmetic for buys and sells
- position_calculator: point-in-time replay of the transaction log
- EquityTimeline: historical equity series rebuilt on demand
- PortfolioManager: facade wiring ledger, prices and currency together
"""

from .ledger import (
    Ledger,
    LedgerError,
    InvalidArgumentError,
    InsufficientQuantityError,
    InsufficientBalanceError,
    AlreadyReversedError,
    HoldingNotFoundError,
    TransactionNotFoundError
)
from .equity_timeline import EquityPoint, EquityTimeline, sample_timestamps
from .portfolio_manager import PortfolioManager, PortfolioManagerError, build_price_feed

__all__ = [
    'Ledger',
    'LedgerError',
    'InvalidArgumentError',
    'InsufficientQuantityError',
    'InsufficientBalanceError',
    'AlreadyReversedError',
    'HoldingNotFoundError',
    'TransactionNotFoundError',
    'EquityPoint',
    'EquityTimeline',
    'sample_timestamps',
    'PortfolioManager',
    'PortfolioManagerError',
    'build_price_feed'
]
