"""
Financial calculations and utilities for the portfolio ledger.

This module provides precise financial calculations using Decimal arithmetic
to avoid floating-point precision issues, valuation and trade statistics,
and currency conversion between the reference and display currencies.
"""

from .calculations import (
    to_decimal,
    money_to_decimal,
    calculate_gross_amount,
    calculate_weighted_average_cost,
    calculate_percentage_change,
    calculate_percentage,
    years_between,
    estimate_non_liquid_price,
    is_close
)

from .currency_handler import (
    CurrencyHandler,
    format_money,
    format_quantity
)

from .pnl_calculator import (
    PnLCalculator,
    HoldingValuation,
    PortfolioValuation,
    TradeStats,
    calculate_trade_stats,
    realized_pnl_series,
    allocation_breakdown
)

__all__ = [
    # Calculations
    'to_decimal',
    'money_to_decimal',
    'calculate_gross_amount',
    'calculate_weighted_average_cost',
    'calculate_percentage_change',
    'calculate_percentage',
    'years_between',
    'estimate_non_liquid_price',
    'is_close',

    # Currency handling
    'CurrencyHandler',
    'format_money',
    'format_quantity',

    # P&L calculations
    'PnLCalculator',
    'HoldingValuation',
    'PortfolioValuation',
    'TradeStats',
    'calculate_trade_stats',
    'realized_pnl_series',
    'allocation_breakdown'
]
