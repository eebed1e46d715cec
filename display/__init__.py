"""
Console display for the ledger.

This module provides:
- console_output: colored status messages (Rich, with a colorama plain mode)
- TableFormatter: Rich tables for holdings, transactions, statistics and equity
"""

from .console_output import (
    print_success,
    print_error,
    print_warning,
    print_info,
    print_header,
    set_plain_output
)
from .table_formatter import TableFormatter

__all__ = [
    'print_success',
    'print_error',
    'print_warning',
    'print_info',
    'print_header',
    'set_plain_output',
    'TableFormatter'
]
