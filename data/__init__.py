"""Data access layer for the portfolio ledger.

This module provides the data models (instruments, holdings, transactions,
ledger snapshots, quotes) and the repositories that persist ledger
snapshots to JSON, CSV or memory.
"""
