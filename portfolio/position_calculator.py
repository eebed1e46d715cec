"""Position calculation module.

Point-in-time replay of the transaction log. The ledger keeps only current
holdings; anything historical (positions, cash or realized P&L at a past
instant) is rebuilt here by folding the active log up to that instant with
the same weighted-average arithmetic the ledger uses.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from data.models.transaction import Transaction, TransactionType
from financial.calculations import calculate_weighted_average_cost
from portfolio.trade_processor import is_zero_quantity
from utils.timezone_utils import ensure_utc

logger = logging.getLogger(__name__)


@dataclass
class ReplayedPosition:
    """Quantity and cost of one instrument at a point in time."""
    quantity: Decimal = Decimal('0')
    total_invested: Decimal = Decimal('0')
    average_cost: Decimal = Decimal('0')


def active_log(transactions: Iterable[Transaction], as_of: Optional[datetime] = None) -> List[Transaction]:
    """Active transactions at or before ``as_of``, in log order."""
    cutoff = ensure_utc(as_of) if as_of is not None else None
    selected = [
        t for t in transactions
        if not t.is_reversed and (cutoff is None or t.timestamp <= cutoff)
    ]
    return sorted(selected, key=lambda t: t.sort_key)


def replay_positions(transactions: Iterable[Transaction],
                     as_of: Optional[datetime] = None) -> Dict[str, ReplayedPosition]:
    """Rebuild per-instrument positions from the log.

    Args:
        transactions: Transaction log (reversed entries are skipped)
        as_of: Only transactions at or before this instant count

    Returns:
        Dictionary of instrument id to ReplayedPosition; fully sold
        instruments are omitted
    """
    positions: Dict[str, ReplayedPosition] = {}

    for tx in active_log(transactions, as_of):
        if not tx.type.is_trade or not tx.instrument_id:
            continue
        position = positions.get(tx.instrument_id)

        if tx.is_buy():
            if position is None:
                position = ReplayedPosition()
            quantity, invested, average = calculate_weighted_average_cost(
                position.quantity, position.total_invested, tx.quantity, tx.price_per_unit
            )
            positions[tx.instrument_id] = ReplayedPosition(quantity, invested, average)
            continue

        if position is None:
            logger.debug(f"Replay: sell {tx.transaction_id} before any buy of {tx.instrument_id}; skipped")
            continue
        sold = min(tx.quantity, position.quantity)
        remaining = position.quantity - sold
        if is_zero_quantity(remaining):
            del positions[tx.instrument_id]
            continue
        invested = position.total_invested - sold * position.average_cost
        positions[tx.instrument_id] = ReplayedPosition(remaining, invested, invested / remaining)

    return positions


def replay_cash(transactions: Iterable[Transaction], as_of: Optional[datetime] = None) -> Decimal:
    """Cash balance implied by the log: deposits and sells in, withdrawals and buys out."""
    cash = Decimal('0')
    for tx in active_log(transactions, as_of):
        if tx.type in (TransactionType.DEPOSIT, TransactionType.SELL):
            cash += tx.gross_amount
        else:
            cash -= tx.gross_amount
    return cash


def replay_deposits(transactions: Iterable[Transaction], as_of: Optional[datetime] = None) -> Decimal:
    """Net capital deposited (deposits minus withdrawals) up to ``as_of``."""
    total = Decimal('0')
    for tx in active_log(transactions, as_of):
        if tx.type is TransactionType.DEPOSIT:
            total += tx.gross_amount
        elif tx.type is TransactionType.WITHDRAWAL:
            total -= tx.gross_amount
    return total


def replay_realized_pnl(transactions: Iterable[Transaction], as_of: Optional[datetime] = None) -> Decimal:
    """Cumulative realized P&L of active sells up to ``as_of``."""
    return sum(
        (tx.realized_pnl or Decimal('0') for tx in active_log(transactions, as_of) if tx.is_sell()),
        Decimal('0'),
    )
