"""Ledger snapshot model."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from utils.timezone_utils import format_timestamp, parse_timestamp
from .holding import Holding
from .instrument import Instrument, instrument_from_dict
from .transaction import Transaction


@dataclass
class LedgerState:
    """Complete, self-contained snapshot of the ledger.

    This is the unit of persistence: every mutation writes the whole state.
    ``transactions`` holds the entire log, reversed entries included.
    ``cash_balance`` is None when the ledger does not track cash.
    ``instruments`` remembers every instrument the ledger has ever held so a
    fully sold holding can be recreated when its sell is reversed.
    """
    holdings: List[Holding] = field(default_factory=list)
    transactions: List[Transaction] = field(default_factory=list)
    realized_pnl: Decimal = Decimal('0')
    cash_balance: Optional[Decimal] = Decimal('0')
    total_deposited: Decimal = Decimal('0')
    next_sequence: int = 1
    instruments: List[Instrument] = field(default_factory=list)
    saved_at: Optional[datetime] = None

    def __post_init__(self):
        self.realized_pnl = Decimal(str(self.realized_pnl))
        self.total_deposited = Decimal(str(self.total_deposited))
        if self.cash_balance is not None:
            self.cash_balance = Decimal(str(self.cash_balance))

    @property
    def tracks_cash(self) -> bool:
        return self.cash_balance is not None

    @property
    def active_transactions(self) -> List[Transaction]:
        """Non-reversed transactions in log order."""
        return sorted((t for t in self.transactions if not t.is_reversed), key=lambda t: t.sort_key)

    def is_empty(self) -> bool:
        return not self.holdings and not self.transactions

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'holdings': [h.to_dict() for h in self.holdings],
            'transactions': [t.to_dict() for t in self.transactions],
            'realized_pnl': str(self.realized_pnl),
            'cash_balance': str(self.cash_balance) if self.cash_balance is not None else None,
            'total_deposited': str(self.total_deposited),
            'next_sequence': self.next_sequence,
            'instruments': [i.to_dict() for i in self.instruments],
            'saved_at': format_timestamp(self.saved_at) or None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> LedgerState:
        """Create LedgerState from dictionary.

        Args:
            data: Dictionary produced by ``to_dict``

        Returns:
            LedgerState instance
        """
        transactions = [Transaction.from_dict(t) for t in data.get('transactions') or []]
        next_sequence = data.get('next_sequence')
        if next_sequence is None:
            next_sequence = max((t.sequence for t in transactions), default=0) + 1

        cash_balance = data.get('cash_balance')
        return cls(
            holdings=[Holding.from_dict(h) for h in data.get('holdings') or []],
            transactions=transactions,
            realized_pnl=Decimal(str(data.get('realized_pnl') or '0')),
            cash_balance=Decimal(str(cash_balance)) if cash_balance not in (None, '') else None,
            total_deposited=Decimal(str(data.get('total_deposited') or '0')),
            next_sequence=int(next_sequence),
            instruments=[instrument_from_dict(i) for i in data.get('instruments') or []],
            saved_at=parse_timestamp(data.get('saved_at')),
        )
