"""Transaction data models."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from utils.timezone_utils import ensure_utc, format_timestamp, parse_timestamp


class TransactionType(str, Enum):
    """Ledger-affecting event types."""
    BUY = "buy"
    SELL = "sell"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"

    @classmethod
    def parse(cls, value: Any) -> TransactionType:
        if isinstance(value, TransactionType):
            return value
        text = str(value or '').strip().lower()
        # Older exports recorded liquidations as "delete"
        if text == 'delete':
            return cls.SELL
        if text == 'withdraw':
            return cls.WITHDRAWAL
        return cls(text)

    @property
    def is_trade(self) -> bool:
        return self in (TransactionType.BUY, TransactionType.SELL)

    @property
    def is_cash_movement(self) -> bool:
        return self in (TransactionType.DEPOSIT, TransactionType.WITHDRAWAL)


def new_transaction_id() -> str:
    return f"tx:{uuid4().hex}"


def _optional_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == '':
        return None
    return Decimal(str(value))


@dataclass(frozen=True)
class Transaction:
    """An immutable, timestamped record of one ledger-affecting event.

    For trades ``quantity`` is units of the instrument and ``price_per_unit``
    the unit price in the reference currency. For cash movements
    ``quantity`` is the amount in ``currency`` and ``price_per_unit`` the
    exchange rate into the reference currency. In both cases
    ``gross_amount == quantity * price_per_unit``.

    ``cost_basis`` and ``realized_pnl`` are only set on sells; ``cost_basis``
    is the cost of the units sold, which is what a reversal restores.
    Reversal never deletes the record; it sets ``reversed_at``.
    """
    transaction_id: str
    type: TransactionType
    quantity: Decimal
    price_per_unit: Decimal
    gross_amount: Decimal
    timestamp: datetime
    sequence: int = 0
    instrument_id: Optional[str] = None
    symbol: str = ''
    realized_pnl: Optional[Decimal] = None
    cost_basis: Optional[Decimal] = None
    currency: str = 'USD'
    note: str = ''
    reversed_at: Optional[datetime] = None

    def __post_init__(self):
        object.__setattr__(self, 'type', TransactionType.parse(self.type))
        object.__setattr__(self, 'quantity', Decimal(str(self.quantity)))
        object.__setattr__(self, 'price_per_unit', Decimal(str(self.price_per_unit)))
        object.__setattr__(self, 'gross_amount', Decimal(str(self.gross_amount)))
        object.__setattr__(self, 'timestamp', ensure_utc(self.timestamp))
        if self.realized_pnl is not None:
            object.__setattr__(self, 'realized_pnl', Decimal(str(self.realized_pnl)))
        if self.cost_basis is not None:
            object.__setattr__(self, 'cost_basis', Decimal(str(self.cost_basis)))
        if self.reversed_at is not None:
            object.__setattr__(self, 'reversed_at', ensure_utc(self.reversed_at))

    @property
    def is_reversed(self) -> bool:
        return self.reversed_at is not None

    @property
    def sort_key(self):
        """Log order: timestamp, ties broken by insertion order."""
        return (self.timestamp, self.sequence)

    def mark_reversed(self, when: datetime) -> Transaction:
        """Return a copy of this transaction marked as reversed."""
        return replace(self, reversed_at=when)

    def is_buy(self) -> bool:
        return self.type is TransactionType.BUY

    def is_sell(self) -> bool:
        return self.type is TransactionType.SELL

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'id': self.transaction_id,
            'type': self.type.value,
            'instrument_id': self.instrument_id,
            'symbol': self.symbol,
            'quantity': str(self.quantity),
            'price_per_unit': str(self.price_per_unit),
            'gross_amount': str(self.gross_amount),
            'realized_pnl': str(self.realized_pnl) if self.realized_pnl is not None else None,
            'cost_basis': str(self.cost_basis) if self.cost_basis is not None else None,
            'timestamp': format_timestamp(self.timestamp),
            'sequence': self.sequence,
            'currency': self.currency,
            'note': self.note,
            'reversed_at': format_timestamp(self.reversed_at) or None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Transaction:
        """Create Transaction from dictionary (JSON snapshot or import row).

        Args:
            data: Dictionary containing transaction data

        Returns:
            Transaction instance
        """
        timestamp = parse_timestamp(data.get('timestamp'))
        if timestamp is None:
            raise ValueError(f"Transaction {data.get('id')!r} has no timestamp")

        sequence = data.get('sequence')
        return cls(
            transaction_id=str(data.get('id') or new_transaction_id()),
            type=TransactionType.parse(data.get('type')),
            instrument_id=data.get('instrument_id') or None,
            symbol=str(data.get('symbol') or ''),
            quantity=Decimal(str(data.get('quantity') or '0')),
            price_per_unit=Decimal(str(data.get('price_per_unit') or '0')),
            gross_amount=Decimal(str(data.get('gross_amount') or '0')),
            realized_pnl=_optional_decimal(data.get('realized_pnl')),
            cost_basis=_optional_decimal(data.get('cost_basis')),
            timestamp=timestamp,
            sequence=int(sequence) if sequence not in (None, '') else 0,
            currency=str(data.get('currency') or 'USD'),
            note=str(data.get('note') or ''),
            reversed_at=parse_timestamp(data.get('reversed_at')),
        )
