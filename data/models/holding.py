"""Holding data model."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from utils.timezone_utils import ensure_utc, format_timestamp, parse_timestamp, utc_now
from .instrument import Instrument, InstrumentKind, NonLiquidInstrument, instrument_from_dict


@dataclass
class Holding:
    """Represents the current position in one instrument.

    Quantities and costs are Decimals in the ledger's reference currency.
    ``total_invested`` is kept equal to ``quantity * average_cost`` by the
    trade arithmetic; a holding whose quantity reaches zero is dropped by the
    ledger rather than kept as an empty row.
    """
    instrument: Instrument
    quantity: Decimal
    average_cost: Decimal
    total_invested: Decimal
    created_at: datetime = field(default_factory=utc_now)
    last_price: Optional[Decimal] = None
    last_price_at: Optional[datetime] = None

    def __post_init__(self):
        """Convert numeric inputs to Decimal and timestamps to aware UTC."""
        self.quantity = Decimal(str(self.quantity))
        self.average_cost = Decimal(str(self.average_cost))
        self.total_invested = Decimal(str(self.total_invested))
        self.created_at = ensure_utc(self.created_at)
        if self.last_price is not None:
            self.last_price = Decimal(str(self.last_price))
        if self.last_price_at is not None:
            self.last_price_at = ensure_utc(self.last_price_at)

    @property
    def instrument_id(self) -> str:
        return self.instrument.id

    @property
    def kind(self) -> InstrumentKind:
        return self.instrument.kind

    @property
    def symbol(self) -> str:
        return self.instrument.display_symbol

    @property
    def is_non_liquid(self) -> bool:
        return isinstance(self.instrument, NonLiquidInstrument)

    @property
    def assumed_annual_growth_pct(self) -> Optional[Decimal]:
        if isinstance(self.instrument, NonLiquidInstrument):
            return self.instrument.assumed_annual_growth_pct
        return None

    @property
    def acquired_at(self) -> Optional[datetime]:
        """Acquisition time for non-liquid holdings (falls back to creation time)."""
        if isinstance(self.instrument, NonLiquidInstrument):
            return self.instrument.acquired_at or self.created_at
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization.

        Decimals are written as strings so snapshots reload without
        precision loss.
        """
        return {
            'instrument': self.instrument.to_dict(),
            'quantity': str(self.quantity),
            'average_cost': str(self.average_cost),
            'total_invested': str(self.total_invested),
            'created_at': format_timestamp(self.created_at),
            'last_price': str(self.last_price) if self.last_price is not None else None,
            'last_price_at': format_timestamp(self.last_price_at) or None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Holding:
        """Create Holding from dictionary.

        Args:
            data: Dictionary produced by ``to_dict``

        Returns:
            Holding instance
        """
        last_price = data.get('last_price')
        return cls(
            instrument=instrument_from_dict(data['instrument']),
            quantity=Decimal(str(data['quantity'])),
            average_cost=Decimal(str(data['average_cost'])),
            total_invested=Decimal(str(data['total_invested'])),
            created_at=parse_timestamp(data.get('created_at'), default=utc_now()),
            last_price=Decimal(str(last_price)) if last_price not in (None, '') else None,
            last_price_at=parse_timestamp(data.get('last_price_at')),
        )
