"""Instrument data models.

An instrument is anything the ledger can hold a position in. The kind is a
tagged variant: each kind carries only the fields that make sense for it, and
code that branches on kind dispatches on the concrete class.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from utils.timezone_utils import ensure_utc, format_timestamp, parse_timestamp


class InstrumentKind(str, Enum):
    """Supported instrument kinds."""
    CRYPTO = "crypto"
    EQUITY = "equity"
    NON_LIQUID = "nonliquid"

    @classmethod
    def parse(cls, value: Any) -> InstrumentKind:
        """Parse a kind, accepting the labels older exports used."""
        if isinstance(value, InstrumentKind):
            return value
        text = str(value or '').strip().lower().replace('_', '').replace('-', '')
        aliases = {
            'crypto': cls.CRYPTO,
            'equity': cls.EQUITY,
            'stock': cls.EQUITY,
            'nonliquid': cls.NON_LIQUID,
        }
        if text not in aliases:
            raise ValueError(f"Unknown instrument kind: {value!r}")
        return aliases[text]


@dataclass(frozen=True)
class Instrument(ABC):
    """Base instrument fields shared by every kind.

    Only the concrete kinds can be instantiated.
    """
    id: str
    display_symbol: str
    display_name: str

    @property
    @abstractmethod
    def kind(self) -> InstrumentKind:
        """The kind tag written to storage."""

    @property
    def price_feed_key(self) -> Optional[str]:
        return None

    @property
    def is_liquid(self) -> bool:
        return self.kind is not InstrumentKind.NON_LIQUID

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'id': self.id,
            'kind': self.kind.value,
            'symbol': self.display_symbol,
            'name': self.display_name,
        }


@dataclass(frozen=True)
class CryptoInstrument(Instrument):
    """A crypto asset priced through a coin id (e.g. ``bitcoin``)."""
    coin_id: str = ''

    @property
    def kind(self) -> InstrumentKind:
        return InstrumentKind.CRYPTO

    @property
    def price_feed_key(self) -> Optional[str]:
        return self.coin_id or None

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['price_feed_key'] = self.coin_id
        return data


@dataclass(frozen=True)
class EquityInstrument(Instrument):
    """An exchange-listed equity priced through its ticker."""
    ticker: str = ''
    quote_currency: str = 'USD'

    @property
    def kind(self) -> InstrumentKind:
        return InstrumentKind.EQUITY

    @property
    def price_feed_key(self) -> Optional[str]:
        return self.ticker or self.display_symbol

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['price_feed_key'] = self.ticker
        data['quote_currency'] = self.quote_currency
        return data


@dataclass(frozen=True)
class NonLiquidInstrument(Instrument):
    """A non-tradable asset valued by a deterministic growth model.

    There is no price feed for these; the estimated price compounds the
    average cost by ``assumed_annual_growth_pct`` per year since
    ``acquired_at``.
    """
    assumed_annual_growth_pct: Decimal = Decimal('0')
    acquired_at: Optional[datetime] = None
    description: str = ''

    def __post_init__(self):
        # Frozen dataclass: normalize through object.__setattr__
        object.__setattr__(self, 'assumed_annual_growth_pct', Decimal(str(self.assumed_annual_growth_pct)))
        if self.acquired_at is not None:
            object.__setattr__(self, 'acquired_at', ensure_utc(self.acquired_at))

    @property
    def kind(self) -> InstrumentKind:
        return InstrumentKind.NON_LIQUID

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['assumed_annual_growth_pct'] = str(self.assumed_annual_growth_pct)
        data['acquired_at'] = format_timestamp(self.acquired_at)
        data['description'] = self.description
        return data


def equity_quote_currency(ticker: str) -> str:
    """Guess the quote currency of an equity ticker from its exchange suffix."""
    return 'IDR' if ticker.upper().endswith('.JK') else 'USD'


def instrument_from_dict(data: Dict[str, Any]) -> Instrument:
    """Create the matching Instrument variant from a dictionary.

    Args:
        data: Dictionary produced by ``Instrument.to_dict`` (or an import row)

    Returns:
        Instrument variant for the dictionary's ``kind``

    Raises:
        ValueError: If the kind is unknown or required fields are missing
    """
    kind = InstrumentKind.parse(data.get('kind'))
    instrument_id = str(data.get('id') or '').strip()
    symbol = str(data.get('symbol') or '').strip()
    if not instrument_id or not symbol:
        raise ValueError(f"Instrument requires id and symbol: {data!r}")
    name = str(data.get('name') or symbol)
    feed_key = str(data.get('price_feed_key') or '').strip()

    if kind is InstrumentKind.CRYPTO:
        return CryptoInstrument(id=instrument_id, display_symbol=symbol, display_name=name,
                                coin_id=feed_key)
    if kind is InstrumentKind.EQUITY:
        ticker = feed_key or symbol
        quote_currency = str(data.get('quote_currency') or '').strip().upper() or equity_quote_currency(ticker)
        return EquityInstrument(id=instrument_id, display_symbol=symbol, display_name=name,
                                ticker=ticker, quote_currency=quote_currency)
    if kind is InstrumentKind.NON_LIQUID:
        growth = str(data.get('assumed_annual_growth_pct') or '0').strip() or '0'
        return NonLiquidInstrument(
            id=instrument_id,
            display_symbol=symbol,
            display_name=name,
            assumed_annual_growth_pct=Decimal(growth),
            acquired_at=parse_timestamp(data.get('acquired_at')),
            description=str(data.get('description') or ''),
        )
    raise ValueError(f"Unhandled instrument kind: {kind}")
