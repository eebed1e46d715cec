"""Market data models."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict

from utils.timezone_utils import ensure_utc, format_timestamp, parse_timestamp


@dataclass(frozen=True)
class PriceQuote:
    """Latest price for one instrument, in the reference currency.

    ``is_stale`` marks a quote served from the last-known-price cache after
    a live fetch failed or timed out.
    """
    instrument_id: str
    price: Decimal
    as_of: datetime
    source: str = "unknown"  # "yahoo", "coingecko", "finnhub", "static", "cache"
    is_stale: bool = False

    def __post_init__(self):
        object.__setattr__(self, 'price', Decimal(str(self.price)))
        object.__setattr__(self, 'as_of', ensure_utc(self.as_of))

    def as_stale(self) -> PriceQuote:
        return replace(self, is_stale=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'instrument_id': self.instrument_id,
            'price': str(self.price),
            'as_of': format_timestamp(self.as_of),
            'source': self.source,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> PriceQuote:
        return cls(
            instrument_id=str(data['instrument_id']),
            price=Decimal(str(data['price'])),
            as_of=parse_timestamp(data['as_of']),
            source=str(data.get('source', 'cache')),
            is_stale=bool(data.get('is_stale', False)),
        )


@dataclass(frozen=True)
class PricePoint:
    """One point of a historical price series."""
    time: datetime
    price: Decimal

    def __post_init__(self):
        object.__setattr__(self, 'price', Decimal(str(self.price)))
        object.__setattr__(self, 'time', ensure_utc(self.time))
