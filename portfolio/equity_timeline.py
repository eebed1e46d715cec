"""Historical equity series.

Total portfolio value at past instants, rebuilt from the transaction log on
every call. Nothing here is stored: for each sample time the log is replayed
up to that time, each position is priced as of that time and the cash
balance is added.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

import pandas as pd

from config.constants import DEFAULT_EQUITY_SAMPLES
from data.models.instrument import Instrument, NonLiquidInstrument
from data.models.ledger_state import LedgerState
from data.models.market_data import PricePoint
from financial.calculations import estimate_non_liquid_price
from market_data.price_service import PriceService
from portfolio.position_calculator import (
    active_log,
    replay_cash,
    replay_deposits,
    replay_positions,
    replay_realized_pnl,
)
from utils.timezone_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)


@dataclass
class EquityPoint:
    """Portfolio value at one sample time."""
    time: datetime
    market_value: Decimal
    cash_balance: Decimal
    total_equity: Decimal
    invested: Decimal
    realized_pnl: Decimal = Decimal('0')
    net_deposited: Decimal = Decimal('0')
    estimated_instruments: List[str] = field(default_factory=list)

    @property
    def is_estimated(self) -> bool:
        return bool(self.estimated_instruments)


def sample_timestamps(start: datetime, end: datetime, samples: int = DEFAULT_EQUITY_SAMPLES) -> List[datetime]:
    """
    Evenly spaced sample times from start to end, both ends included.

    Examples:
        >>> from datetime import timezone
        >>> times = sample_timestamps(datetime(2024, 1, 1, tzinfo=timezone.utc),
        ...                           datetime(2024, 1, 3, tzinfo=timezone.utc), 3)
        >>> [t.day for t in times]
        [1, 2, 3]
    """
    start = ensure_utc(start)
    end = ensure_utc(end)
    if start >= end or samples <= 1:
        return [end]
    index = pd.date_range(start=start, end=end, periods=samples)
    times = [ensure_utc(ts) for ts in index]
    # date_range can drift by a few nanoseconds at the far end
    times[0] = start
    times[-1] = end
    return times


def _price_series(points: List[PricePoint]) -> Optional[pd.Series]:
    if not points:
        return None
    series = pd.Series(
        [p.price for p in points],
        index=pd.DatetimeIndex([pd.Timestamp(p.time) for p in points]),
        dtype=object,
    )
    series = series[~series.index.duplicated(keep='last')]
    return series.sort_index()


class EquityTimeline:
    """Builds the equity series from a ledger snapshot."""

    def __init__(self, price_service: PriceService, samples: int = DEFAULT_EQUITY_SAMPLES):
        """
        Args:
            price_service: Source of historical prices for liquid instruments
            samples: Default number of sample times
        """
        self.price_service = price_service
        self.samples = samples

    def build(self, state: LedgerState, samples: Optional[int] = None,
              now: Optional[datetime] = None) -> List[EquityPoint]:
        """
        Reconstruct total equity between the first transaction and now.

        Liquid instruments are priced with the latest history point at or
        before each sample time; when there is none the replayed average
        cost is used and the instrument is listed in
        ``EquityPoint.estimated_instruments``. Non-liquid instruments use the
        growth estimate.

        Args:
            state: Ledger snapshot
            samples: Number of sample times (defaults to the timeline's)
            now: End of the series (defaults to the current time)

        Returns:
            Equity points oldest first; empty when the log is empty
        """
        log = active_log(state.transactions)
        if not log:
            return []

        start = log[0].timestamp
        end = ensure_utc(now) if now is not None else utc_now()
        if end < start:
            end = start
        times = sample_timestamps(start, end, samples or self.samples)

        instruments = self._instrument_registry(state)
        first_buy: Dict[str, datetime] = {}
        for tx in log:
            if tx.is_buy() and tx.instrument_id:
                first_buy.setdefault(tx.instrument_id, tx.timestamp)

        liquid = [instruments[i] for i in first_buy if i in instruments and instruments[i].is_liquid]
        histories = self.price_service.fetch_histories(liquid, start, end)
        series = {inst_id: _price_series(points) for inst_id, points in histories.items()}
        logger.debug(f"Equity series: {len(times)} samples, {len(liquid)} priced instruments")

        points = []
        for t in times:
            positions = replay_positions(log, t)
            market_value = Decimal('0')
            invested = Decimal('0')
            estimated = []
            for inst_id, position in positions.items():
                instrument = instruments.get(inst_id)
                if isinstance(instrument, NonLiquidInstrument):
                    price = estimate_non_liquid_price(
                        position.average_cost,
                        instrument.assumed_annual_growth_pct,
                        instrument.acquired_at or first_buy.get(inst_id),
                        t,
                    )
                else:
                    price = self._price_at(series.get(inst_id), t)
                    if price is None:
                        price = position.average_cost
                        estimated.append(instrument.display_symbol if instrument else inst_id)
                market_value += position.quantity * price
                invested += position.total_invested

            cash = replay_cash(log, t) if state.tracks_cash else Decimal('0')
            points.append(EquityPoint(
                time=t,
                market_value=market_value,
                cash_balance=cash,
                total_equity=market_value + cash,
                invested=invested,
                realized_pnl=replay_realized_pnl(log, t),
                net_deposited=replay_deposits(log, t),
                estimated_instruments=sorted(estimated),
            ))
        return points

    @staticmethod
    def _instrument_registry(state: LedgerState) -> Dict[str, Instrument]:
        registry = {i.id: i for i in state.instruments}
        for holding in state.holdings:
            registry.setdefault(holding.instrument_id, holding.instrument)
        return registry

    @staticmethod
    def _price_at(series: Optional[pd.Series], when: datetime) -> Optional[Decimal]:
        """Latest price at or before ``when``, or None."""
        if series is None or series.empty:
            return None
        value = series.asof(pd.Timestamp(when))
        if value is None or pd.isna(value):
            return None
        return Decimal(str(value))
