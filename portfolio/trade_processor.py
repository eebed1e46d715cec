"""Trade processing module.

Weighted-average cost arithmetic over holdings. These functions are pure:
they never mutate the holding passed in and never touch persistence, which
lets the ledger compute a complete new state before committing anything.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple

from config.constants import QUANTITY_TOLERANCE
from data.models.holding import Holding
from data.models.instrument import Instrument
from financial.calculations import calculate_gross_amount, calculate_weighted_average_cost


@dataclass(frozen=True)
class SaleResult:
    """Accounting outcome of one sell."""
    cost_of_sold: Decimal
    proceeds: Decimal
    realized_pnl: Decimal


def is_zero_quantity(quantity: Decimal) -> bool:
    """Treat residual dust from decimal division as an empty position."""
    return abs(quantity) <= QUANTITY_TOLERANCE


def apply_buy(holding: Optional[Holding], instrument: Instrument, quantity: Decimal,
              price: Decimal, timestamp: datetime) -> Holding:
    """Blend a purchase into a holding using weighted-average cost.

    Args:
        holding: Current holding, or None when the instrument is not held
        instrument: Instrument being bought
        quantity: Units bought (positive)
        price: Price per unit (positive)
        timestamp: Trade time; becomes ``created_at`` for a new holding

    Returns:
        The new holding
    """
    if holding is None:
        return Holding(
            instrument=instrument,
            quantity=quantity,
            average_cost=price,
            total_invested=calculate_gross_amount(quantity, price),
            created_at=timestamp,
        )

    new_quantity, new_invested, new_average = calculate_weighted_average_cost(
        holding.quantity, holding.total_invested, quantity, price
    )
    return replace(holding, quantity=new_quantity, total_invested=new_invested, average_cost=new_average)


def apply_sell(holding: Holding, quantity: Decimal, price: Decimal) -> Tuple[Optional[Holding], SaleResult]:
    """Remove units from a holding at its average cost.

    The remaining units keep their average cost; only the totals shrink.

    Args:
        holding: Current holding
        quantity: Units sold (positive, at most ``holding.quantity``)
        price: Sale price per unit

    Returns:
        Tuple of (new holding or None when fully sold, SaleResult)

    Raises:
        ValueError: If more units are sold than held
    """
    if quantity > holding.quantity + QUANTITY_TOLERANCE:
        raise ValueError(f"Cannot sell {quantity} units of {holding.symbol}; only {holding.quantity} held")

    cost_of_sold = quantity * holding.average_cost
    proceeds = calculate_gross_amount(quantity, price)
    result = SaleResult(cost_of_sold=cost_of_sold, proceeds=proceeds, realized_pnl=proceeds - cost_of_sold)

    new_quantity = holding.quantity - quantity
    if is_zero_quantity(new_quantity):
        return None, result

    new_invested = holding.total_invested - cost_of_sold
    return replace(holding, quantity=new_quantity, total_invested=new_invested,
                   average_cost=new_invested / new_quantity), result


def remove_units(holding: Holding, quantity: Decimal, unit_cost: Decimal) -> Optional[Holding]:
    """Take units back out of a holding at the cost they were added at.

    This is the inverse of ``apply_buy``: invested capital shrinks by
    ``quantity * unit_cost`` rather than by the current average cost, so
    undoing the most recent buy restores the previous holding exactly.

    Raises:
        ValueError: If more units are removed than held
    """
    if quantity > holding.quantity + QUANTITY_TOLERANCE:
        raise ValueError(f"Cannot remove {quantity} units of {holding.symbol}; only {holding.quantity} held")

    new_quantity = holding.quantity - quantity
    if is_zero_quantity(new_quantity):
        return None

    new_invested = holding.total_invested - calculate_gross_amount(quantity, unit_cost)
    return replace(holding, quantity=new_quantity, total_invested=new_invested,
                   average_cost=new_invested / new_quantity)


def restore_units(holding: Optional[Holding], instrument: Instrument, quantity: Decimal,
                  unit_cost: Decimal, timestamp: datetime) -> Holding:
    """Put units back into a holding at a known unit cost.

    Used when a sell is reversed: the units return at the average cost they
    were sold at, recreating the holding if it had been fully sold.
    """
    return apply_buy(holding, instrument, quantity, unit_cost, timestamp)
