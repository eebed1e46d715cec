"""
Financial calculations module with precise Decimal arithmetic.

This module provides all core ledger arithmetic using Decimal so quantities,
costs and P&L stay exact across long sequences of trades. Rounding only
happens at the display edge (``money_to_decimal``); ledger values are never
rounded.
"""

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Union, Optional

from config.constants import FLOAT_TOLERANCE, MICROSECONDS_PER_YEAR
from utils.timezone_utils import ensure_utc

# Type alias for numeric inputs that will be converted to Decimal
NumericInput = Union[float, int, str, Decimal]

# Type alias for validated financial values (should always be Decimal)
FinancialDecimal = Decimal


def to_decimal(value: NumericInput) -> FinancialDecimal:
    """
    Convert a numeric input to an exact Decimal.

    Floats go through ``str`` so ``0.1`` becomes ``Decimal('0.1')`` rather
    than its binary expansion.

    Args:
        value: The value to convert

    Returns:
        Decimal: The exact value

    Raises:
        ValueError: If the value is not a finite number

    Examples:
        >>> to_decimal(0.1)
        Decimal('0.1')
        >>> to_decimal("2.50")
        Decimal('2.50')
    """
    if isinstance(value, bool):
        raise ValueError(f"Not a number: {value!r}")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except ArithmeticError as e:
        raise ValueError(f"Not a number: {value!r}") from e
    if not result.is_finite():
        raise ValueError(f"Not a finite number: {value!r}")
    return result


def money_to_decimal(value: NumericInput) -> FinancialDecimal:
    """
    Round a monetary value to 2 decimal places for display or export.

    Args:
        value: The monetary value to convert (float, int, str, or Decimal)

    Returns:
        Decimal: The value as a Decimal rounded to 2 decimal places

    Examples:
        >>> money_to_decimal(10.99)
        Decimal('10.99')
        >>> money_to_decimal("15.555")
        Decimal('15.56')
    """
    return to_decimal(value).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)


def calculate_gross_amount(quantity: NumericInput, price: NumericInput) -> FinancialDecimal:
    """
    Calculate the gross amount of a trade (quantity * price), unrounded.

    Examples:
        >>> calculate_gross_amount("0.5", "30000")
        Decimal('15000.0')
    """
    return to_decimal(quantity) * to_decimal(price)


def calculate_weighted_average_cost(current_quantity: NumericInput, current_invested: NumericInput,
                                    added_quantity: NumericInput, added_price: NumericInput) -> tuple:
    """
    Blend a purchase into a running weighted-average cost.

    Args:
        current_quantity: Units held before the purchase
        current_invested: Total cost of the units held before the purchase
        added_quantity: Units bought
        added_price: Price per unit of the purchase

    Returns:
        tuple: (new_quantity, new_total_invested, new_average_cost)

    Raises:
        ZeroDivisionError: If the resulting quantity is zero

    Examples:
        >>> calculate_weighted_average_cost(10, 1000, 10, 200)
        (Decimal('20'), Decimal('3000'), Decimal('150'))
    """
    new_quantity = to_decimal(current_quantity) + to_decimal(added_quantity)
    if new_quantity == 0:
        raise ZeroDivisionError("Total quantity cannot be zero")
    new_invested = to_decimal(current_invested) + calculate_gross_amount(added_quantity, added_price)
    return new_quantity, new_invested, new_invested / new_quantity


def calculate_percentage_change(old_value: NumericInput, new_value: NumericInput) -> FinancialDecimal:
    """
    Calculate percentage change between two values.

    Args:
        old_value: The original value
        new_value: The new value

    Returns:
        Decimal: The percentage change in percent (e.g., 15 for 15%),
        0 when the original value is zero

    Examples:
        >>> calculate_percentage_change(100, 115)
        Decimal('15')
        >>> calculate_percentage_change(100, 85)
        Decimal('-15')
    """
    old_dec = to_decimal(old_value)
    new_dec = to_decimal(new_value)

    if old_dec == 0:
        return Decimal('0')

    return (new_dec - old_dec) * 100 / old_dec


def calculate_percentage(part: NumericInput, whole: NumericInput) -> FinancialDecimal:
    """
    Express part as a percentage of whole (0 when whole is not positive).

    Examples:
        >>> calculate_percentage(250, 1000)
        Decimal('25')
    """
    whole_dec = to_decimal(whole)
    if whole_dec <= 0:
        return Decimal('0')
    return to_decimal(part) * 100 / whole_dec


def years_between(start: datetime, end: datetime) -> FinancialDecimal:
    """
    Elapsed years between two instants, never negative.

    A year is 365.25 days. The difference is taken in integer microseconds
    so the result is reproducible bit-for-bit for the same inputs.

    Examples:
        >>> from datetime import datetime, timedelta, timezone
        >>> start = datetime(2020, 1, 1, tzinfo=timezone.utc)
        >>> years_between(start, start + timedelta(days=730.5))
        Decimal('2')
    """
    delta = ensure_utc(end) - ensure_utc(start)
    microseconds = (delta.days * 86400 + delta.seconds) * 1_000_000 + delta.microseconds
    if microseconds <= 0:
        return Decimal('0')
    return Decimal(microseconds) / MICROSECONDS_PER_YEAR


def estimate_non_liquid_price(average_cost: NumericInput, growth_pct: NumericInput,
                              acquired_at: datetime, as_of: datetime) -> FinancialDecimal:
    """
    Estimate the current unit price of a non-liquid asset by compound growth.

    price = average_cost * (1 + growth_pct / 100) ** years

    Args:
        average_cost: Average cost per unit
        growth_pct: Assumed annual growth in percent (may be negative)
        acquired_at: Acquisition time
        as_of: Valuation time (times before acquisition count as zero years)

    Returns:
        Decimal: Estimated price per unit

    Examples:
        >>> from datetime import datetime, timedelta, timezone
        >>> bought = datetime(2020, 1, 1, tzinfo=timezone.utc)
        >>> estimate_non_liquid_price(1000000, 5, bought, bought + timedelta(days=730.5))
        Decimal('1102500.0000')
    """
    cost = to_decimal(average_cost)
    years = years_between(acquired_at, as_of)
    if years == 0:
        return cost
    growth_factor = 1 + to_decimal(growth_pct) / 100
    if growth_factor <= 0:
        # A -100% (or worse) growth assumption writes the asset off
        return Decimal('0')
    return cost * growth_factor ** years


def is_close(a: NumericInput, b: NumericInput, tolerance: Optional[Decimal] = None) -> bool:
    """
    Compare two values within a tolerance (defaults to FLOAT_TOLERANCE).

    Examples:
        >>> is_close("1.0000001", 1)
        True
    """
    tol = FLOAT_TOLERANCE if tolerance is None else tolerance
    return abs(to_decimal(a) - to_decimal(b)) <= tol
