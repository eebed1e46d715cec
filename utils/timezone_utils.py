"""Timezone utilities for the ledger.

All ledger timestamps are timezone-aware and normalized to UTC. This module
converts the assorted shapes timestamps arrive in (ISO strings, epoch
milliseconds from older browser exports, naive datetimes, pandas Timestamps)
into that canonical form.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional, Union

import pandas as pd

TimestampInput = Union[str, int, float, Decimal, datetime, pd.Timestamp]

# Epoch values above this are treated as milliseconds rather than seconds
_EPOCH_MILLIS_THRESHOLD = 10_000_000_000


def utc_now() -> datetime:
    """Get the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC.

    Naive datetimes are assumed to already be in UTC.

    Args:
        value: Datetime to normalize

    Returns:
        datetime: Aware datetime in UTC
    """
    if isinstance(value, pd.Timestamp):
        value = value.to_pydatetime()
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_epoch(value: Union[int, float, Decimal]) -> datetime:
    """Convert an epoch number (seconds or milliseconds) to aware UTC."""
    number = float(value)
    if abs(number) >= _EPOCH_MILLIS_THRESHOLD:
        number = number / 1000.0
    return datetime.fromtimestamp(number, tz=timezone.utc)


def to_epoch_millis(value: datetime) -> int:
    """Convert a datetime to integer epoch milliseconds."""
    return int(ensure_utc(value).timestamp() * 1000)


def parse_timestamp(value: Any, default: Optional[datetime] = None) -> Optional[datetime]:
    """Parse a timestamp from any supported representation.

    Args:
        value: ISO-8601 string, epoch seconds/milliseconds, datetime or
            pandas Timestamp
        default: Returned when value is empty

    Returns:
        Aware UTC datetime, or default for empty input

    Raises:
        ValueError: If the value cannot be interpreted as a timestamp
    """
    if value is None:
        return default
    if isinstance(value, (datetime, pd.Timestamp)):
        return ensure_utc(value)
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return from_epoch(value)

    text = str(value).strip()
    if not text or text.lower() in ('nan', 'none', 'nat'):
        return default

    # Older exports store epoch milliseconds as text
    try:
        return from_epoch(Decimal(text))
    except ArithmeticError:
        pass

    try:
        parsed = pd.Timestamp(text)
    except (ValueError, TypeError) as e:
        raise ValueError(f"Unrecognized timestamp: {value!r}") from e
    if pd.isna(parsed):
        return default
    return ensure_utc(parsed)


def format_timestamp(value: Optional[datetime]) -> str:
    """Format a timestamp as ISO-8601 UTC, or an empty string for None."""
    if value is None:
        return ''
    return ensure_utc(value).isoformat()
