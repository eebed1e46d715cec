#!/usr/bin/env python3
"""
Test timestamp normalization.

Every ledger timestamp must come out as an aware UTC datetime regardless of
whether it arrived as an ISO string with an offset, a naive datetime, a
pandas Timestamp or epoch seconds/milliseconds from an older export.
"""

import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
import sys

import pandas as pd

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from utils.timezone_utils import (
    ensure_utc,
    format_timestamp,
    from_epoch,
    parse_timestamp,
    to_epoch_millis,
)

MIDNIGHT = datetime(2024, 1, 1, tzinfo=timezone.utc)


class TestTimezoneNormalization(unittest.TestCase):
    """Test conversion of assorted timestamp shapes to aware UTC."""

    def test_offset_string_converted_to_utc(self):
        parsed = parse_timestamp('2024-01-01T07:00:00+07:00')
        self.assertEqual(parsed, MIDNIGHT)
        self.assertEqual(parsed.utcoffset(), timedelta(0))

    def test_naive_values_assumed_utc(self):
        self.assertEqual(parse_timestamp('2024-01-01 00:00:00'), MIDNIGHT)
        self.assertEqual(ensure_utc(datetime(2024, 1, 1)), MIDNIGHT)

    def test_pandas_timestamp(self):
        parsed = parse_timestamp(pd.Timestamp('2024-01-01', tz='Asia/Jakarta'))
        self.assertIsInstance(parsed, datetime)
        self.assertEqual(parsed, MIDNIGHT - timedelta(hours=7))

    def test_epoch_seconds_and_millis(self):
        seconds = int(MIDNIGHT.timestamp())
        self.assertEqual(from_epoch(seconds), MIDNIGHT)
        self.assertEqual(from_epoch(seconds * 1000), MIDNIGHT)
        self.assertEqual(parse_timestamp(str(seconds * 1000)), MIDNIGHT)
        self.assertEqual(parse_timestamp(Decimal(seconds)), MIDNIGHT)
        self.assertEqual(to_epoch_millis(MIDNIGHT), seconds * 1000)

    def test_empty_values_use_default(self):
        for empty in (None, '', '  ', 'nan', 'NaT'):
            with self.subTest(value=empty):
                self.assertIsNone(parse_timestamp(empty))
        self.assertEqual(parse_timestamp('', default=MIDNIGHT), MIDNIGHT)

    def test_garbage_rejected(self):
        with self.assertRaises(ValueError):
            parse_timestamp('not a date')

    def test_format_round_trip(self):
        text = format_timestamp(MIDNIGHT + timedelta(microseconds=5))
        self.assertEqual(parse_timestamp(text), MIDNIGHT + timedelta(microseconds=5))
        self.assertEqual(format_timestamp(None), '')


if __name__ == '__main__':
    unittest.main()
