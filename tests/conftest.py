import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

_BLOOMBOARD_ENV = [
    'BLOOMBOARD_REPOSITORY_TYPE',
    'BLOOMBOARD_DATA_FILE',
    'BLOOMBOARD_DISPLAY_CURRENCY',
    'BLOOMBOARD_TRACK_CASH',
    'BLOOMBOARD_PRICE_TIMEOUT',
    'BLOOMBOARD_DEV',
    'FINNHUB_API_KEY',
]


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep developer environment variables out of the tests."""
    for name in _BLOOMBOARD_ENV:
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture
def t0():
    """A fixed trade time."""
    return datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def days():
    """Offset helper: days(3) is a timedelta of three days."""
    return lambda n: timedelta(days=n)
