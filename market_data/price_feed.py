"""
Price feed adapters.

A price feed answers two questions for an instrument: its latest price and
its price history over a window. Adapters are thin wrappers over public
APIs (Yahoo Finance through yfinance, CoinGecko and Finnhub over HTTP).
Every price they return is in the reference currency.

Failures inside an adapter raise ``PriceFeedError``; the public methods
catch it, log it, and report the price as unavailable (None or an empty
series) so callers never have to handle feed exceptions.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional

import pandas as pd
import requests
import yfinance as yf

from config.constants import (
    COINGECKO_API_URL,
    DEFAULT_PRICE_TIMEOUT_SECONDS,
    FINNHUB_API_URL,
    REFERENCE_CURRENCY,
)
from data.models.instrument import CryptoInstrument, EquityInstrument, Instrument, NonLiquidInstrument
from data.models.market_data import PricePoint, PriceQuote
from financial.calculations import to_decimal
from utils.timezone_utils import ensure_utc, from_epoch, utc_now

logger = logging.getLogger(__name__)

# Returns units of the given currency per one unit of the reference currency
RateLookup = Callable[[str], Decimal]


class PriceFeedError(Exception):
    """Raised inside adapters when a price cannot be fetched or parsed."""
    pass


class PriceFeed(ABC):
    """Abstract price feed."""

    source_name = "unknown"

    def __init__(self, timeout: float = DEFAULT_PRICE_TIMEOUT_SECONDS,
                 exchange_rates: Optional[RateLookup] = None):
        """
        Args:
            timeout: Per-request timeout in seconds
            exchange_rates: Converts quote currencies into the reference
                currency; required for instruments not quoted in it
        """
        self.timeout = timeout
        self.exchange_rates = exchange_rates

    def get_last_price(self, instrument: Instrument) -> Optional[PriceQuote]:
        """Latest price, or None when unavailable.

        A zero or negative price counts as unavailable.
        """
        try:
            quote = self._fetch_last_price(instrument)
        except PriceFeedError as e:
            logger.warning(f"{self.source_name}: no price for {instrument.display_symbol}: {e}")
            return None
        if quote is not None and quote.price <= 0:
            logger.warning(f"{self.source_name}: ignoring price {quote.price} for {instrument.display_symbol}")
            return None
        return quote

    def get_historical_series(self, instrument: Instrument, start: datetime,
                              end: datetime) -> List[PricePoint]:
        """Price points between start and end (inclusive), oldest first.

        Each call fetches afresh; an empty list means no history is available.
        """
        try:
            points = self._fetch_history(instrument, ensure_utc(start), ensure_utc(end))
        except PriceFeedError as e:
            logger.warning(f"{self.source_name}: no history for {instrument.display_symbol}: {e}")
            return []
        return sorted((p for p in points if p.price > 0), key=lambda p: p.time)

    @abstractmethod
    def _fetch_last_price(self, instrument: Instrument) -> Optional[PriceQuote]:
        pass

    @abstractmethod
    def _fetch_history(self, instrument: Instrument, start: datetime, end: datetime) -> List[PricePoint]:
        pass

    def _to_reference(self, price: Decimal, currency: str) -> Decimal:
        currency = (currency or REFERENCE_CURRENCY).upper()
        if currency == REFERENCE_CURRENCY:
            return price
        if self.exchange_rates is None:
            raise PriceFeedError(f"No exchange rate source to convert {currency} prices")
        rate = self.exchange_rates(currency)
        if not rate or rate <= 0:
            raise PriceFeedError(f"Invalid exchange rate for {currency}: {rate}")
        return price / rate

    def _get_json(self, url: str, params: Dict) -> object:
        try:
            response = requests.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.RequestException as e:
            raise PriceFeedError(f"Request to {url} failed: {e}") from e
        except ValueError as e:
            raise PriceFeedError(f"Invalid JSON from {url}: {e}") from e


def _quote_currency(instrument: Instrument) -> str:
    if isinstance(instrument, EquityInstrument):
        return instrument.quote_currency
    return REFERENCE_CURRENCY


class YahooPriceFeed(PriceFeed):
    """Yahoo Finance via yfinance; used for equities (``AAPL``, ``BBCA.JK``)."""

    source_name = "yahoo"

    def __init__(self, timeout: float = DEFAULT_PRICE_TIMEOUT_SECONDS,
                 exchange_rates: Optional[RateLookup] = None):
        super().__init__(timeout, exchange_rates)
        # Reduce yfinance noise but keep ERROR level for real failures
        logging.getLogger("yfinance").setLevel(logging.ERROR)

    def _history_frame(self, ticker: str, **kwargs) -> pd.DataFrame:
        try:
            df = yf.Ticker(ticker).history(timeout=self.timeout, **kwargs)
        except Exception as e:
            # yfinance raises a wide range of exception types for network and parse errors
            raise PriceFeedError(f"yfinance request for {ticker} failed: {e}") from e
        if not isinstance(df, pd.DataFrame) or df.empty or 'Close' not in df.columns:
            raise PriceFeedError(f"No price data returned for {ticker}")
        return df.dropna(subset=['Close'])

    def _fetch_last_price(self, instrument: Instrument) -> Optional[PriceQuote]:
        ticker = instrument.price_feed_key
        if not ticker:
            raise PriceFeedError(f"{instrument.id} has no ticker")
        df = self._history_frame(ticker, period="5d", interval="1d")
        if df.empty:
            raise PriceFeedError(f"No closing prices for {ticker}")
        close = to_decimal(float(df['Close'].iloc[-1]))
        return PriceQuote(
            instrument_id=instrument.id,
            price=self._to_reference(close, _quote_currency(instrument)),
            as_of=ensure_utc(df.index[-1]),
            source=self.source_name,
        )

    def _fetch_history(self, instrument: Instrument, start: datetime, end: datetime) -> List[PricePoint]:
        ticker = instrument.price_feed_key
        if not ticker:
            raise PriceFeedError(f"{instrument.id} has no ticker")
        # yfinance treats end as exclusive
        df = self._history_frame(ticker, start=pd.Timestamp(start), end=pd.Timestamp(end) + pd.Timedelta(days=1),
                                 interval="1d")
        currency = _quote_currency(instrument)
        return [
            PricePoint(time=ensure_utc(ts), price=self._to_reference(to_decimal(float(close)), currency))
            for ts, close in df['Close'].items()
            if ensure_utc(ts) <= end
        ]


class CoinGeckoPriceFeed(PriceFeed):
    """CoinGecko public API; used for crypto (price feed key is the coin id)."""

    source_name = "coingecko"

    def __init__(self, timeout: float = DEFAULT_PRICE_TIMEOUT_SECONDS,
                 exchange_rates: Optional[RateLookup] = None,
                 base_url: str = COINGECKO_API_URL):
        super().__init__(timeout, exchange_rates)
        self.base_url = base_url.rstrip('/')

    def _fetch_last_price(self, instrument: Instrument) -> Optional[PriceQuote]:
        coin_id = instrument.price_feed_key
        if not coin_id:
            raise PriceFeedError(f"{instrument.id} has no coin id")
        data = self._get_json(f"{self.base_url}/simple/price", {
            'ids': coin_id,
            'vs_currencies': REFERENCE_CURRENCY.lower(),
            'include_last_updated_at': 'true',
        })
        try:
            entry = data[coin_id]
            price = to_decimal(entry[REFERENCE_CURRENCY.lower()])
        except (KeyError, TypeError, ValueError) as e:
            raise PriceFeedError(f"Unexpected CoinGecko response for {coin_id}: {data!r}") from e
        updated = entry.get('last_updated_at')
        return PriceQuote(
            instrument_id=instrument.id,
            price=price,
            as_of=from_epoch(updated) if updated else utc_now(),
            source=self.source_name,
        )

    def _fetch_history(self, instrument: Instrument, start: datetime, end: datetime) -> List[PricePoint]:
        coin_id = instrument.price_feed_key
        if not coin_id:
            raise PriceFeedError(f"{instrument.id} has no coin id")
        data = self._get_json(f"{self.base_url}/coins/{coin_id}/market_chart/range", {
            'vs_currency': REFERENCE_CURRENCY.lower(),
            'from': int(start.timestamp()),
            'to': int(end.timestamp()),
        })
        try:
            return [PricePoint(time=from_epoch(ms), price=to_decimal(price)) for ms, price in data['prices']]
        except (KeyError, TypeError, ValueError) as e:
            raise PriceFeedError(f"Unexpected CoinGecko history for {coin_id}") from e


class FinnhubPriceFeed(PriceFeed):
    """Finnhub REST API; an alternative equity source that needs an API key."""

    source_name = "finnhub"

    def __init__(self, api_key: str, timeout: float = DEFAULT_PRICE_TIMEOUT_SECONDS,
                 exchange_rates: Optional[RateLookup] = None,
                 base_url: str = FINNHUB_API_URL):
        super().__init__(timeout, exchange_rates)
        if not api_key:
            raise ValueError("Finnhub API key is required (set FINNHUB_API_KEY)")
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')

    def _fetch_last_price(self, instrument: Instrument) -> Optional[PriceQuote]:
        symbol = instrument.price_feed_key
        if not symbol:
            raise PriceFeedError(f"{instrument.id} has no ticker")
        data = self._get_json(f"{self.base_url}/quote", {'symbol': symbol, 'token': self.api_key})
        try:
            price = to_decimal(data['c'])
        except (KeyError, TypeError, ValueError) as e:
            raise PriceFeedError(f"Unexpected Finnhub response for {symbol}: {data!r}") from e
        if price <= 0:
            # Finnhub answers unknown symbols with zeros
            raise PriceFeedError(f"Finnhub has no quote for {symbol}")
        timestamp = data.get('t')
        return PriceQuote(
            instrument_id=instrument.id,
            price=self._to_reference(price, _quote_currency(instrument)),
            as_of=from_epoch(timestamp) if timestamp else utc_now(),
            source=self.source_name,
        )

    def _fetch_history(self, instrument: Instrument, start: datetime, end: datetime) -> List[PricePoint]:
        symbol = instrument.price_feed_key
        data = self._get_json(f"{self.base_url}/stock/candle", {
            'symbol': symbol,
            'resolution': 'D',
            'from': int(start.timestamp()),
            'to': int(end.timestamp()),
            'token': self.api_key,
        })
        if not isinstance(data, dict) or data.get('s') != 'ok':
            raise PriceFeedError(f"Finnhub returned no candles for {symbol}")
        currency = _quote_currency(instrument)
        try:
            return [
                PricePoint(time=from_epoch(ts), price=self._to_reference(to_decimal(close), currency))
                for ts, close in zip(data['t'], data['c'])
            ]
        except (KeyError, TypeError, ValueError) as e:
            raise PriceFeedError(f"Unexpected Finnhub candles for {symbol}") from e


class StaticPriceFeed(PriceFeed):
    """In-memory feed for offline use and tests.

    Prices and histories are set explicitly; instruments listed in
    ``failing`` behave like an unreachable upstream.
    """

    source_name = "static"

    def __init__(self, prices: Optional[Dict[str, Decimal]] = None,
                 histories: Optional[Dict[str, Iterable[PricePoint]]] = None,
                 as_of: Optional[datetime] = None):
        super().__init__()
        self.prices: Dict[str, Decimal] = {k: to_decimal(v) for k, v in (prices or {}).items()}
        self.histories: Dict[str, List[PricePoint]] = {k: list(v) for k, v in (histories or {}).items()}
        self.as_of = as_of
        self.failing: set = set()
        self.history_calls = 0

    def set_price(self, instrument_id: str, price) -> None:
        self.prices[instrument_id] = to_decimal(price)

    def set_history(self, instrument_id: str, points: Iterable[PricePoint]) -> None:
        self.histories[instrument_id] = list(points)

    def _fetch_last_price(self, instrument: Instrument) -> Optional[PriceQuote]:
        if instrument.id in self.failing:
            raise PriceFeedError(f"Simulated failure for {instrument.id}")
        price = self.prices.get(instrument.id)
        if price is None:
            return None
        return PriceQuote(instrument_id=instrument.id, price=price, as_of=self.as_of or utc_now(),
                          source=self.source_name)

    def _fetch_history(self, instrument: Instrument, start: datetime, end: datetime) -> List[PricePoint]:
        self.history_calls += 1
        if instrument.id in self.failing:
            raise PriceFeedError(f"Simulated failure for {instrument.id}")
        return [p for p in self.histories.get(instrument.id, []) if start <= p.time <= end]


class CompositePriceFeed(PriceFeed):
    """Routes each instrument to the feed for its kind.

    Non-liquid instruments have no feed; they are always unavailable.
    """

    source_name = "composite"

    def __init__(self, crypto_feed: Optional[PriceFeed] = None, equity_feed: Optional[PriceFeed] = None):
        super().__init__()
        self.crypto_feed = crypto_feed
        self.equity_feed = equity_feed

    def _feed_for(self, instrument: Instrument) -> Optional[PriceFeed]:
        if isinstance(instrument, CryptoInstrument):
            return self.crypto_feed
        if isinstance(instrument, EquityInstrument):
            return self.equity_feed
        if isinstance(instrument, NonLiquidInstrument):
            return None
        raise TypeError(f"Unknown instrument type: {type(instrument).__name__}")

    def get_last_price(self, instrument: Instrument) -> Optional[PriceQuote]:
        feed = self._feed_for(instrument)
        return feed.get_last_price(instrument) if feed is not None else None

    def get_historical_series(self, instrument: Instrument, start: datetime,
                              end: datetime) -> List[PricePoint]:
        feed = self._feed_for(instrument)
        return feed.get_historical_series(instrument, start, end) if feed is not None else []

    def _fetch_last_price(self, instrument: Instrument) -> Optional[PriceQuote]:
        return self.get_last_price(instrument)

    def _fetch_history(self, instrument: Instrument, start: datetime, end: datetime) -> List[PricePoint]:
        return self.get_historical_series(instrument, start, end)
