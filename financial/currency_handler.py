"""
Currency handling module.

The ledger keeps every amount in a single reference currency (USD). This
module converts amounts entered or displayed in another currency (IDR by
default), fetches live exchange rates, and formats money for display.
"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional, Tuple, Union

import requests

from config.constants import (
    COINGECKO_API_URL,
    CURRENCY_SYMBOLS,
    DEFAULT_PRICE_TIMEOUT_SECONDS,
    DEFAULT_USD_IDR_RATE,
    EXCHANGE_RATE_API_URL,
    REFERENCE_CURRENCY,
)
from .calculations import to_decimal

logger = logging.getLogger(__name__)

# Type alias for numeric inputs
NumericInput = Union[float, int, str, Decimal]


class CurrencyHandler:
    """
    Handles currency conversion, exchange rate lookup and money formatting.

    Rates are expressed as display-currency units per reference-currency
    unit (e.g. 16000 IDR per USD) and cached per currency pair for the
    lifetime of the handler.
    """

    # Fallback exchange rates when no live source answers
    DEFAULT_RATES = {
        ('USD', 'IDR'): DEFAULT_USD_IDR_RATE,
        ('IDR', 'USD'): Decimal('1') / DEFAULT_USD_IDR_RATE,
        ('USD', 'USD'): Decimal('1'),
        ('IDR', 'IDR'): Decimal('1'),
    }

    def __init__(self, reference_currency: str = REFERENCE_CURRENCY,
                 timeout: float = DEFAULT_PRICE_TIMEOUT_SECONDS,
                 live_rates: bool = True,
                 default_rates: Optional[Dict[Tuple[str, str], NumericInput]] = None,
                 session: Optional[requests.Session] = None):
        """
        Initialize currency handler.

        Args:
            reference_currency: Currency the ledger stores amounts in
            timeout: Timeout in seconds for live rate requests
            live_rates: Whether to query live rate APIs at all
            default_rates: Overrides for the fallback rate table
            session: Optional requests session (tests inject a mock)
        """
        self.reference_currency = reference_currency.upper()
        self.timeout = timeout
        self.live_rates = live_rates
        self.session = session or requests.Session()
        self._default_rates = dict(self.DEFAULT_RATES)
        for pair, rate in (default_rates or {}).items():
            self._default_rates[pair] = to_decimal(rate)
        self._exchange_rate_cache: Dict[Tuple[str, str], Decimal] = {}

    def to_reference(self, amount: NumericInput, rate: NumericInput) -> Decimal:
        """Convert an amount in display currency to the reference currency."""
        return to_decimal(amount) / to_decimal(rate)

    def to_display(self, amount: NumericInput, rate: NumericInput) -> Decimal:
        """Convert an amount in the reference currency to display currency."""
        return to_decimal(amount) * to_decimal(rate)

    def get_exchange_rate(self, from_currency: str, to_currency: str) -> Decimal:
        """
        Get the exchange rate between two currencies.

        Args:
            from_currency: Source currency code
            to_currency: Target currency code

        Returns:
            Decimal: Units of to_currency per unit of from_currency
        """
        from_currency = from_currency.upper()
        to_currency = to_currency.upper()
        if from_currency == to_currency:
            return Decimal('1')

        cache_key = (from_currency, to_currency)
        if cache_key in self._exchange_rate_cache:
            return self._exchange_rate_cache[cache_key]

        rate = self._fetch_exchange_rate(from_currency, to_currency)
        self._exchange_rate_cache[cache_key] = rate
        return rate

    def _fetch_exchange_rate(self, from_currency: str, to_currency: str) -> Decimal:
        """Live rate when available, else the fallback table."""
        if self.live_rates:
            live_rate = self._get_live_exchange_rate(from_currency, to_currency)
            if live_rate is not None:
                return live_rate

        rate = self._default_rates.get((from_currency, to_currency))
        if rate is None:
            inverse = self._default_rates.get((to_currency, from_currency))
            if inverse is None:
                raise ValueError(f"No exchange rate available for {from_currency}->{to_currency}")
            rate = Decimal('1') / inverse
        logger.info(f"Using fallback exchange rate {from_currency}->{to_currency}: {rate}")
        return rate

    def _get_live_exchange_rate(self, from_currency: str, to_currency: str) -> Optional[Decimal]:
        """
        Get a live exchange rate.

        USD/IDR is read from the CoinGecko tether market (USDT tracks USD
        closely); other pairs go to exchangerate-api.com. Returns None if no
        source answers.
        """
        if {from_currency, to_currency} == {'USD', 'IDR'}:
            rate = self._get_tether_idr_rate()
            if rate is not None:
                return rate if from_currency == 'USD' else Decimal('1') / rate

        try:
            response = self.session.get(f"{EXCHANGE_RATE_API_URL}/{from_currency}", timeout=self.timeout)
            response.raise_for_status()
            rate = response.json().get('rates', {}).get(to_currency)
            if rate:
                logger.debug(f"Using exchangerate-api.com rate: {rate}")
                return to_decimal(rate)
        except (requests.RequestException, ValueError) as e:
            logger.debug(f"exchangerate-api.com lookup failed for {from_currency}->{to_currency}: {e}")

        return None

    def _get_tether_idr_rate(self) -> Optional[Decimal]:
        try:
            response = self.session.get(
                f"{COINGECKO_API_URL}/coins/markets",
                params={'vs_currency': 'idr', 'ids': 'tether'},
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
            if data and data[0].get('current_price'):
                rate = to_decimal(data[0]['current_price']).quantize(Decimal('1'), rounding=ROUND_HALF_UP)
                logger.debug(f"Using CoinGecko tether rate: {rate} IDR/USD")
                return rate
        except (requests.RequestException, ValueError, KeyError, IndexError, TypeError) as e:
            logger.debug(f"CoinGecko tether market lookup failed: {e}")
        return None

    def clear_exchange_rate_cache(self) -> None:
        """Clear the exchange rate cache."""
        self._exchange_rate_cache.clear()
        logger.info("Exchange rate cache cleared")


def format_money(value: NumericInput, currency: str = REFERENCE_CURRENCY) -> str:
    """
    Format an amount for display.

    IDR is shown rounded to whole rupiah with dot thousands separators;
    every other currency with three decimals and comma separators.

    Examples:
        >>> format_money(Decimal('1234567.4'), 'IDR')
        'Rp. 1.234.567'
        >>> format_money(Decimal('1234.5'), 'USD')
        '$ 1,234.500'
    """
    amount = to_decimal(value or 0)
    currency = currency.upper()
    if currency == 'IDR':
        whole = amount.quantize(Decimal('1'), rounding=ROUND_HALF_UP)
        return f"Rp. {int(whole):,}".replace(',', '.')
    symbol = CURRENCY_SYMBOLS.get(currency, currency)
    return f"{symbol} {amount.quantize(Decimal('0.001'), rounding=ROUND_HALF_UP):,.3f}"


def format_quantity(value: NumericInput) -> str:
    """
    Format a unit quantity for display.

    Fractional quantities below one keep up to six decimals; larger
    quantities are rounded to whole units.

    Examples:
        >>> format_quantity(Decimal('0.012300'))
        '0.0123'
        >>> format_quantity(Decimal('1500.4'))
        '1,500'
    """
    amount = to_decimal(value or 0)
    if amount == 0:
        return "0"
    if abs(amount) < 1:
        text = f"{amount.quantize(Decimal('0.000001'), rounding=ROUND_HALF_UP):f}"
        return text.rstrip('0').rstrip('.')
    return f"{int(amount.quantize(Decimal('1'), rounding=ROUND_HALF_UP)):,}"
