"""Portfolio management module.

This module provides the PortfolioManager class, the single entry point the
CLI talks to. It wires the ledger to its repository, the price service and
the currency handler, converts amounts entered in the display currency, and
feeds fresh prices back into the ledger as last known prices.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from config.settings import Settings, get_settings
from data.models.instrument import Instrument
from data.models.market_data import PriceQuote
from data.models.transaction import Transaction
from data.repositories.csv_repository import export_ledger, import_ledger
from data.repositories.repository_factory import create_repository_from_settings
from financial.currency_handler import CurrencyHandler
from financial.pnl_calculator import (
    PnLCalculator,
    PortfolioValuation,
    TradeStats,
    calculate_trade_stats,
    realized_pnl_series,
)
from market_data.price_cache import PriceCache
from market_data.price_feed import (
    CoinGeckoPriceFeed,
    CompositePriceFeed,
    FinnhubPriceFeed,
    PriceFeed,
    StaticPriceFeed,
    YahooPriceFeed,
)
from market_data.price_service import PriceService
from .equity_timeline import EquityPoint, EquityTimeline
from .ledger import HoldingNotFoundError, Ledger

logger = logging.getLogger(__name__)


class PortfolioManagerError(Exception):
    """Base exception for portfolio manager operations."""
    pass


def build_price_feed(settings: Settings, currency_handler: CurrencyHandler) -> PriceFeed:
    """Create the composite price feed configured in settings.

    Equities come from Yahoo Finance unless ``price_feed.equity_source`` is
    ``finnhub`` and an API key is configured.
    """
    timeout = settings.get_price_timeout()
    reference = settings.get_reference_currency()

    def rate_lookup(currency: str) -> Decimal:
        return currency_handler.get_exchange_rate(reference, currency)

    equity_feed: PriceFeed = YahooPriceFeed(timeout=timeout, exchange_rates=rate_lookup)
    api_key = settings.get('price_feed.finnhub_api_key')
    if settings.get('price_feed.equity_source') == 'finnhub':
        if api_key:
            equity_feed = FinnhubPriceFeed(api_key, timeout=timeout, exchange_rates=rate_lookup)
        else:
            logger.warning("Finnhub selected but FINNHUB_API_KEY is not set; using Yahoo Finance")

    return CompositePriceFeed(
        crypto_feed=CoinGeckoPriceFeed(timeout=timeout, exchange_rates=rate_lookup),
        equity_feed=equity_feed,
    )


class PortfolioManager:
    """High-level portfolio operations over a ledger.

    Trading operations accept prices either in the reference currency or in
    the display currency; everything is converted before it reaches the
    ledger, which only ever sees reference-currency amounts.
    """

    def __init__(self, ledger: Ledger, price_service: PriceService,
                 currency_handler: Optional[CurrencyHandler] = None,
                 settings: Optional[Settings] = None):
        """Initialize portfolio manager.

        Args:
            ledger: Ledger to operate on
            price_service: Price refresh and history source
            currency_handler: Exchange rates and conversion
            settings: Settings instance (defaults to the global settings)
        """
        self.ledger = ledger
        self.price_service = price_service
        self.settings = settings or get_settings()
        self.currency_handler = currency_handler or CurrencyHandler(
            reference_currency=self.settings.get_reference_currency(), live_rates=False)
        self.calculator = PnLCalculator()
        self._quotes: Dict[str, PriceQuote] = {}
        logger.info(f"Portfolio manager initialized with {len(ledger.holdings)} holdings")

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, offline: bool = False) -> PortfolioManager:
        """Wire a manager from settings.

        Args:
            settings: Settings instance (defaults to the global settings)
            offline: Skip live prices and exchange rates

        Raises:
            RepositoryError: If the stored ledger cannot be read
        """
        settings = settings or get_settings()
        reference = settings.get_reference_currency()
        display = settings.get_display_currency()

        repository = create_repository_from_settings(settings)
        ledger = Ledger.load(repository, track_cash=settings.tracks_cash(), reference_currency=reference)

        currency_handler = CurrencyHandler(
            reference_currency=reference,
            timeout=settings.get_price_timeout(),
            live_rates=bool(settings.get('currency.live_rates', True)) and not offline,
            default_rates={(reference, display): settings.get('currency.default_exchange_rate')},
        )
        feed = StaticPriceFeed() if offline else build_price_feed(settings, currency_handler)
        cache = PriceCache(
            default_ttl_minutes=int(settings.get('price_feed.cache_ttl_minutes')),
            cache_file=settings.get('price_feed.cache_file'),
        )
        price_service = PriceService(
            feed,
            cache,
            timeout=settings.get_price_timeout(),
            max_workers=int(settings.get('price_feed.max_workers')),
        )
        return cls(ledger, price_service, currency_handler, settings)

    # ------------------------------------------------------------------
    # Currency

    @property
    def reference_currency(self) -> str:
        return self.ledger.reference_currency

    @property
    def display_currency(self) -> str:
        return self.settings.get_display_currency()

    @property
    def exchange_rate(self) -> Decimal:
        """Display-currency units per reference-currency unit."""
        return self.currency_handler.get_exchange_rate(self.reference_currency, self.display_currency)

    def _to_reference(self, amount: Any, currency: Optional[str]) -> Any:
        if currency is None or currency.upper() == self.reference_currency:
            return amount
        rate = self.currency_handler.get_exchange_rate(self.reference_currency, currency)
        return self.currency_handler.to_reference(amount, rate)

    # ------------------------------------------------------------------
    # Lookup

    def find_instrument(self, key: str) -> Instrument:
        """Find a known instrument by id or (case-insensitive) symbol.

        Raises:
            HoldingNotFoundError: If no instrument matches
        """
        instruments = self.ledger.instruments
        if key in instruments:
            return instruments[key]
        matches = [i for i in instruments.values() if i.display_symbol.upper() == key.upper()]
        # Prefer a currently held instrument when symbols collide
        held = [i for i in matches if self.ledger.get_holding(i.id) is not None]
        if held or matches:
            return (held or matches)[0]
        raise HoldingNotFoundError(f"No instrument matches {key!r}")

    # ------------------------------------------------------------------
    # Prices and valuation

    def refresh_prices(self) -> Dict[str, PriceQuote]:
        """Fetch current quotes for all holdings and record them as last known prices."""
        instruments = [h.instrument for h in self.ledger.holdings]
        quotes = self.price_service.refresh(instruments)
        for instrument_id, quote in quotes.items():
            if not quote.is_stale and quote.price > 0 and self.ledger.get_holding(instrument_id) is not None:
                self.ledger.record_price(instrument_id, quote.price, quote.as_of)
        self._quotes = quotes
        self.price_service.cache.save_persistent_cache()
        return quotes

    @property
    def quotes(self) -> Dict[str, PriceQuote]:
        return dict(self._quotes)

    def get_valuation(self, as_of: Optional[datetime] = None) -> PortfolioValuation:
        """Value the ledger with the most recently refreshed quotes."""
        return self.calculator.value_portfolio(self.ledger.snapshot(), self._quotes, as_of)

    def get_trade_stats(self) -> TradeStats:
        return calculate_trade_stats(self.ledger.transactions)

    def get_realized_series(self) -> List[Tuple[datetime, Decimal]]:
        return realized_pnl_series(self.ledger.transactions)

    def get_equity_series(self, samples: Optional[int] = None,
                          now: Optional[datetime] = None) -> List[EquityPoint]:
        """Rebuild the historical equity series (never cached)."""
        timeline = EquityTimeline(self.price_service, int(self.settings.get('equity.samples')))
        return timeline.build(self.ledger.snapshot(), samples, now)

    # ------------------------------------------------------------------
    # Trading

    def buy(self, instrument: Instrument, quantity: Any, price_per_unit: Any,
            currency: Optional[str] = None, timestamp: Any = None, note: Optional[str] = None) -> Transaction:
        """Buy units; ``currency`` is the currency the price is given in."""
        price = self._to_reference(price_per_unit, currency)
        return self.ledger.buy(instrument, quantity, price, timestamp=timestamp, note=note)

    def sell(self, key: str, quantity: Any, price_per_unit: Any,
             currency: Optional[str] = None, timestamp: Any = None, note: Optional[str] = None) -> Transaction:
        instrument = self.find_instrument(key)
        price = self._to_reference(price_per_unit, currency)
        return self.ledger.sell(instrument.id, quantity, price, timestamp=timestamp, note=note)

    def liquidate(self, key: str, price_per_unit: Any = None, currency: Optional[str] = None,
                  timestamp: Any = None) -> Transaction:
        """Sell a whole holding, at the latest refreshed quote when no price is given."""
        instrument = self.find_instrument(key)
        price = None
        if price_per_unit is not None:
            price = self._to_reference(price_per_unit, currency)
        elif instrument.is_liquid and instrument.id in self._quotes:
            price = self._quotes[instrument.id].price
        return self.ledger.liquidate(instrument.id, price, timestamp=timestamp)

    def deposit(self, amount: Any, currency: Optional[str] = None, timestamp: Any = None,
                note: Optional[str] = None) -> Transaction:
        currency = (currency or self.reference_currency).upper()
        return self.ledger.deposit(amount, currency, self._reference_per_unit(currency),
                                   timestamp=timestamp, note=note)

    def withdraw(self, amount: Any, currency: Optional[str] = None, timestamp: Any = None,
                 note: Optional[str] = None) -> Transaction:
        currency = (currency or self.reference_currency).upper()
        return self.ledger.withdraw(amount, currency, self._reference_per_unit(currency),
                                    timestamp=timestamp, note=note)

    def _reference_per_unit(self, currency: str) -> Decimal:
        if currency == self.reference_currency:
            return Decimal('1')
        return Decimal('1') / self.currency_handler.get_exchange_rate(self.reference_currency, currency)

    def reverse(self, transaction_id: str) -> Transaction:
        return self.ledger.reverse_transaction(transaction_id)

    def clear(self) -> None:
        self.ledger.clear()
        self._quotes = {}

    # ------------------------------------------------------------------
    # Export / import

    def export_text(self) -> str:
        prices = {instrument_id: q.price for instrument_id, q in self._quotes.items()}
        return export_ledger(self.ledger.snapshot(), self.display_currency, self.exchange_rate, prices)

    def export_csv(self, path: str) -> Path:
        """Write the ledger export file.

        Raises:
            PortfolioManagerError: If the file cannot be written
        """
        target = Path(path)
        text = self.export_text()
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(text, encoding='utf-8')
        except OSError as e:
            logger.error(f"Failed to export ledger to {target}: {e}")
            raise PortfolioManagerError(f"Failed to export ledger to {target}: {e}") from e
        logger.info(f"Exported ledger to {target}")
        return target

    def import_csv(self, path: str) -> Dict[str, str]:
        """Replace the ledger with the contents of an export file.

        Returns:
            The export's metadata

        Raises:
            PortfolioManagerError: If the file cannot be read
            DataValidationError: If the file is not a valid export
        """
        source = Path(path)
        try:
            text = source.read_text(encoding='utf-8')
        except OSError as e:
            logger.error(f"Failed to read import file {source}: {e}")
            raise PortfolioManagerError(f"Failed to read import file {source}: {e}") from e
        state, metadata = import_ledger(text)
        self.ledger.replace_state(state)
        self._quotes = {}
        return metadata
