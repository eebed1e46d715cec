"""Concurrent price refresh.

PriceService fans quote and history requests out to a price feed on a
thread pool and gives up on requests still outstanding after the timeout.
Instruments it cannot price live are served from the last-known-price
cache and flagged stale. It never raises for feed problems.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeoutError
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from config.constants import DEFAULT_PRICE_TIMEOUT_SECONDS, DEFAULT_PRICE_WORKERS
from data.models.instrument import Instrument
from data.models.market_data import PricePoint, PriceQuote
from market_data.price_cache import PriceCache
from market_data.price_feed import PriceFeed
from utils.timezone_utils import utc_now

logger = logging.getLogger(__name__)


class PriceService:
    """Refreshes quotes for a set of instruments.

    Non-liquid instruments are skipped; they are valued by their growth
    estimate and never hit a feed.
    """

    def __init__(self, feed: PriceFeed, cache: Optional[PriceCache] = None,
                 timeout: float = DEFAULT_PRICE_TIMEOUT_SECONDS,
                 max_workers: int = DEFAULT_PRICE_WORKERS):
        self.feed = feed
        self.cache = cache or PriceCache()
        self.timeout = timeout
        self.max_workers = max(1, max_workers)

    def refresh(self, instruments: Iterable[Instrument],
                now: Optional[datetime] = None) -> Dict[str, PriceQuote]:
        """
        Fetch current quotes for every liquid instrument.

        Args:
            instruments: Instruments to price
            now: Current time (for cache bookkeeping)

        Returns:
            Quotes by instrument id. Instruments with neither a live nor a
            cached price are absent; cached quotes are marked stale.
        """
        when = now or utc_now()
        liquid = {i.id: i for i in instruments if i.is_liquid}
        if not liquid:
            return {}

        quotes: Dict[str, PriceQuote] = {}
        executor = ThreadPoolExecutor(max_workers=min(self.max_workers, len(liquid)))
        future_to_id = {executor.submit(self.cache.resolve, inst, self.feed, when): inst_id
                        for inst_id, inst in liquid.items()}
        try:
            for future in as_completed(future_to_id, timeout=self.timeout):
                inst_id = future_to_id[future]
                try:
                    quote = future.result()
                except Exception as e:
                    # Feeds report failures as None; anything else is an adapter bug
                    logger.error(f"Price fetch for {inst_id} raised unexpectedly: {e}")
                    continue
                if quote is not None:
                    quotes[inst_id] = quote
        except FuturesTimeoutError:
            pending = [inst_id for f, inst_id in future_to_id.items() if not f.done()]
            logger.warning(f"Price refresh timed out after {self.timeout}s; pending: {', '.join(sorted(pending))}")
        finally:
            # Do not wait for slow requests; a late quote still lands in the cache
            executor.shutdown(wait=False, cancel_futures=True)

        for inst_id, instrument in liquid.items():
            if inst_id in quotes:
                continue
            cached = self.cache.get(inst_id, when)
            if cached is not None:
                logger.info(f"Using cached price for {instrument.display_symbol} from {cached.as_of}")
                quotes[inst_id] = cached.as_stale()
            else:
                logger.warning(f"No price available for {instrument.display_symbol}")

        live = sum(1 for q in quotes.values() if not q.is_stale)
        logger.info(f"Price refresh complete: {live} live, {len(quotes) - live} cached, "
                    f"{len(liquid) - len(quotes)} unavailable")
        return quotes

    def fetch_histories(self, instruments: Iterable[Instrument], start: datetime,
                        end: datetime) -> Dict[str, List[PricePoint]]:
        """
        Fetch price history for every liquid instrument concurrently.

        Returns:
            Series by instrument id; instruments without history map to []
        """
        liquid = {i.id: i for i in instruments if i.is_liquid}
        histories: Dict[str, List[PricePoint]] = {inst_id: [] for inst_id in liquid}
        if not liquid:
            return histories

        executor = ThreadPoolExecutor(max_workers=min(self.max_workers, len(liquid)))
        future_to_id = {executor.submit(self.feed.get_historical_series, inst, start, end): inst_id
                        for inst_id, inst in liquid.items()}
        try:
            for future in as_completed(future_to_id, timeout=self.timeout):
                inst_id = future_to_id[future]
                try:
                    histories[inst_id] = future.result()
                except Exception as e:
                    logger.error(f"History fetch for {inst_id} raised unexpectedly: {e}")
        except FuturesTimeoutError:
            logger.warning(f"History fetch timed out after {self.timeout}s")
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        return histories
