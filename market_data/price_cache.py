"""
Last-known-price cache with optional persistence.

This module provides the PriceCache class. It keeps the most recent quote
per instrument so a valuation can fall back to the last known price when a
feed is unreachable. A quote never replaces a newer one: responses that
arrive out of order are discarded.
"""

import json
import logging
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Optional, Union

from config.constants import DEFAULT_CACHE_TTL_MINUTES
from data.models.instrument import Instrument
from data.models.market_data import PriceQuote
from utils.timezone_utils import utc_now

logger = logging.getLogger(__name__)


class CacheEntry:
    """Individual cache entry for a quote."""

    def __init__(self, quote: PriceQuote, fetched_at: datetime, ttl: timedelta):
        self.quote = quote
        self.fetched_at = fetched_at
        self.ttl = ttl

    def is_expired(self, now: datetime) -> bool:
        return now - self.fetched_at > self.ttl


class PriceCache:
    """
    In-memory quote cache keyed by instrument id.

    Entries older than the TTL are still served, but as stale quotes; they
    are only dropped explicitly. Safe to update from worker threads.
    """

    def __init__(self, default_ttl_minutes: int = DEFAULT_CACHE_TTL_MINUTES,
                 cache_file: Optional[Union[str, Path]] = None):
        """
        Initialize the price cache.

        Args:
            default_ttl_minutes: Minutes a quote counts as fresh
            cache_file: Optional JSON file the cache is loaded from and saved to
        """
        self.default_ttl = timedelta(minutes=default_ttl_minutes)
        self.cache_file = Path(cache_file) if cache_file else None
        self._cache: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

        if self.cache_file is not None:
            self._load_persistent_cache()

    def update(self, quote: PriceQuote, now: Optional[datetime] = None) -> bool:
        """
        Store a quote unless a newer one is already cached.

        Args:
            quote: Quote from a price feed
            now: Fetch time (defaults to the current time)

        Returns:
            True if the quote was stored, False if it was superseded
        """
        fetched_at = now or utc_now()
        with self._lock:
            existing = self._cache.get(quote.instrument_id)
            if existing is not None and quote.as_of < existing.quote.as_of:
                logger.debug(f"Ignoring older quote for {quote.instrument_id} "
                             f"({quote.as_of} < {existing.quote.as_of})")
                return False
            stored = quote if not quote.is_stale else PriceQuote(
                instrument_id=quote.instrument_id, price=quote.price, as_of=quote.as_of, source=quote.source)
            self._cache[quote.instrument_id] = CacheEntry(stored, fetched_at, self.default_ttl)
        return True

    def get(self, instrument_id: str, now: Optional[datetime] = None) -> Optional[PriceQuote]:
        """
        Get the cached quote for an instrument.

        Returns:
            The cached quote, marked stale when older than the TTL, or None
        """
        with self._lock:
            entry = self._cache.get(instrument_id)
        if entry is None:
            self._misses += 1
            return None
        self._hits += 1
        if entry.is_expired(now or utc_now()):
            return entry.quote.as_stale()
        return entry.quote

    def is_fresh(self, instrument_id: str, now: Optional[datetime] = None) -> bool:
        with self._lock:
            entry = self._cache.get(instrument_id)
        return entry is not None and not entry.is_expired(now or utc_now())

    def resolve(self, instrument: Instrument, feed, now: Optional[datetime] = None) -> Optional[PriceQuote]:
        """
        Fetch a live quote, falling back to the cache.

        Args:
            instrument: Instrument to price
            feed: PriceFeed to query
            now: Current time

        Returns:
            Fresh quote, the newer cached quote if the live one was
            superseded, a stale cached quote if the feed failed, or None
        """
        quote = feed.get_last_price(instrument)
        if quote is not None:
            if self.update(quote, now):
                return quote
            return self.get(instrument.id, now)
        cached = self.get(instrument.id, now)
        if cached is None:
            return None
        logger.info(f"Using cached price for {instrument.display_symbol} from {cached.as_of}")
        return cached.as_stale()

    def invalidate(self, instrument_id: str) -> None:
        """Drop the cached quote for an instrument."""
        with self._lock:
            if self._cache.pop(instrument_id, None) is not None:
                logger.debug(f"Invalidated cache for {instrument_id}")

    def invalidate_all(self) -> None:
        """Invalidate all cache entries."""
        with self._lock:
            self._cache.clear()
        logger.debug("Invalidated entire price cache")

    def get_cache_stats(self) -> Dict[str, Any]:
        """
        Get cache statistics.

        Returns:
            Dictionary with cache statistics
        """
        with self._lock:
            entries = list(self._cache.values())
        now = utc_now()
        sources: Dict[str, int] = {}
        for entry in entries:
            sources[entry.quote.source] = sources.get(entry.quote.source, 0) + 1
        timestamps = [entry.fetched_at for entry in entries]
        return {
            "total_entries": len(entries),
            "expired_entries": sum(1 for entry in entries if entry.is_expired(now)),
            "sources": sources,
            "hits": self._hits,
            "misses": self._misses,
            "oldest_entry": min(timestamps) if timestamps else None,
            "newest_entry": max(timestamps) if timestamps else None,
        }

    def save_persistent_cache(self) -> None:
        """Save cached quotes to the cache file, if one is configured."""
        if self.cache_file is None:
            return
        with self._lock:
            payload = {
                instrument_id: {**entry.quote.to_dict(), 'fetched_at': entry.fetched_at.isoformat()}
                for instrument_id, entry in self._cache.items()
            }
        try:
            self.cache_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.cache_file, 'w', encoding='utf-8') as f:
                json.dump(payload, f, indent=2)
            logger.debug(f"Saved {len(payload)} cached prices to {self.cache_file}")
        except OSError as e:
            logger.warning(f"Failed to save price cache: {e}")

    def _load_persistent_cache(self) -> None:
        """Load cached quotes from disk if available."""
        if not self.cache_file.exists():
            return
        try:
            with open(self.cache_file, 'r', encoding='utf-8') as f:
                payload = json.load(f)
            loaded = {}
            for instrument_id, data in payload.items():
                quote = PriceQuote.from_dict(data)
                fetched_at = datetime.fromisoformat(data['fetched_at']) if data.get('fetched_at') else quote.as_of
                loaded[instrument_id] = CacheEntry(quote, fetched_at, self.default_ttl)
            self._cache = loaded
            logger.debug(f"Loaded persistent price cache with {len(loaded)} entries")
        except (OSError, ValueError, KeyError, TypeError, ArithmeticError) as e:
            logger.warning(f"Failed to load price cache {self.cache_file}: {e}")
            self._cache = {}
