"""
Market data module for fetching and caching instrument prices.

This module provides:
- PriceFeed: Price feed contract and adapters (Yahoo, CoinGecko, Finnhub, static)
- PriceCache: Last-known-price cache with optional persistence
- PriceService: Concurrent refresh with timeout and cache fallback
"""

from .price_feed import (
    PriceFeed,
    PriceFeedError,
    YahooPriceFeed,
    CoinGeckoPriceFeed,
    FinnhubPriceFeed,
    StaticPriceFeed,
    CompositePriceFeed
)
from .price_cache import PriceCache
from .price_service import PriceService

__all__ = [
    'PriceFeed',
    'PriceFeedError',
    'YahooPriceFeed',
    'CoinGeckoPriceFeed',
    'FinnhubPriceFeed',
    'StaticPriceFeed',
    'CompositePriceFeed',
    'PriceCache',
    'PriceService'
]
