"""Layered ledger configuration: defaults, JSON file, environment."""

from __future__ import annotations

import os
import json
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple
import logging

from .constants import (
    DEFAULT_CACHE_TTL_MINUTES,
    DEFAULT_DATA_DIR,
    DEFAULT_DISPLAY_CURRENCY,
    DEFAULT_EQUITY_SAMPLES,
    DEFAULT_LOG_FORMAT,
    DEFAULT_LOG_LEVEL,
    DEFAULT_PRICE_TIMEOUT_SECONDS,
    DEFAULT_PRICE_WORKERS,
    DEFAULT_REPOSITORY_TYPE,
    DEFAULT_USD_IDR_RATE,
    LEDGER_CSV_NAME,
    LEDGER_JSON_NAME,
    LOG_FILE,
    PRICE_CACHE_JSON_NAME,
    REFERENCE_CURRENCY,
)

logger = logging.getLogger(__name__)


def _flag(value: str) -> bool:
    return value.strip().lower() in ('true', '1', 'yes', 'on')


# Environment variable -> (dotted key, converter)
ENVIRONMENT_OVERRIDES: Tuple[Tuple[str, str, Callable[[str], Any]], ...] = (
    ('BLOOMBOARD_REPOSITORY_TYPE', 'repository.type', str.lower),
    ('BLOOMBOARD_DISPLAY_CURRENCY', 'currency.display', str.upper),
    ('BLOOMBOARD_TRACK_CASH', 'ledger.track_cash', _flag),
    ('BLOOMBOARD_PRICE_TIMEOUT', 'price_feed.timeout_seconds', float),
    ('FINNHUB_API_KEY', 'price_feed.finnhub_api_key', str),
)


def _default_config() -> Dict[str, Any]:
    data_dir = Path(DEFAULT_DATA_DIR)
    return {
        'repository': {
            'type': DEFAULT_REPOSITORY_TYPE,
            'json': {'path': str(data_dir / LEDGER_JSON_NAME)},
            'csv': {'path': str(data_dir / LEDGER_CSV_NAME)},
        },
        'price_feed': {
            'timeout_seconds': DEFAULT_PRICE_TIMEOUT_SECONDS,
            'max_workers': DEFAULT_PRICE_WORKERS,
            'cache_ttl_minutes': DEFAULT_CACHE_TTL_MINUTES,
            'cache_file': str(data_dir / PRICE_CACHE_JSON_NAME),
            'finnhub_api_key': '',
            'equity_source': 'yahoo',
        },
        'currency': {
            'reference': REFERENCE_CURRENCY,
            'display': DEFAULT_DISPLAY_CURRENCY,
            'default_exchange_rate': str(DEFAULT_USD_IDR_RATE),
            'live_rates': True,
        },
        'ledger': {'track_cash': True},
        'equity': {'samples': DEFAULT_EQUITY_SAMPLES},
        'logging': {
            'level': DEFAULT_LOG_LEVEL,
            'file': LOG_FILE,
            'format': DEFAULT_LOG_FORMAT,
        },
    }


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> None:
    """Merge ``override`` into ``base`` in place, descending into nested dicts."""
    for key, value in override.items():
        if isinstance(base.get(key), dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


class Settings:
    """Ledger settings.

    Values are layered: built-in defaults, then an optional JSON file,
    then environment variables. Keys are addressed with dot notation,
    e.g. ``settings.get('price_feed.timeout_seconds')``.
    """

    def __init__(self, config_file: Optional[str] = None):
        """Initialize settings.

        Args:
            config_file: Optional path to a JSON configuration file
        """
        self._config: Dict[str, Any] = _default_config()
        self._config_file = config_file

        if config_file:
            self.load_from_file(config_file)
        self._apply_environment()

    def _apply_environment(self) -> None:
        for variable, key, convert in ENVIRONMENT_OVERRIDES:
            raw = os.getenv(variable)
            if not raw:
                continue
            try:
                self.set(key, convert(raw))
            except ValueError:
                logger.warning(f"Ignoring invalid {variable}: {raw}")

        # The data file belongs to whichever repository type is active
        data_file = os.getenv('BLOOMBOARD_DATA_FILE')
        if data_file:
            self.set(f'repository.{self.get_repository_type()}.path', data_file)

        if self.is_development_mode():
            self.set('logging.level', 'DEBUG')

    def load_from_file(self, config_file: str) -> None:
        """Merge a JSON configuration file over the current values.

        A missing or unreadable file is logged and ignored.
        """
        config_path = Path(config_file)
        if not config_path.exists():
            logger.warning(f"Configuration file not found: {config_file}")
            return

        try:
            file_config = json.loads(config_path.read_text(encoding='utf-8'))
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load configuration file {config_file}: {e}")
            return
        if not isinstance(file_config, dict):
            logger.error(f"Configuration file {config_file} must contain a JSON object")
            return

        _deep_merge(self._config, file_config)
        logger.info(f"Loaded configuration from: {config_file}")

    def get(self, key: str, default: Any = None) -> Any:
        """Get a value by dotted key, or ``default`` when any part is missing."""
        node: Any = self._config
        for part in key.split('.'):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def set(self, key: str, value: Any) -> None:
        """Set a value by dotted key, creating intermediate sections."""
        *parents, leaf = key.split('.')
        node = self._config
        for part in parents:
            node = node.setdefault(part, {})
        node[leaf] = value

    def get_repository_type(self) -> str:
        return str(self.get('repository.type', DEFAULT_REPOSITORY_TYPE)).lower()

    def get_repository_config(self) -> Dict[str, Any]:
        """Options of the active repository type, plus its ``type``."""
        repo_type = self.get_repository_type()
        return {'type': repo_type, **self.get(f'repository.{repo_type}', {})}

    def get_price_timeout(self) -> float:
        return float(self.get('price_feed.timeout_seconds', DEFAULT_PRICE_TIMEOUT_SECONDS))

    def get_display_currency(self) -> str:
        return str(self.get('currency.display', DEFAULT_DISPLAY_CURRENCY)).upper()

    def get_reference_currency(self) -> str:
        return str(self.get('currency.reference', REFERENCE_CURRENCY)).upper()

    def tracks_cash(self) -> bool:
        """Whether the ledger keeps a trading cash balance."""
        return bool(self.get('ledger.track_cash', True))

    def is_development_mode(self) -> bool:
        return _flag(os.getenv('BLOOMBOARD_DEV', 'false'))

    def get_logging_config(self) -> Dict[str, Any]:
        return self.get('logging', {})


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance, creating it with defaults on first use."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def configure_system(config_file: Optional[str] = None) -> Settings:
    """Replace the global settings with ones loaded from ``config_file``."""
    global _settings
    _settings = Settings(config_file)
    return _settings
