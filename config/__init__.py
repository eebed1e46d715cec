"""Configuration management for the portfolio ledger."""

from .settings import Settings, get_settings, configure_system
from .constants import *

__all__ = [
    'Settings',
    'get_settings',
    'configure_system',
    # Constants are re-exported via *
]
