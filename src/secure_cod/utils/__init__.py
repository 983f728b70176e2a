"""
Utilities Module

This module contains shared utilities and helper functions.
"""

from .config import Config
from .logging import for_order, get_logger, setup_logging
from .money import to_amount, to_paise, format_amount, sanitize_phone_number, phone_key

__all__ = [
    "Config",
    "setup_logging",
    "get_logger",
    "for_order",
    "to_amount",
    "to_paise",
    "format_amount",
    "sanitize_phone_number",
    "phone_key",
]
