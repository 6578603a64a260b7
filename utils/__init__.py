"""
Utility modules for the settlement service.
"""

from .formatting import format_currency, format_percent
from .config import Config
from .logging_setup import JsonFormatter, setup_logging

__all__ = ["format_currency", "format_percent", "Config", "JsonFormatter", "setup_logging"]
