"""
Configuration package.

This package contains environment-driven settings and startup validation.
"""

from krakengrid.config.config import DEFAULT_SYMBOL, Settings
from krakengrid.config.config_validator import ConfigValidator, validate_and_log

__all__ = [
    "DEFAULT_SYMBOL",
    "Settings",
    "ConfigValidator",
    "validate_and_log",
]
