"""
Config Service - Meter Configuration

Responsibilities:
- Load active meters and their registers from the configuration store
- Validate every row independently
- Keep the last good snapshot when the store is unreachable
"""

from .cache import ConfigCache, CacheSnapshot
from .store import ConfigStore, HttpConfigStore, SQLiteConfigStore, create_config_store
from .validator import RegisterEntryValidator, ValidationReport

__all__ = [
    "ConfigCache",
    "CacheSnapshot",
    "ConfigStore",
    "HttpConfigStore",
    "SQLiteConfigStore",
    "create_config_store",
    "RegisterEntryValidator",
    "ValidationReport",
]
