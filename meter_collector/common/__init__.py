"""
Common Utilities

Shared modules used across all services:
- config.py - Configuration dataclasses
- exceptions.py - Custom exception classes
- logging_setup.py - Structured logging setup
- models.py - Collection domain models
- scheduler.py - Non-overlapping interval scheduler
"""

from .config import (
    CollectorConfig,
    CollectionSettings,
    BatchSizeSettings,
    BACnetSettings,
    StoreSettings,
    ServiceSettings,
    StoreBackend,
    load_collector_config,
    load_config_file,
    validate_collector_config,
)
from .exceptions import (
    CollectorError,
    ConfigError,
    LoadError,
    DeviceError,
    CommunicationError,
    ProtocolError,
    ReadTimeoutError,
    WriteError,
)
from .logging_setup import (
    setup_logging,
    configure_from_env,
    get_service_logger,
    log_property_read,
    log_cycle_summary,
)
from .scheduler import CycleScheduler, SchedulerState

__all__ = [
    # Config
    "CollectorConfig",
    "CollectionSettings",
    "BatchSizeSettings",
    "BACnetSettings",
    "StoreSettings",
    "ServiceSettings",
    "StoreBackend",
    "load_collector_config",
    "load_config_file",
    "validate_collector_config",
    # Exceptions
    "CollectorError",
    "ConfigError",
    "LoadError",
    "DeviceError",
    "CommunicationError",
    "ProtocolError",
    "ReadTimeoutError",
    "WriteError",
    # Logging
    "setup_logging",
    "configure_from_env",
    "get_service_logger",
    "log_property_read",
    "log_cycle_summary",
    # Scheduling
    "CycleScheduler",
    "SchedulerState",
]
