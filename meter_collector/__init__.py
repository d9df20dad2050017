"""
Meter Collector

Periodic BACnet/IP meter collection agent:
- common/               Config, logging, exceptions, models, scheduler
- services/config/      Meter and register configuration cache
- services/device/      Property reads with adaptive batching
- services/collection/  Collection cycles, status and the service itself
- storage/              Local SQLite catalog and reading store
"""

__version__ = "1.0.0"
