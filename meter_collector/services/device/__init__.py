"""
Device Service - BACnet Communication

Responsibilities:
- Read named properties from one device per call
- Adaptive read-multiple batching with sequential fallback
- Per-meter batch size memory across cycles
"""

from .batch_size import BatchSizeManager
from .protocol_client import (
    DeviceProtocolClient,
    ErrorKind,
    PropertyError,
    PropertyRequest,
    PropertyTransport,
    PropertyValue,
    ReadPropertiesResult,
)
from .bacnet_client import BACnetTransport

__all__ = [
    "BatchSizeManager",
    "DeviceProtocolClient",
    "ErrorKind",
    "PropertyError",
    "PropertyRequest",
    "PropertyTransport",
    "PropertyValue",
    "ReadPropertiesResult",
    "BACnetTransport",
]
