"""
Custom Exception Classes for the Meter Collector

Hierarchical exception structure for error handling across services.
"""


class CollectorError(Exception):
    """Base exception for all meter collector errors"""

    def __init__(self, message: str, recoverable: bool = True):
        self.message = message
        self.recoverable = recoverable
        super().__init__(message)


class ConfigError(CollectorError):
    """Configuration-related errors"""

    def __init__(self, message: str, recoverable: bool = True):
        super().__init__(f"Config Error: {message}", recoverable)


class LoadError(CollectorError):
    """Configuration store could not be queried or returned unusable data"""

    def __init__(self, message: str, source: str | None = None):
        self.source = source
        super().__init__(f"Load Error: {message}", recoverable=True)


class DeviceError(CollectorError):
    """Device communication errors"""

    def __init__(
        self,
        message: str,
        meter_id: str | None = None,
        address: str | None = None,
        recoverable: bool = True,
    ):
        self.meter_id = meter_id
        self.address = address
        super().__init__(f"Device Error: {message}", recoverable)


class CommunicationError(DeviceError):
    """Transport-level failure: device unreachable or stack unavailable"""

    def __init__(
        self,
        message: str,
        meter_id: str | None = None,
        host: str | None = None,
        port: int | None = None,
    ):
        self.host = host
        self.port = port
        address = f"{host}:{port}" if host else None
        super().__init__(message, meter_id, address, recoverable=True)


class ProtocolError(DeviceError):
    """Device answered with an error (reject, abort, unknown object)"""


class ReadTimeoutError(DeviceError):
    """No answer from the device within the allotted time"""

    def __init__(self, message: str, timeout_ms: float, address: str | None = None):
        self.timeout_ms = timeout_ms
        super().__init__(message, address=address, recoverable=True)


class WriteError(CollectorError):
    """Persisting readings failed"""

    def __init__(self, message: str, meter_id: str | None = None, count: int = 0):
        self.meter_id = meter_id
        self.count = count
        super().__init__(f"Write Error: {message}", recoverable=True)
