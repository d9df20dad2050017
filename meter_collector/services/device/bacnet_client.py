"""
BACnet/IP Transport

PropertyTransport implementation on the BAC0 stack.

The stack is started lazily on first use and shared by every device.
BAC0 request strings follow its "address objectType instance property"
format, e.g. "192.168.10.50:47808 analogInput 1 presentValue".
"""

import asyncio
import inspect
from typing import Any, Mapping, Sequence

from meter_collector.common.exceptions import CommunicationError, ProtocolError, ReadTimeoutError
from meter_collector.common.logging_setup import get_service_logger
from meter_collector.common.models import DeviceAddress
from .protocol_client import PropertyRequest

logger = get_service_logger("device.bacnet")

# Wildcard device instance, answered by any device for its own device object
WILDCARD_DEVICE_INSTANCE = 4194303

# BAC0 raises these (by class name) when the remote side never answered
_NO_RESPONSE_ERRORS = ("NoResponseFromController", "Timeout")


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class BACnetTransport:
    """
    BAC0-backed transport.

    Usage:
        transport = BACnetTransport(interface="0.0.0.0", port=47808)
        await transport.connect(DeviceAddress("10.0.0.5", 47808), 2000)
        values = await transport.read_multiple(address, requests, 5000)
        await transport.close()
    """

    def __init__(self, interface: str = "0.0.0.0", port: int = 47808):
        self.interface = interface
        self.port = port
        self._network = None
        self._start_lock = asyncio.Lock()

    @property
    def is_started(self) -> bool:
        return self._network is not None

    async def _get_network(self):
        """Start the BAC0 stack on first use"""
        async with self._start_lock:
            if self._network is not None:
                return self._network

            import BAC0

            try:
                if self.interface and self.interface != "0.0.0.0":
                    network = BAC0.lite(ip=self.interface, port=self.port)
                else:
                    # Auto-detect interface
                    network = BAC0.lite(port=self.port)
                self._network = await _maybe_await(network)
            except Exception as e:
                raise CommunicationError(
                    f"BACnet stack failed to start: {e}", host=self.interface, port=self.port
                ) from e

            logger.info(f"BACnet/IP stack started on {self.interface}:{self.port}")
            return self._network

    async def connect(self, address: DeviceAddress, timeout_ms: float) -> None:
        """Probe the device object; raises when the device does not answer"""
        network = await self._get_network()
        request = f"{address} device {WILDCARD_DEVICE_INSTANCE} objectName"
        try:
            await self._call(network.read, request, timeout_ms, address)
        except ReadTimeoutError as e:
            raise CommunicationError(
                f"device not responding within {timeout_ms:.0f}ms",
                host=address.ip,
                port=address.port,
            ) from e
        except ProtocolError as e:
            raise CommunicationError(str(e), host=address.ip, port=address.port) from e

    async def read_multiple(
        self,
        address: DeviceAddress,
        requests: Sequence[PropertyRequest],
        timeout_ms: float,
    ) -> Mapping[str, Any]:
        network = await self._get_network()
        request = f"{address} " + " ".join(r.object_ref for r in requests)
        response = await self._call(network.readMultiple, request, timeout_ms, address)
        return self._parse_read_multiple(requests, response)

    async def read_single(
        self,
        address: DeviceAddress,
        request: PropertyRequest,
        timeout_ms: float,
    ) -> Any:
        network = await self._get_network()
        return await self._call(network.read, f"{address} {request.object_ref}", timeout_ms, address)

    async def _call(self, method, request: str, timeout_ms: float, address: DeviceAddress) -> Any:
        try:
            return await asyncio.wait_for(_maybe_await(method(request)), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError as e:
            raise ReadTimeoutError(
                f"no response from {address}", timeout_ms=timeout_ms, address=str(address)
            ) from e
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if type(e).__name__ in _NO_RESPONSE_ERRORS:
                raise ReadTimeoutError(
                    f"no response from {address}", timeout_ms=timeout_ms, address=str(address)
                ) from e
            raise ProtocolError(str(e) or type(e).__name__, address=str(address)) from e

    @staticmethod
    def _parse_read_multiple(
        requests: Sequence[PropertyRequest],
        response: Any,
    ) -> dict[str, Any]:
        """
        Map a BAC0 readMultiple response back to data points.

        BAC0 answers either with a list of values in request order or with a
        dict keyed by (objectType, instance) holding (property, value) pairs.
        """
        values: dict[str, Any] = {}

        if isinstance(response, dict):
            by_object: dict[tuple[str, int], dict[str, Any]] = {}
            for key, props in response.items():
                try:
                    object_type, instance = key
                    object_key = (str(object_type), int(instance))
                except (TypeError, ValueError):
                    continue
                entries = by_object.setdefault(object_key, {})
                for item in props or []:
                    if isinstance(item, (tuple, list)) and len(item) == 2:
                        entries[str(item[0])] = item[1]

            for request in requests:
                props = by_object.get((request.object_type, request.object_instance))
                if props is None or request.property_id not in props:
                    values[request.data_point] = ProtocolError(
                        f"{request.object_ref} missing from response"
                    )
                else:
                    values[request.data_point] = props[request.property_id]
            return values

        if isinstance(response, (list, tuple)):
            if len(response) != len(requests):
                raise ProtocolError(
                    f"readMultiple returned {len(response)} values for {len(requests)} properties"
                )
            for request, value in zip(requests, response):
                values[request.data_point] = value
            return values

        raise ProtocolError(f"unexpected readMultiple response: {type(response).__name__}")

    async def close(self) -> None:
        """Shutdown BAC0 network stack"""
        network, self._network = self._network, None
        if network is None:
            return
        try:
            await _maybe_await(network.disconnect())
        except Exception as e:
            logger.warning(f"Error stopping BACnet stack: {e}")
        logger.info("BACnet/IP stack stopped")
