"""
Configuration Dataclasses

Type-safe configuration structures for the collector.
Loaded from config.yaml with environment overrides for secrets and paths.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigError

DEFAULT_DB_PATH = "/opt/meter-collector/data/collector.db"
DEFAULT_BACNET_PORT = 47808


class StoreBackend(str, Enum):
    """Where the meter/register catalog is read from"""
    SQLITE = "sqlite"
    HTTP = "http"


@dataclass
class CollectionSettings:
    """Collection cycle timing and fan-out"""
    interval_seconds: float = 60.0
    batch_read_timeout_ms: int = 5000
    sequential_read_timeout_ms: int = 3000
    connect_timeout_ms: int = 2000
    max_concurrent_devices: int = 4
    enable_batching: bool = True
    adaptive_batch_sizing: bool = True
    history_size: int = 20
    auto_start_cycle: bool = True


@dataclass
class BatchSizeSettings:
    """Per-meter batch size memory"""
    initial_batch_size: int | str = "all"  # "all" or a positive int
    min_batch_size: int = 1
    reduction_factor: float = 0.5


@dataclass
class BACnetSettings:
    """Local BACnet/IP stack binding"""
    interface: str = "0.0.0.0"
    port: int = DEFAULT_BACNET_PORT
    default_device_port: int = DEFAULT_BACNET_PORT


@dataclass
class StoreSettings:
    """Configuration store and reading persistence"""
    backend: StoreBackend = StoreBackend.SQLITE
    db_path: str = DEFAULT_DB_PATH
    api_url: str = ""
    api_key: str = ""
    tenant_id: str | None = None
    request_timeout_s: float = 30.0


@dataclass
class ServiceSettings:
    """Service runtime configuration"""
    health_host: str = "127.0.0.1"
    health_port: int = 8090
    log_level: str = "INFO"


@dataclass
class CollectorConfig:
    """Complete collector configuration"""
    collection: CollectionSettings = field(default_factory=CollectionSettings)
    batch_size: BatchSizeSettings = field(default_factory=BatchSizeSettings)
    bacnet: BACnetSettings = field(default_factory=BACnetSettings)
    store: StoreSettings = field(default_factory=StoreSettings)
    service: ServiceSettings = field(default_factory=ServiceSettings)


def _is_int(value: Any) -> bool:
    # YAML true/false load as bool, a subclass of int
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_collector_config(data: dict[str, Any]) -> tuple[bool, list[str]]:
    """
    Validate a raw configuration dictionary.

    Returns:
        Tuple of (is_valid, list of error messages)
    """
    errors: list[str] = []

    collection = data.get("collection", {}) or {}
    interval = collection.get("interval_seconds", 60)
    if not _is_number(interval) or interval <= 0:
        errors.append("collection.interval_seconds must be positive")

    for key in ("batch_read_timeout_ms", "sequential_read_timeout_ms", "connect_timeout_ms"):
        value = collection.get(key)
        if value is not None and (not _is_number(value) or value <= 0):
            errors.append(f"collection.{key} must be positive")

    workers = collection.get("max_concurrent_devices", 4)
    if not _is_int(workers) or workers < 1:
        errors.append("collection.max_concurrent_devices must be at least 1")

    batch = data.get("batch_size", {}) or {}
    initial = batch.get("initial_batch_size", "all")
    if initial != "all" and (not _is_int(initial) or initial < 1):
        errors.append("batch_size.initial_batch_size must be 'all' or a positive integer")
    min_batch = batch.get("min_batch_size", 1)
    if not _is_int(min_batch) or min_batch < 1:
        errors.append("batch_size.min_batch_size must be at least 1")
    factor = batch.get("reduction_factor", 0.5)
    if not _is_number(factor) or not 0 < factor < 1:
        errors.append("batch_size.reduction_factor must be between 0 and 1")

    bacnet = data.get("bacnet", {}) or {}
    for key in ("port", "default_device_port"):
        port = bacnet.get(key)
        if port is not None and (not _is_int(port) or port < 1 or port > 65535):
            errors.append(f"bacnet.{key}: invalid port number")

    store = data.get("store", {}) or {}
    backend = store.get("backend", "sqlite")
    if backend not in [b.value for b in StoreBackend]:
        errors.append(f"store.backend: unknown backend '{backend}'")
    elif backend == StoreBackend.HTTP.value and not store.get("api_url"):
        errors.append("store.api_url is required for the http backend")

    service = data.get("service", {}) or {}
    health_port = service.get("health_port")
    if health_port is not None and (
        not _is_int(health_port) or health_port < 1 or health_port > 65535
    ):
        errors.append("service.health_port: invalid port number")

    return len(errors) == 0, errors


def load_collector_config(data: dict[str, Any] | None) -> CollectorConfig:
    """Load CollectorConfig from dictionary (e.g., parsed YAML)"""
    data = data or {}

    is_valid, errors = validate_collector_config(data)
    if not is_valid:
        raise ConfigError("; ".join(errors), recoverable=False)

    collection_data = data.get("collection", {}) or {}
    collection = CollectionSettings(
        interval_seconds=float(collection_data.get("interval_seconds", 60)),
        batch_read_timeout_ms=collection_data.get("batch_read_timeout_ms", 5000),
        sequential_read_timeout_ms=collection_data.get("sequential_read_timeout_ms", 3000),
        connect_timeout_ms=collection_data.get("connect_timeout_ms", 2000),
        max_concurrent_devices=collection_data.get("max_concurrent_devices", 4),
        enable_batching=collection_data.get("enable_batching", True),
        adaptive_batch_sizing=collection_data.get("adaptive_batch_sizing", True),
        history_size=collection_data.get("history_size", 20),
        auto_start_cycle=collection_data.get("auto_start_cycle", True),
    )

    batch_data = data.get("batch_size", {}) or {}
    batch_size = BatchSizeSettings(
        initial_batch_size=batch_data.get("initial_batch_size", "all"),
        min_batch_size=batch_data.get("min_batch_size", 1),
        reduction_factor=batch_data.get("reduction_factor", 0.5),
    )

    bacnet_data = data.get("bacnet", {}) or {}
    bacnet = BACnetSettings(
        interface=bacnet_data.get("interface", "0.0.0.0"),
        port=bacnet_data.get("port", DEFAULT_BACNET_PORT),
        default_device_port=bacnet_data.get("default_device_port", DEFAULT_BACNET_PORT),
    )

    store_data = data.get("store", {}) or {}
    store = StoreSettings(
        backend=StoreBackend(store_data.get("backend", "sqlite")),
        db_path=os.environ.get("COLLECTOR_DB_PATH") or store_data.get("db_path", DEFAULT_DB_PATH),
        api_url=store_data.get("api_url", ""),
        api_key=os.environ.get("COLLECTOR_API_KEY") or store_data.get("api_key", ""),
        tenant_id=store_data.get("tenant_id"),
        request_timeout_s=store_data.get("request_timeout_s", 30.0),
    )

    service_data = data.get("service", {}) or {}
    service = ServiceSettings(
        health_host=service_data.get("health_host", "127.0.0.1"),
        health_port=service_data.get("health_port", 8090),
        log_level=service_data.get("log_level", "INFO"),
    )

    return CollectorConfig(
        collection=collection,
        batch_size=batch_size,
        bacnet=bacnet,
        store=store,
        service=service,
    )


def find_config_path() -> Path | None:
    """Find configuration file"""
    possible_paths = [
        Path("/etc/meter-collector/config.yaml"),
        Path("/opt/meter-collector/config.yaml"),
        Path.cwd() / "config.yaml",
    ]

    for path in possible_paths:
        if path.exists():
            return path

    return None


def load_config_file(config_path: str | Path | None = None) -> CollectorConfig:
    """
    Load configuration from a YAML file.

    A missing file yields the defaults; an unreadable or invalid one
    raises ConfigError.
    """
    path = Path(config_path) if config_path else find_config_path()
    if path is None:
        return load_collector_config({})

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}", recoverable=False)

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Error loading configuration {path}: {e}", recoverable=False) from e

    if not isinstance(data, dict):
        raise ConfigError(f"Configuration root must be a mapping: {path}", recoverable=False)

    return load_collector_config(data)
