"""
Structured Logging Setup

Consistent logging configuration across all collector components.
Uses JSON format for structured logs in production.
"""

import logging
import sys
import os
from datetime import datetime, timezone
from typing import Any
import json

LOGGER_NAMESPACE = "meter_collector"

_RESERVED_ATTRS = frozenset((
    "name", "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "exc_info", "exc_text", "stack_info",
    "lineno", "funcName", "created", "msecs", "relativeCreated",
    "thread", "threadName", "processName", "process", "service",
    "message", "taskName",
))


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "service": getattr(record, "service", "unknown"),
            "message": record.getMessage(),
            "logger": record.name,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Add extra fields
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class ServiceLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that adds service name to all logs"""

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        kwargs.setdefault("extra", {})
        kwargs["extra"]["service"] = self.extra.get("service", "unknown")
        return msg, kwargs


def setup_logging(
    log_level: str = "INFO",
    json_format: bool = True,
) -> logging.Logger:
    """
    Configure the root collector logger.

    All component loggers live below the ``meter_collector`` namespace
    and inherit this single handler.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON format (True for production, False for dev)

    Returns:
        Configured namespace logger
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logger = logging.getLogger(LOGGER_NAMESPACE)
    logger.setLevel(numeric_level)
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)

    if json_format:
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    handler.setFormatter(formatter)
    logger.addHandler(handler)
    logger.propagate = False

    return logger


def configure_from_env(default_level: str = "INFO") -> logging.Logger:
    """Set up logging honouring COLLECTOR_LOG_LEVEL / COLLECTOR_LOG_FORMAT"""
    log_level = os.environ.get("COLLECTOR_LOG_LEVEL", default_level)
    json_format = os.environ.get("COLLECTOR_LOG_FORMAT", "json").lower() == "json"
    return setup_logging(log_level, json_format)


def get_service_logger(service_name: str) -> ServiceLoggerAdapter:
    """
    Get a logger adapter with service context.

    Handlers are installed once by setup_logging(); component loggers
    only carry their name and the service tag.

    Args:
        service_name: Name of the component (e.g. "device.client")

    Returns:
        Logger adapter with service name in all logs
    """
    logger = logging.getLogger(f"{LOGGER_NAMESPACE}.{service_name}")
    return ServiceLoggerAdapter(logger, {"service": service_name})


def log_property_read(
    logger: logging.Logger,
    meter_id: str,
    data_point: str,
    value: Any,
    success: bool = True,
    error: str | None = None,
) -> None:
    """Log a single property read outcome"""
    if success:
        logger.debug(
            f"Read {meter_id}.{data_point} = {value}",
            extra={"meter_id": meter_id, "data_point": data_point, "value": value},
        )
    else:
        logger.warning(
            f"Failed to read {meter_id}.{data_point}: {error}",
            extra={"meter_id": meter_id, "data_point": data_point, "error": error},
        )


def log_cycle_summary(
    logger: logging.Logger,
    cycle_id: str,
    meters_processed: int,
    readings_collected: int,
    error_count: int,
    duration_ms: float,
) -> None:
    """Log collection cycle completion"""
    logger.info(
        f"Collection cycle {cycle_id} completed: {meters_processed} meters, "
        f"{readings_collected} readings, {error_count} errors, {duration_ms:.0f}ms",
        extra={
            "cycle_id": cycle_id,
            "meters_processed": meters_processed,
            "readings_collected": readings_collected,
            "error_count": error_count,
            "duration_ms": duration_ms,
        },
    )
