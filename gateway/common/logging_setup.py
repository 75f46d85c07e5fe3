"""
Structured Logging Setup

Consistent logging configuration across the gateway services.
Uses JSON format for structured logs in production.
"""

import logging
import sys
import os
from datetime import datetime, timezone
from typing import Any
import json

# LogRecord attributes that are not copied into the JSON payload
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
    service_name: str,
    log_level: str = "INFO",
    json_format: bool = True,
) -> logging.Logger:
    """
    Set up structured logging for a service.

    Args:
        service_name: Name of the service (e.g., "ipc", "device.registry")
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON format (True for production, False for dev)

    Returns:
        Configured logger instance
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logger = logging.getLogger(f"gateway.{service_name}")
    logger.setLevel(numeric_level)

    # Clear existing handlers
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

    # Don't propagate to root logger
    logger.propagate = False

    return logger


def get_service_logger(service_name: str) -> ServiceLoggerAdapter:
    """
    Get a logger adapter with service context.

    Level and format come from GATEWAY_LOG_LEVEL / GATEWAY_LOG_FORMAT.

    Args:
        service_name: Name of the service

    Returns:
        Logger adapter with service name in all logs
    """
    log_level = os.environ.get("GATEWAY_LOG_LEVEL", "INFO")
    json_format = os.environ.get("GATEWAY_LOG_FORMAT", "json").lower() == "json"

    logger = setup_logging(service_name, log_level, json_format)
    return ServiceLoggerAdapter(logger, {"service": service_name})


def reconfigure_service_loggers(log_level: str, json_format: bool) -> None:
    """Re-apply level and format to every gateway logger created so far.

    Module-level loggers are built at import time from the environment; the
    entry point calls this once the configuration file has been read.
    """
    os.environ["GATEWAY_LOG_LEVEL"] = log_level.upper()
    os.environ["GATEWAY_LOG_FORMAT"] = "json" if json_format else "text"

    for name in list(logging.Logger.manager.loggerDict):
        if name.startswith("gateway."):
            setup_logging(name[len("gateway."):], log_level, json_format)


def log_device_read(
    logger: logging.LoggerAdapter,
    device_id: str,
    address: str,
    value: Any,
    success: bool = True,
) -> None:
    """Log a device data point read"""
    if success:
        logger.debug(
            f"Read {device_id}.{address} = {value}",
            extra={"device": device_id, "address": address, "value": value},
        )
    else:
        logger.warning(
            f"Failed to read {device_id}.{address}",
            extra={"device": device_id, "address": address},
        )


def log_device_write(
    logger: logging.LoggerAdapter,
    device_id: str,
    address: str,
    value: Any,
    success: bool = True,
) -> None:
    """Log a device data point write"""
    if success:
        logger.info(
            f"Write {device_id}.{address} = {value}",
            extra={"device": device_id, "address": address, "value": value},
        )
    else:
        logger.error(
            f"Failed to write {device_id}.{address} = {value}",
            extra={"device": device_id, "address": address, "value": value},
        )


def log_state_change(
    logger: logging.LoggerAdapter,
    device_id: str,
    old_state: str,
    new_state: str,
    error: str | None = None,
) -> None:
    """Log a connection state transition"""
    extra = {"device": device_id, "old_state": old_state, "new_state": new_state}
    if error:
        extra["error"] = error
        logger.warning(
            f"Device {device_id} state {old_state} -> {new_state}: {error}",
            extra=extra,
        )
    else:
        logger.info(f"Device {device_id} state {old_state} -> {new_state}", extra=extra)
