"""
Common Utilities

Shared modules used across all services:
- config.py - Configuration dataclasses and loaders
- exceptions.py - Custom exception classes
- logging_setup.py - Structured logging setup
- timestamp.py - Wire timestamp formatting
"""

from .config import (
    ProtocolType,
    ConnectionState,
    Framing,
    ConnectionParams,
    DeviceConfig,
    GatewayConfig,
    load_gateway_config,
    validate_device_config,
    validate_gateway_config,
)
from .exceptions import (
    GatewayError,
    ParseError,
    ValidationError,
    ConfigError,
    DuplicateDeviceError,
    DeviceNotFoundError,
    DeviceNotConnectedError,
    DriverError,
    ConnectionTimeoutError,
    UnknownCommandError,
    InvalidStateTransitionError,
    ServiceUnavailableError,
    BindError,
    InternalError,
)
from .logging_setup import (
    setup_logging,
    get_service_logger,
    reconfigure_service_loggers,
    log_device_read,
    log_device_write,
    log_state_change,
)
from .timestamp import format_timestamp, utc_now, utc_timestamp_ms

__all__ = [
    # Config
    "ProtocolType",
    "ConnectionState",
    "Framing",
    "ConnectionParams",
    "DeviceConfig",
    "GatewayConfig",
    "load_gateway_config",
    "validate_device_config",
    "validate_gateway_config",
    # Exceptions
    "GatewayError",
    "ParseError",
    "ValidationError",
    "ConfigError",
    "DuplicateDeviceError",
    "DeviceNotFoundError",
    "DeviceNotConnectedError",
    "DriverError",
    "ConnectionTimeoutError",
    "UnknownCommandError",
    "InvalidStateTransitionError",
    "ServiceUnavailableError",
    "BindError",
    "InternalError",
    # Logging
    "setup_logging",
    "get_service_logger",
    "reconfigure_service_loggers",
    "log_device_read",
    "log_device_write",
    "log_state_change",
    # Timestamps
    "format_timestamp",
    "utc_now",
    "utc_timestamp_ms",
]
