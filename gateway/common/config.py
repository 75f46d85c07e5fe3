"""
Configuration Dataclasses

Type-safe configuration structures for the gateway and its devices.
Gateway settings come from a YAML file with environment overrides;
device configurations arrive over IPC (``add_device``) or from the
optional ``devices:`` list in the same YAML file.
"""

import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

import yaml

from .exceptions import ConfigError, ValidationError
from .logging_setup import get_service_logger
from .timestamp import format_timestamp, utc_now

logger = get_service_logger("config")


class ProtocolType(str, Enum):
    """Supported field device protocols"""
    MODBUS_TCP = "ModbusTcp"
    MODBUS_RTU = "ModbusRtu"
    SIEMENS_S7 = "SiemensS7"
    OMRON_FINS = "OmronFins"
    MITSUBISHI_MC = "MitsubishiMc"

    @classmethod
    def parse(cls, value: Any) -> "ProtocolType":
        """Parse a protocol name case-insensitively (``modbustcp``, ``MitsubishiMC``...)"""
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().replace("_", "").replace("-", "").lower()
        for member in cls:
            if member.value.lower() == text:
                return member
        valid = ", ".join(m.value for m in cls)
        raise ValidationError(
            f"Unsupported protocol type: {value}",
            errors=[f"protocolType must be one of: {valid}"],
        )

    @property
    def is_network(self) -> bool:
        return self is not ProtocolType.MODBUS_RTU


class ConnectionState(str, Enum):
    """Device connection states"""
    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    ERROR = "Error"


class Framing(str, Enum):
    """IPC message framing"""
    RAW = "raw"            # one read == one JSON document
    NEWLINE = "newline"    # newline-delimited JSON


# Wire name -> dataclass field for ConnectionParams
_PARAM_ALIASES: dict[str, str] = {
    "host": "host",
    "ipAddress": "host",
    "ip": "host",
    "port": "port",
    "station": "station",
    "stationId": "station",
    "slaveId": "station",
    "unitId": "station",
    "timeoutMs": "timeout_ms",
    "timeout": "timeout_ms",
    "comPort": "com_port",
    "serialPort": "com_port",
    "baudRate": "baud_rate",
    "dataBits": "data_bits",
    "stopBits": "stop_bits",
    "parity": "parity",
    "rack": "rack",
    "slot": "slot",
}

_INT_PARAMS = {"port", "station", "timeout_ms", "baud_rate", "data_bits", "stop_bits", "rack", "slot"}

VALID_PARITY = ("None", "Even", "Odd")

DEFAULT_PORTS: dict[ProtocolType, int] = {
    ProtocolType.MODBUS_TCP: 502,
    ProtocolType.SIEMENS_S7: 102,
    ProtocolType.OMRON_FINS: 9600,
    ProtocolType.MITSUBISHI_MC: 5007,
}


@dataclass
class ConnectionParams:
    """Protocol-specific connection parameters"""
    host: str = ""
    port: int | None = None       # None = protocol default
    station: int = 1              # Modbus unit id / PLC station
    timeout_ms: int = 3000
    # Serial (Modbus RTU)
    com_port: str = ""            # e.g., "/dev/ttyUSB0" or "COM3"
    baud_rate: int = 9600
    data_bits: int = 8
    stop_bits: int = 1
    parity: str = "None"          # None, Even, Odd
    # Siemens S7
    rack: int = 0
    slot: int = 2
    additional_params: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ConnectionParams":
        """Build from the wire object, accepting camelCase and a few aliases"""
        params = cls()
        errors: list[str] = []
        for key, value in (data or {}).items():
            attr = _PARAM_ALIASES.get(key)
            if attr is None:
                params.additional_params[key] = value
                continue
            if value is None:
                continue
            if attr in _INT_PARAMS:
                try:
                    value = int(value)
                except (TypeError, ValueError):
                    errors.append(f"connectionParams.{key} must be an integer")
                    continue
            elif attr == "parity":
                value = _normalize_parity(value)
            else:
                value = str(value)
            setattr(params, attr, value)

        if errors:
            raise ValidationError("Invalid connection parameters", errors=errors)
        return params

    def port_for(self, protocol: ProtocolType) -> int:
        if self.port is not None:
            return self.port
        return DEFAULT_PORTS.get(protocol, 502)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "station": self.station,
            "timeoutMs": self.timeout_ms,
            "comPort": self.com_port,
            "baudRate": self.baud_rate,
            "dataBits": self.data_bits,
            "stopBits": self.stop_bits,
            "parity": self.parity,
            "rack": self.rack,
            "slot": self.slot,
        }
        data.update(self.additional_params)
        return data


def _normalize_parity(value: Any) -> str:
    text = str(value).strip().lower()
    return {"n": "None", "none": "None", "e": "Even", "even": "Even",
            "o": "Odd", "odd": "Odd"}.get(text, str(value))


@dataclass
class DeviceConfig:
    """Device configuration (deviceId is immutable once registered)"""
    device_id: str
    protocol_type: ProtocolType
    connection_params: ConnectionParams = field(default_factory=ConnectionParams)
    name: str = ""
    description: str = ""
    enabled: bool = True
    created_time: datetime = field(default_factory=utc_now)

    @property
    def timeout_ms(self) -> int:
        return self.connection_params.timeout_ms

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeviceConfig":
        """
        Build a DeviceConfig from an ``add_device`` payload or YAML entry.

        Accepts ``deviceId``/``device_id``/``id``, ``protocolType``/``type``
        and ``connectionParams``/``connection``.

        Raises:
            ValidationError: if required fields are missing or malformed
        """
        if not isinstance(data, dict):
            raise ValidationError("Device configuration must be an object")

        device_id = data.get("deviceId") or data.get("device_id") or data.get("id")
        if not device_id or not str(device_id).strip():
            raise ValidationError("Missing deviceId", errors=["deviceId is required"])
        device_id = str(device_id).strip()

        protocol_raw = data.get("protocolType") or data.get("protocol_type") or data.get("type")
        if not protocol_raw:
            raise ValidationError(
                "Missing protocolType",
                errors=["protocolType is required"],
                device_id=device_id,
            )
        try:
            protocol = ProtocolType.parse(protocol_raw)
        except ValidationError as e:
            e.device_id = device_id
            raise

        raw_params = data.get("connectionParams")
        if raw_params is None:
            raw_params = data.get("connection_params", data.get("connection"))
        if raw_params is None:
            raise ValidationError(
                "Missing connectionParams",
                errors=["connectionParams is required"],
                device_id=device_id,
            )
        if not isinstance(raw_params, dict):
            raise ValidationError(
                "connectionParams must be an object",
                device_id=device_id,
            )
        try:
            params = ConnectionParams.from_dict(raw_params)
        except ValidationError as e:
            e.device_id = device_id
            raise

        return cls(
            device_id=device_id,
            protocol_type=protocol,
            connection_params=params,
            name=str(data.get("name") or device_id),
            description=str(data.get("description") or ""),
            enabled=bool(data.get("enabled", True)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "name": self.name,
            "description": self.description,
            "protocolType": self.protocol_type.value,
            "enabled": self.enabled,
            "connectionParams": self.connection_params.to_dict(),
            "createdTime": format_timestamp(self.created_time),
        }


def validate_device_config(config: DeviceConfig) -> tuple[bool, list[str]]:
    """
    Validate protocol-specific connection parameters.

    Returns:
        Tuple of (is_valid, list of error messages)
    """
    errors: list[str] = []
    params = config.connection_params
    protocol = config.protocol_type

    if not 1000 <= params.timeout_ms <= 30000:
        errors.append("timeoutMs must be between 1000 and 30000")

    if not 0 <= params.station <= 255:
        errors.append("station must be between 0 and 255")

    if protocol.is_network:
        if not params.host.strip():
            errors.append(f"host is required for {protocol.value}")
        port = params.port_for(protocol)
        if not 1 <= port <= 65535:
            errors.append("port must be between 1 and 65535")

    if protocol is ProtocolType.MODBUS_RTU:
        if not params.com_port.strip():
            errors.append("comPort is required for ModbusRtu")
        if params.baud_rate <= 0:
            errors.append("baudRate must be positive")
        if params.data_bits not in (7, 8):
            errors.append("dataBits must be 7 or 8")
        if params.stop_bits not in (1, 2):
            errors.append("stopBits must be 1 or 2")
        if params.parity not in VALID_PARITY:
            errors.append(f"parity must be one of: {', '.join(VALID_PARITY)}")

    if protocol is ProtocolType.SIEMENS_S7:
        if not 0 <= params.rack <= 7:
            errors.append("rack must be between 0 and 7")
        if not 0 <= params.slot <= 31:
            errors.append("slot must be between 0 and 31")

    return len(errors) == 0, errors


@dataclass
class GatewayConfig:
    """Gateway runtime configuration"""
    host: str = "127.0.0.1"
    port: int = 8888
    framing: Framing = Framing.RAW
    max_connections: int = 50
    buffer_size: int = 8192
    max_message_size: int = 1024 * 1024
    protocol_version: str = "1.0"
    health_port: int = 8889           # 0 disables the HTTP health server
    log_level: str = "INFO"
    log_format: str = "json"          # json, text
    devices: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "framing": self.framing.value,
            "max_connections": self.max_connections,
            "buffer_size": self.buffer_size,
            "max_message_size": self.max_message_size,
            "protocol_version": self.protocol_version,
            "health_port": self.health_port,
            "log_level": self.log_level,
            "log_format": self.log_format,
            "devices": len(self.devices),
        }


# Environment variable -> (GatewayConfig field, converter)
ENV_OVERRIDES: dict[str, tuple[str, Any]] = {
    "GATEWAY_HOST": ("host", str),
    "GATEWAY_PORT": ("port", int),
    "GATEWAY_FRAMING": ("framing", str),
    "GATEWAY_HEALTH_PORT": ("health_port", int),
    "GATEWAY_LOG_LEVEL": ("log_level", str),
    "GATEWAY_LOG_FORMAT": ("log_format", str),
}


def load_gateway_config(
    path: str | None = None,
    environ: dict[str, str] | None = None,
) -> GatewayConfig:
    """
    Load gateway configuration.

    Order of precedence: environment > YAML file > defaults.
    The YAML file holds a ``gateway:`` section and an optional
    ``devices:`` list.

    Raises:
        ConfigError: if the file cannot be read or a value is malformed
    """
    environ = os.environ if environ is None else environ
    data: dict[str, Any] = {}
    devices: list[dict[str, Any]] = []

    if path:
        try:
            with open(path) as f:
                raw = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigError(f"Config file not found: {path}")
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}")

        if not isinstance(raw, dict):
            raise ConfigError(f"Config root must be a mapping: {path}")
        data = dict(raw.get("gateway") or {})
        devices = list(raw.get("devices") or [])
        logger.info(f"Loaded config from {path}", extra={"devices": len(devices)})

    for env_name, (attr, convert) in ENV_OVERRIDES.items():
        if env_name in environ and environ[env_name] != "":
            try:
                data[attr] = convert(environ[env_name])
            except ValueError:
                raise ConfigError(f"{env_name} must be {convert.__name__}")

    try:
        framing = Framing(str(data.get("framing", "raw")).lower())
    except ValueError:
        raise ConfigError(f"framing must be 'raw' or 'newline', got {data.get('framing')!r}")

    try:
        return GatewayConfig(
            host=str(data.get("host", "127.0.0.1")),
            port=int(data.get("port", 8888)),
            framing=framing,
            max_connections=int(data.get("max_connections", 50)),
            buffer_size=int(data.get("buffer_size", 8192)),
            max_message_size=int(data.get("max_message_size", 1024 * 1024)),
            protocol_version=str(data.get("protocol_version", "1.0")),
            health_port=int(data.get("health_port", 8889)),
            log_level=str(data.get("log_level", "INFO")).upper(),
            log_format=str(data.get("log_format", "json")).lower(),
            devices=devices,
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid gateway setting: {e}")


def validate_gateway_config(config: GatewayConfig) -> tuple[bool, list[str]]:
    """
    Validate gateway configuration.

    Returns:
        Tuple of (is_valid, list of error messages)
    """
    errors: list[str] = []

    if not config.host:
        errors.append("Missing host")
    if not 1 <= config.port <= 65535:
        errors.append(f"Invalid port: {config.port}")
    if config.health_port and not 1 <= config.health_port <= 65535:
        errors.append(f"Invalid health_port: {config.health_port}")
    if config.health_port and config.health_port == config.port:
        errors.append("health_port must differ from port")
    if config.max_connections < 1:
        errors.append("max_connections must be at least 1")
    if config.buffer_size < 256:
        errors.append("buffer_size must be at least 256 bytes")
    if config.max_message_size < config.buffer_size:
        errors.append("max_message_size must be >= buffer_size")
    if config.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        errors.append(f"Invalid log_level: {config.log_level}")
    if config.log_format not in ("json", "text"):
        errors.append(f"Invalid log_format: {config.log_format}")

    seen: set[str] = set()
    for i, entry in enumerate(config.devices):
        try:
            device = DeviceConfig.from_dict(entry)
        except ValidationError as e:
            errors.append(f"devices[{i}]: {e.message}")
            continue
        if device.device_id in seen:
            errors.append(f"devices[{i}]: duplicate deviceId {device.device_id}")
        seen.add(device.device_id)
        ok, device_errors = validate_device_config(device)
        if not ok:
            errors.extend(f"devices[{i}] ({device.device_id}): {err}" for err in device_errors)

    is_valid = len(errors) == 0
    if not is_valid:
        logger.warning(
            f"Config validation failed: {len(errors)} errors",
            extra={"errors": errors},
        )
    return is_valid, errors
