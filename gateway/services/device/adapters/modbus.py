"""
Modbus Adapters

Async Modbus TCP and RTU (direct serial) adapters built on pymodbus.

Address grammar: ``[s=<station>;][<table>:]<offset>``

    table   hr  holding registers (default, read/write)
            ir  input registers (read-only)
            co  coils (read/write, always bool)
            di  discrete inputs (read-only, always bool)

Examples: ``"100"``, ``"ir:30"``, ``"co:5"``, ``"s=2;hr:100"``.

Register values use big-endian word order (high word first) for
32-bit types, matching most field devices.
"""

import math
import re
import struct
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pymodbus.client import AsyncModbusSerialClient, AsyncModbusTcpClient
from pymodbus.exceptions import ConnectionException, ModbusException

from ....common.config import DeviceConfig, ProtocolType
from ....common.exceptions import DriverError, ValidationError
from ....common.logging_setup import get_service_logger, log_device_read, log_device_write
from ....common.timestamp import elapsed_ms, monotonic_ms
from .base import DataPointResult, ProtocolAdapter, WritePoint

logger = get_service_logger("device.modbus")


class ModbusTable(str, Enum):
    """Modbus data tables"""
    HOLDING = "hr"
    INPUT = "ir"
    COIL = "co"
    DISCRETE = "di"

    @property
    def is_bit(self) -> bool:
        return self in (ModbusTable.COIL, ModbusTable.DISCRETE)

    @property
    def writable(self) -> bool:
        return self in (ModbusTable.HOLDING, ModbusTable.COIL)


class ModbusDataType(str, Enum):
    """Modbus value data types"""
    BOOL = "bool"
    INT16 = "int16"
    UINT16 = "uint16"
    INT32 = "int32"
    UINT32 = "uint32"
    FLOAT32 = "float32"

    @classmethod
    def parse(cls, value: str | None) -> "ModbusDataType":
        if not value:
            return cls.INT16
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = ", ".join(m.value for m in cls)
            raise ValueError(f"Unsupported data type '{value}' (valid: {valid})")


_TABLE_ALIASES = {
    "hr": ModbusTable.HOLDING,
    "holding": ModbusTable.HOLDING,
    "ir": ModbusTable.INPUT,
    "input": ModbusTable.INPUT,
    "co": ModbusTable.COIL,
    "coil": ModbusTable.COIL,
    "di": ModbusTable.DISCRETE,
    "discrete": ModbusTable.DISCRETE,
}

_STATION_PREFIX = re.compile(r"^\s*s\s*=\s*(\d+)\s*;\s*", re.IGNORECASE)


@dataclass
class ModbusAddress:
    """Parsed Modbus data point address"""
    table: ModbusTable
    offset: int
    station: int


def parse_modbus_address(text: str, default_station: int = 1) -> ModbusAddress:
    """
    Parse a Modbus address string.

    Raises:
        ValueError: on malformed address, unknown table or out-of-range values
    """
    if not isinstance(text, str) or not text.strip():
        raise ValueError("Empty address")

    rest = text
    station = default_station
    match = _STATION_PREFIX.match(rest)
    if match:
        station = int(match.group(1))
        rest = rest[match.end():]
        if not 0 <= station <= 255:
            raise ValueError(f"Station out of range: {station}")

    table = ModbusTable.HOLDING
    if ":" in rest:
        prefix, rest = rest.split(":", 1)
        table = _TABLE_ALIASES.get(prefix.strip().lower())
        if table is None:
            raise ValueError(f"Unknown Modbus table '{prefix.strip()}'")

    rest = rest.strip()
    if not rest.isdigit():
        raise ValueError(f"Invalid Modbus address '{text}'")
    offset = int(rest)
    if offset > 0xFFFF:
        raise ValueError(f"Address out of range: {offset}")

    return ModbusAddress(table=table, offset=offset, station=station)


def register_count(data_type: ModbusDataType) -> int:
    """Number of 16-bit registers occupied by a data type"""
    if data_type in (ModbusDataType.INT32, ModbusDataType.UINT32, ModbusDataType.FLOAT32):
        return 2
    return 1


def decode_registers(registers: list[int], data_type: ModbusDataType) -> bool | int | float:
    """
    Convert raw registers to a typed value.

    Raises:
        ValueError: if too few registers or the float is not finite
    """
    needed = register_count(data_type)
    if len(registers) < needed:
        raise ValueError(f"Expected {needed} registers, got {len(registers)}")

    if data_type == ModbusDataType.BOOL:
        return registers[0] != 0

    if data_type == ModbusDataType.UINT16:
        return registers[0]

    if data_type == ModbusDataType.INT16:
        value = registers[0]
        if value >= 0x8000:
            value -= 0x10000
        return value

    # Big-endian: high word first
    packed = struct.pack(">HH", registers[0], registers[1])

    if data_type == ModbusDataType.UINT32:
        return struct.unpack(">I", packed)[0]

    if data_type == ModbusDataType.INT32:
        return struct.unpack(">i", packed)[0]

    value = struct.unpack(">f", packed)[0]
    if math.isnan(value) or math.isinf(value):
        raise ValueError("Register value is not a finite float")
    return value


_INT_RANGES = {
    ModbusDataType.INT16: (-0x8000, 0x7FFF),
    ModbusDataType.UINT16: (0, 0xFFFF),
    ModbusDataType.INT32: (-0x80000000, 0x7FFFFFFF),
    ModbusDataType.UINT32: (0, 0xFFFFFFFF),
}


def coerce_bool(value: Any) -> bool:
    """Accept true/false, 0/1 and their string forms"""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str) and value.strip().lower() in ("true", "false", "1", "0", "on", "off"):
        return value.strip().lower() in ("true", "1", "on")
    raise ValueError(f"Cannot convert {value!r} to bool")


def encode_value(value: Any, data_type: ModbusDataType) -> list[int]:
    """
    Convert a value to raw registers.

    Raises:
        ValueError: if the value does not fit the data type
    """
    if data_type == ModbusDataType.BOOL:
        return [1 if coerce_bool(value) else 0]

    if isinstance(value, bool):
        value = int(value)
    elif isinstance(value, str):
        try:
            value = float(value.strip()) if data_type == ModbusDataType.FLOAT32 else int(value.strip(), 0)
        except ValueError:
            raise ValueError(f"Cannot convert {value!r} to {data_type.value}")
    elif not isinstance(value, (int, float)):
        raise ValueError(f"Cannot convert {value!r} to {data_type.value}")

    if data_type == ModbusDataType.FLOAT32:
        value = float(value)
        if math.isnan(value) or math.isinf(value):
            raise ValueError("Value must be a finite number")
        packed = struct.pack(">f", value)
        return list(struct.unpack(">HH", packed))

    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"{value} is not an integer")
        value = int(value)

    low, high = _INT_RANGES[data_type]
    if not low <= value <= high:
        raise ValueError(f"{value} out of range for {data_type.value} ({low}..{high})")

    if data_type == ModbusDataType.INT16:
        return [value & 0xFFFF]
    if data_type == ModbusDataType.UINT16:
        return [value]
    fmt = ">i" if data_type == ModbusDataType.INT32 else ">I"
    return list(struct.unpack(">HH", struct.pack(fmt, value)))


class ModbusAdapter(ProtocolAdapter):
    """
    Shared Modbus read/write logic over a pymodbus async client.

    Subclasses build the transport-specific client.
    """

    driver_name = "pymodbus"

    def __init__(self, config: DeviceConfig):
        super().__init__(config)
        self._client: AsyncModbusTcpClient | AsyncModbusSerialClient | None = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.connected

    def _create_client(self) -> AsyncModbusTcpClient | AsyncModbusSerialClient:
        raise NotImplementedError

    async def connect(self) -> None:
        if self.is_connected:
            return

        self._client = self._create_client()
        try:
            await self._client.connect()
        except (ModbusException, OSError) as e:
            self._drop_client()
            raise DriverError(
                f"Connection error to {self.endpoint}: {e}",
                device_id=self.device_id,
                host=self.params.host or None,
                port=self.params.port,
            )

        if not self._client.connected:
            self._drop_client()
            raise DriverError(
                f"Failed to connect to Modbus device at {self.endpoint}",
                device_id=self.device_id,
                host=self.params.host or None,
                port=self.params.port,
            )

        logger.debug(f"Connected to Modbus device at {self.endpoint}")

    async def disconnect(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            client.close()
            logger.debug(f"Disconnected from {self.endpoint}")

    def _drop_client(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def _require_link(self) -> None:
        if not self.is_connected:
            raise self.link_lost("client not connected")

    def _batch_type(self, data_type: str | None) -> ModbusDataType:
        """
        Raises:
            ValidationError: unknown dataType (rejected before the driver is used)
        """
        try:
            return ModbusDataType.parse(data_type)
        except ValueError as e:
            raise ValidationError(str(e), errors=[f"dataType: {e}"], device_id=self.device_id)

    async def read_values(
        self,
        addresses: list[str],
        data_type: str | None = None,
    ) -> list[DataPointResult]:
        batch_type = self._batch_type(data_type)
        self._require_link()
        results = []
        for address in addresses:
            result = await self._read_one(address, batch_type)
            log_device_read(logger, self.device_id, address, result.value, result.success)
            results.append(result)
        return results

    async def _read_one(self, address: str, data_type: ModbusDataType) -> DataPointResult:
        start = monotonic_ms()
        try:
            target = parse_modbus_address(address, self.params.station)
        except ValueError as e:
            return DataPointResult.failed(address, str(e), data_type.value)

        if target.table.is_bit:
            data_type = ModbusDataType.BOOL

        try:
            if target.table == ModbusTable.COIL:
                response = await self._client.read_coils(
                    address=target.offset, count=1, device_id=target.station,
                )
            elif target.table == ModbusTable.DISCRETE:
                response = await self._client.read_discrete_inputs(
                    address=target.offset, count=1, device_id=target.station,
                )
            elif target.table == ModbusTable.INPUT:
                response = await self._client.read_input_registers(
                    address=target.offset,
                    count=register_count(data_type),
                    device_id=target.station,
                )
            else:
                response = await self._client.read_holding_registers(
                    address=target.offset,
                    count=register_count(data_type),
                    device_id=target.station,
                )
        except ConnectionException as e:
            raise self.link_lost(str(e))
        except ModbusException as e:
            return DataPointResult.failed(address, f"Modbus exception: {e}", data_type.value)

        if response.isError():
            return DataPointResult.failed(address, f"Modbus error: {response}", data_type.value)

        try:
            if target.table.is_bit:
                value = bool(response.bits[0])
            else:
                value = decode_registers(list(response.registers), data_type)
        except (ValueError, IndexError) as e:
            return DataPointResult.failed(address, str(e), data_type.value)

        return DataPointResult(
            address=address,
            success=True,
            value=value,
            data_type=data_type.value,
            response_time_ms=elapsed_ms(start),
        )

    async def write_values(
        self,
        points: list[WritePoint],
        data_type: str | None = None,
    ) -> list[DataPointResult]:
        batch_type = self._batch_type(data_type)
        self._require_link()
        results = []
        for point in points:
            result = await self._write_one(point, batch_type)
            log_device_write(logger, self.device_id, point.address, point.value, result.success)
            results.append(result)
        return results

    async def _write_one(self, point: WritePoint, batch_type: ModbusDataType) -> DataPointResult:
        start = monotonic_ms()
        address = point.address
        try:
            data_type = ModbusDataType.parse(point.data_type) if point.data_type else batch_type
            target = parse_modbus_address(address, self.params.station)
        except ValueError as e:
            return DataPointResult.failed(address, str(e), batch_type.value)

        if not target.table.writable:
            return DataPointResult.failed(
                address, f"Table '{target.table.value}' is read-only", data_type.value,
            )

        try:
            if target.table == ModbusTable.COIL:
                data_type = ModbusDataType.BOOL
                value: Any = coerce_bool(point.value)
                registers = None
            else:
                registers = encode_value(point.value, data_type)
                value = point.value
        except ValueError as e:
            return DataPointResult.failed(address, str(e), data_type.value)

        try:
            if registers is None:
                response = await self._client.write_coil(
                    address=target.offset, value=value, device_id=target.station,
                )
            elif len(registers) == 1:
                response = await self._client.write_register(
                    address=target.offset, value=registers[0], device_id=target.station,
                )
            else:
                response = await self._client.write_registers(
                    address=target.offset, values=registers, device_id=target.station,
                )
        except ConnectionException as e:
            raise self.link_lost(str(e))
        except ModbusException as e:
            return DataPointResult.failed(address, f"Modbus exception: {e}", data_type.value)

        if response.isError():
            return DataPointResult.failed(address, f"Write failed: {response}", data_type.value)

        return DataPointResult(
            address=address,
            success=True,
            value=value,
            data_type=data_type.value,
            response_time_ms=elapsed_ms(start),
        )

    async def probe(self) -> bool:
        """Read one holding register; any reply (even an exception code) means alive"""
        if not self.is_connected:
            return False
        try:
            await self._client.read_holding_registers(
                address=0, count=1, device_id=self.params.station,
            )
        except ModbusException as e:
            logger.debug(f"Probe of {self.endpoint} failed: {e}")
            return False
        return True


class ModbusTcpAdapter(ModbusAdapter):
    """Modbus TCP over pymodbus AsyncModbusTcpClient"""

    protocol_type = ProtocolType.MODBUS_TCP

    def _create_client(self) -> AsyncModbusTcpClient:
        return AsyncModbusTcpClient(
            host=self.params.host,
            port=self.params.port_for(self.protocol_type),
            timeout=self.timeout_s,
        )


_PYMODBUS_PARITY = {"None": "N", "Even": "E", "Odd": "O"}


class ModbusRtuAdapter(ModbusAdapter):
    """
    Modbus RTU over a direct serial line (RS485/RS232).

    Multiple stations on one bus are addressed per data point
    with the ``s=<station>;`` prefix.
    """

    protocol_type = ProtocolType.MODBUS_RTU

    @property
    def endpoint(self) -> str:
        return f"{self.params.com_port}@{self.params.baud_rate}"

    def _create_client(self) -> AsyncModbusSerialClient:
        return AsyncModbusSerialClient(
            port=self.params.com_port,
            baudrate=self.params.baud_rate,
            bytesize=self.params.data_bits,
            parity=_PYMODBUS_PARITY.get(self.params.parity, "N"),
            stopbits=self.params.stop_bits,
            timeout=self.timeout_s,
        )
