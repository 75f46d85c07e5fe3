"""
Siemens S7 Adapter

Wraps python-snap7's blocking ``snap7.client.Client``. Every driver call
runs in a worker thread so a slow PLC never stalls the event loop.

Address grammar (case-insensitive):

    DB<n>.DBX<byte>.<bit>   bool
    DB<n>.DBB<byte>         byte (0..255)
    DB<n>.DBW<byte>         int16 (uint16 with dataType "uint16")
    DB<n>.DBD<byte>         int32 (uint32 / float32 with matching dataType)
    M<byte>.<bit>, MX<byte>.<bit>, MB<byte>, MW<byte>, MD<byte>

Values are big-endian, as stored by the PLC.
"""

import asyncio
import math
import re
import struct
from dataclasses import dataclass
from typing import Any

from snap7.client import Client as Snap7Client

from ....common.config import DeviceConfig, ProtocolType
from ....common.exceptions import DriverError, ValidationError
from ....common.logging_setup import get_service_logger, log_device_read, log_device_write
from ....common.timestamp import elapsed_ms, monotonic_ms
from .base import DataPointResult, ProtocolAdapter, WritePoint
from .modbus import coerce_bool

logger = get_service_logger("device.s7")

_DB_PATTERN = re.compile(r"^DB(\d+)\.DB([XBWD])(\d+)(?:\.(\d+))?$", re.IGNORECASE)
_M_PATTERN = re.compile(r"^M([XBWD]?)(\d+)(?:\.(\d+))?$", re.IGNORECASE)

_WIDTH_BYTES = {"X": 1, "B": 1, "W": 2, "D": 4}

# (width, requested type) -> (value type, struct format)
_FORMATS: dict[tuple[str, str], tuple[str, str]] = {
    ("B", "byte"): ("byte", ">B"),
    ("W", "int16"): ("int16", ">h"),
    ("W", "uint16"): ("uint16", ">H"),
    ("D", "int32"): ("int32", ">i"),
    ("D", "uint32"): ("uint32", ">I"),
    ("D", "float32"): ("float32", ">f"),
    ("D", "real"): ("float32", ">f"),
}

# Default value type per width when the request does not name one that fits
_DEFAULT_TYPE = {"X": "bool", "B": "byte", "W": "int16", "D": "int32"}

S7_DATA_TYPES = frozenset({"bool", "byte", "int16", "uint16", "int32", "uint32", "float32", "real"})


@dataclass
class S7Address:
    """Parsed S7 data point address"""
    area: str           # "DB" or "M"
    db_number: int      # 0 for the merker area
    width: str          # X, B, W, D
    offset: int         # byte offset
    bit: int | None = None

    @property
    def size(self) -> int:
        return _WIDTH_BYTES[self.width]


def parse_s7_address(text: str) -> S7Address:
    """
    Parse an S7 address string.

    Raises:
        ValueError: on malformed address or a bit index outside 0..7
    """
    if not isinstance(text, str) or not text.strip():
        raise ValueError("Empty address")
    raw = text.strip().replace(" ", "")

    match = _DB_PATTERN.match(raw)
    if match:
        db_number, width, offset, bit = match.groups()
        address = S7Address("DB", int(db_number), width.upper(), int(offset),
                            int(bit) if bit is not None else None)
    else:
        match = _M_PATTERN.match(raw)
        if not match:
            raise ValueError(f"Invalid S7 address '{text}'")
        width, offset, bit = match.groups()
        width = width.upper() or ("X" if bit is not None else "B")
        address = S7Address("M", 0, width, int(offset), int(bit) if bit is not None else None)

    if address.width == "X":
        if address.bit is None:
            raise ValueError(f"Bit address needs a bit index: '{text}'")
        if not 0 <= address.bit <= 7:
            raise ValueError(f"Bit index out of range (0-7): '{text}'")
    elif address.bit is not None:
        raise ValueError(f"Only X addresses take a bit index: '{text}'")

    return address


def check_data_type(data_type: str | None) -> str:
    """
    Normalized requested type ("" when none was given).

    Raises:
        ValueError: the name is not an S7 data type
    """
    requested = (data_type or "").strip().lower()
    if requested and requested not in S7_DATA_TYPES:
        valid = ", ".join(sorted(S7_DATA_TYPES))
        raise ValueError(f"Unsupported data type '{data_type}' (valid: {valid})")
    return requested


def resolve_type(address: S7Address, data_type: str | None) -> tuple[str, str | None]:
    """
    Value type and struct format for an address given a requested type.

    A known type that does not fit the address width falls back to the
    width's default, so one batch type can cover mixed widths.

    Raises:
        ValueError: unknown data type name
    """
    requested = check_data_type(data_type)
    if address.width == "X":
        return "bool", None
    key = (address.width, requested)
    if key in _FORMATS:
        return _FORMATS[key]
    return _FORMATS[(address.width, _DEFAULT_TYPE[address.width])]


def decode_s7(data: bytes, address: S7Address, data_type: str | None) -> tuple[Any, str]:
    """Decode raw PLC bytes for an address"""
    value_type, fmt = resolve_type(address, data_type)
    if fmt is None:
        return bool(data[0] >> address.bit & 1), value_type
    value = struct.unpack(fmt, bytes(data[:address.size]))[0]
    if value_type == "float32" and (math.isnan(value) or math.isinf(value)):
        raise ValueError("PLC value is not a finite float")
    return value, value_type


def encode_s7(value: Any, address: S7Address, data_type: str | None) -> tuple[bytes, str]:
    """
    Encode a value for a non-bit address.

    Raises:
        ValueError: if the value does not fit
    """
    value_type, fmt = resolve_type(address, data_type)
    if isinstance(value, bool):
        value = int(value)
    try:
        value = float(value) if value_type == "float32" else _to_int(value)
        return struct.pack(fmt, value), value_type
    except (struct.error, TypeError, ValueError, OverflowError):
        raise ValueError(f"Value {value!r} does not fit {value_type}")


def _to_int(value: Any) -> int:
    if isinstance(value, str):
        return int(value.strip(), 0)
    if isinstance(value, float) and not value.is_integer():
        raise ValueError(f"{value} is not an integer")
    return int(value)


class SiemensS7Adapter(ProtocolAdapter):
    """Siemens S7 over python-snap7 (ISO-on-TCP)"""

    protocol_type = ProtocolType.SIEMENS_S7
    driver_name = "python-snap7"

    def __init__(self, config: DeviceConfig):
        super().__init__(config)
        self._client: Snap7Client | None = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.get_connected()

    async def connect(self) -> None:
        if self.is_connected:
            return

        client = Snap7Client()
        port = self.params.port_for(self.protocol_type)
        # Held before the thread starts: if the await is cancelled on timeout the
        # worker may still finish connecting, and disconnect() must reach it
        self._client = client
        try:
            await asyncio.to_thread(
                client.connect, self.params.host, self.params.rack, self.params.slot, port,
            )
        except Exception as e:
            self._client = None
            raise DriverError(
                f"Connection error to S7 PLC at {self.endpoint} "
                f"(rack={self.params.rack}, slot={self.params.slot}): {e}",
                device_id=self.device_id,
                host=self.params.host,
                port=port,
            )

        logger.debug(
            f"Connected to S7 PLC at {self.endpoint} "
            f"(rack={self.params.rack}, slot={self.params.slot})"
        )

    async def disconnect(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await asyncio.to_thread(client.disconnect)
            logger.debug(f"Disconnected from {self.endpoint}")

    async def _area_read(self, address: S7Address) -> bytearray:
        if address.area == "DB":
            return await asyncio.to_thread(
                self._client.db_read, address.db_number, address.offset, address.size,
            )
        return await asyncio.to_thread(self._client.mb_read, address.offset, address.size)

    async def _area_write(self, address: S7Address, data: bytes) -> None:
        if address.area == "DB":
            await asyncio.to_thread(
                self._client.db_write, address.db_number, address.offset, bytearray(data),
            )
        else:
            await asyncio.to_thread(
                self._client.mb_write, address.offset, len(data), bytearray(data),
            )

    def _check_link(self, error: Exception) -> None:
        """Turn a driver exception into a batch failure when the link is gone"""
        if not self.is_connected:
            raise self.link_lost(str(error))

    def _check_batch_type(self, data_type: str | None) -> None:
        """
        Raises:
            ValidationError: unknown dataType (rejected before the driver is used)
        """
        try:
            check_data_type(data_type)
        except ValueError as e:
            raise ValidationError(str(e), errors=[f"dataType: {e}"], device_id=self.device_id)

    async def read_values(
        self,
        addresses: list[str],
        data_type: str | None = None,
    ) -> list[DataPointResult]:
        self._check_batch_type(data_type)
        if not self.is_connected:
            raise self.link_lost("client not connected")

        results = []
        for address in addresses:
            result = await self._read_one(address, data_type)
            log_device_read(logger, self.device_id, address, result.value, result.success)
            results.append(result)
        return results

    async def _read_one(self, text: str, data_type: str | None) -> DataPointResult:
        start = monotonic_ms()
        try:
            address = parse_s7_address(text)
        except ValueError as e:
            return DataPointResult.failed(text, str(e), data_type)

        try:
            data = await self._area_read(address)
        except Exception as e:
            self._check_link(e)
            return DataPointResult.failed(text, f"S7 read error: {e}", data_type)

        try:
            value, value_type = decode_s7(data, address, data_type)
        except (ValueError, IndexError, struct.error) as e:
            return DataPointResult.failed(text, str(e), data_type)

        return DataPointResult(
            address=text,
            success=True,
            value=value,
            data_type=value_type,
            response_time_ms=elapsed_ms(start),
        )

    async def write_values(
        self,
        points: list[WritePoint],
        data_type: str | None = None,
    ) -> list[DataPointResult]:
        self._check_batch_type(data_type)
        if not self.is_connected:
            raise self.link_lost("client not connected")

        results = []
        for point in points:
            result = await self._write_one(point, point.data_type or data_type)
            log_device_write(logger, self.device_id, point.address, point.value, result.success)
            results.append(result)
        return results

    async def _write_one(self, point: WritePoint, data_type: str | None) -> DataPointResult:
        start = monotonic_ms()
        text = point.address
        try:
            address = parse_s7_address(text)
            check_data_type(data_type)
            if address.width == "X":
                value: Any = coerce_bool(point.value)
                value_type = "bool"
            else:
                payload, value_type = encode_s7(point.value, address, data_type)
                value = point.value
        except ValueError as e:
            return DataPointResult.failed(text, str(e), data_type)

        try:
            if address.width == "X":
                # Read-modify-write of the containing byte
                current = await self._area_read(address)
                byte = current[0] | (1 << address.bit) if value else current[0] & ~(1 << address.bit)
                payload = bytes([byte & 0xFF])
            await self._area_write(address, payload)
        except Exception as e:
            self._check_link(e)
            return DataPointResult.failed(text, f"S7 write error: {e}", value_type)

        return DataPointResult(
            address=text,
            success=True,
            value=value,
            data_type=value_type,
            response_time_ms=elapsed_ms(start),
        )

    async def probe(self) -> bool:
        """Ask the PLC for its CPU state"""
        if not self.is_connected:
            return False
        try:
            await asyncio.to_thread(self._client.get_cpu_state)
        except Exception as e:
            logger.debug(f"Probe of {self.endpoint} failed: {e}")
            return False
        return True
