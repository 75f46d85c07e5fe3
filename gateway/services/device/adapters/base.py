"""
Protocol Adapter Interface

One capability interface over heterogeneous driver libraries:
connect / disconnect / read_values / write_values / probe.

Reads and writes are batches with per-address outcomes. An adapter
returns one DataPointResult per requested address, in request order;
a bad address never aborts the batch. Only a failure of the link
itself (connection lost, driver gone) is raised, as DriverError.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from ....common.config import DeviceConfig, ProtocolType
from ....common.exceptions import DriverError


@dataclass
class DataPointResult:
    """Outcome of one address in a batch read or write"""
    address: str
    success: bool
    value: Any = None
    error: str | None = None
    data_type: str | None = None
    response_time_ms: float | None = None

    @classmethod
    def failed(cls, address: str, error: str, data_type: str | None = None) -> "DataPointResult":
        return cls(address=address, success=False, error=error, data_type=data_type)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "address": self.address,
            "success": self.success,
            "value": self.value,
            "error": self.error,
        }
        if self.data_type is not None:
            result["dataType"] = self.data_type
        if self.response_time_ms is not None:
            result["responseTimeMs"] = self.response_time_ms
        return result


@dataclass
class WritePoint:
    """One (address, value) pair of a batch write"""
    address: str
    value: Any
    data_type: str | None = None   # overrides the batch data type


class ProtocolAdapter(ABC):
    """
    Base class for protocol driver adapters.

    An adapter exclusively owns its driver handle. Callers serialize access
    (one in-flight operation per adapter) and bound every call with the
    device timeout, so adapters do not lock or time out on their own.
    """

    protocol_type: ProtocolType
    driver_name: str = ""

    def __init__(self, config: DeviceConfig):
        self.config = config
        self.params = config.connection_params

    @property
    def device_id(self) -> str:
        return self.config.device_id

    @property
    def timeout_s(self) -> float:
        return self.params.timeout_ms / 1000.0

    @property
    def endpoint(self) -> str:
        """Human-readable target for log messages"""
        port = self.params.port_for(self.config.protocol_type)
        return f"{self.params.host}:{port}"

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """True while the driver reports an open link"""

    @abstractmethod
    async def connect(self) -> None:
        """
        Open the driver link.

        Raises:
            DriverError: if the link cannot be established
        """

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the driver link. May raise; callers log and swallow."""

    @abstractmethod
    async def read_values(
        self,
        addresses: list[str],
        data_type: str | None = None,
    ) -> list[DataPointResult]:
        """Read a batch of addresses, one result per address"""

    @abstractmethod
    async def write_values(
        self,
        points: list[WritePoint],
        data_type: str | None = None,
    ) -> list[DataPointResult]:
        """Write a batch of points, one result per point"""

    async def probe(self) -> bool:
        """Cheap liveness check of an open link"""
        return self.is_connected

    def link_lost(self, reason: str) -> DriverError:
        """Error raised when the whole batch fails because the link is gone"""
        return DriverError(
            f"Link to {self.endpoint} lost: {reason}",
            device_id=self.device_id,
            host=self.params.host or None,
            port=self.params.port,
        )
