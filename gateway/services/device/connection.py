"""
Device Connection

Runtime companion of a registered device: owns the adapter (driver handle),
the connection state machine and communication statistics.

Every operation holds the device's own lock, so commands for one device run
strictly one at a time in arrival order while other devices proceed in
parallel. Driver calls are bounded by the device timeout.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from ...common.config import ConnectionState, DeviceConfig
from ...common.exceptions import (
    ConnectionTimeoutError,
    DeviceNotConnectedError,
    DriverError,
    InvalidStateTransitionError,
)
from ...common.logging_setup import get_service_logger, log_state_change
from ...common.timestamp import elapsed_ms, format_timestamp, monotonic_ms, utc_now
from .adapters import DataPointResult, ProtocolAdapter, WritePoint, create_adapter

logger = get_service_logger("device.connection")


ALLOWED_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset({
        ConnectionState.CONNECTING,
        ConnectionState.DISCONNECTED,
    }),
    ConnectionState.CONNECTING: frozenset({
        ConnectionState.CONNECTED,
        ConnectionState.ERROR,
        ConnectionState.DISCONNECTED,
    }),
    ConnectionState.CONNECTED: frozenset({
        ConnectionState.DISCONNECTED,
        ConnectionState.ERROR,
    }),
    ConnectionState.ERROR: frozenset({
        ConnectionState.CONNECTING,
        ConnectionState.DISCONNECTED,
    }),
}

AdapterFactory = Callable[[DeviceConfig], ProtocolAdapter]


@dataclass
class ConnectionStatistics:
    """Communication counters for one device"""
    total_reads: int = 0
    successful_reads: int = 0
    total_writes: int = 0
    successful_writes: int = 0
    operations: int = 0
    total_response_ms: float = 0.0
    max_response_ms: float = 0.0

    @property
    def average_response_ms(self) -> float:
        if self.operations == 0:
            return 0.0
        return round(self.total_response_ms / self.operations, 2)

    def record(self, kind: str, results: list[DataPointResult], duration_ms: float) -> None:
        """Record a completed batch"""
        ok = sum(1 for r in results if r.success)
        if kind == "read":
            self.total_reads += len(results)
            self.successful_reads += ok
        else:
            self.total_writes += len(results)
            self.successful_writes += ok
        self.operations += 1
        self.total_response_ms += duration_ms
        self.max_response_ms = max(self.max_response_ms, duration_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalReads": self.total_reads,
            "successfulReads": self.successful_reads,
            "totalWrites": self.total_writes,
            "successfulWrites": self.successful_writes,
            "averageResponseTimeMs": self.average_response_ms,
            "maxResponseTimeMs": round(self.max_response_ms, 2),
        }


class DeviceConnection:
    """
    Connection state machine for one device.

    States: Disconnected (initial), Connecting, Connected, Error.
    Reads and writes are only permitted while Connected.
    """

    def __init__(
        self,
        config: DeviceConfig,
        adapter_factory: AdapterFactory = create_adapter,
    ):
        self.config = config
        self._adapter_factory = adapter_factory
        self._adapter: ProtocolAdapter | None = None
        self._state = ConnectionState.DISCONNECTED
        # asyncio.Lock wakes waiters in FIFO order
        self.lock = asyncio.Lock()

        self.last_error: str | None = None
        self.last_activity: datetime | None = None
        self.last_connected_time: datetime | None = None
        self.error_count = 0
        self.stats = ConnectionStatistics()

    @property
    def device_id(self) -> str:
        return self.config.device_id

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def timeout_s(self) -> float:
        return self.config.timeout_ms / 1000.0

    def _transition(self, target: ConnectionState, error: str | None = None) -> None:
        if target not in ALLOWED_TRANSITIONS[self._state]:
            raise InvalidStateTransitionError(self.device_id, self._state.value, target.value)

        old = self._state
        self._state = target
        if error:
            self.last_error = error
            self.error_count += 1
        if old != target:
            log_state_change(logger, self.device_id, old.value, target.value, error)

    async def connect(self) -> ConnectionState:
        """
        Open the driver link.

        No-op when already Connected. On failure the device moves to Error
        and the error is raised; configuration is never touched.

        Raises:
            DriverError: driver refused or failed the connection
            ConnectionTimeoutError: connect exceeded the device timeout
        """
        async with self.lock:
            if self._state == ConnectionState.CONNECTED:
                return self._state

            self._transition(ConnectionState.CONNECTING)
            adapter = self._adapter_factory(self.config)
            self._adapter = adapter

            try:
                await asyncio.wait_for(adapter.connect(), timeout=self.timeout_s)
            except asyncio.TimeoutError:
                error = ConnectionTimeoutError(
                    f"Connect to {adapter.endpoint}", self.config.timeout_ms, self.device_id,
                )
                await self._enter_error(error)
                raise error
            except DriverError as e:
                e.device_id = self.device_id
                await self._enter_error(e)
                raise
            except Exception as e:
                error = DriverError(f"Connection error: {e}", device_id=self.device_id)
                await self._enter_error(error)
                raise error from e

            now = utc_now()
            self.last_connected_time = now
            self.last_activity = now
            self.last_error = None
            self._transition(ConnectionState.CONNECTED)
            logger.info(
                f"Device {self.device_id} connected to {adapter.endpoint}",
                extra={"device": self.device_id, "protocol": self.config.protocol_type.value},
            )
            return self._state

    async def disconnect(self) -> ConnectionState:
        """Close the driver link and return to Disconnected. Never fails."""
        async with self.lock:
            await self._close_adapter()
            self._transition(ConnectionState.DISCONNECTED)
            return self._state

    async def read_values(
        self,
        addresses: list[str],
        data_type: str | None = None,
    ) -> list[DataPointResult]:
        """
        Batch read; one result per address in request order.

        Raises:
            DeviceNotConnectedError: state is not Connected (driver untouched)
            ValidationError: unknown dataType (device stays Connected)
            DriverError / ConnectionTimeoutError: the whole batch failed
        """
        async with self.lock:
            adapter = self._require_connected()
            return await self._run_batch(
                "read", "read_data", adapter.read_values(addresses, data_type),
            )

    async def write_values(
        self,
        points: list[WritePoint],
        data_type: str | None = None,
    ) -> list[DataPointResult]:
        """Batch write; same contract as read_values"""
        async with self.lock:
            adapter = self._require_connected()
            return await self._run_batch(
                "write", "write_data", adapter.write_values(points, data_type),
            )

    async def probe(self) -> bool:
        """Liveness check of the open link; False when not Connected"""
        async with self.lock:
            if self._state != ConnectionState.CONNECTED or self._adapter is None:
                return False
            try:
                alive = await asyncio.wait_for(self._adapter.probe(), timeout=self.timeout_s)
            except asyncio.TimeoutError:
                alive = False
            if alive:
                self.last_activity = utc_now()
            return alive

    def _require_connected(self) -> ProtocolAdapter:
        if self._state != ConnectionState.CONNECTED or self._adapter is None:
            raise DeviceNotConnectedError(self.device_id, self._state.value)
        return self._adapter

    async def _run_batch(self, kind: str, operation: str, call) -> list[DataPointResult]:
        start = monotonic_ms()
        try:
            results = await asyncio.wait_for(call, timeout=self.timeout_s)
        except asyncio.TimeoutError:
            error = ConnectionTimeoutError(operation, self.config.timeout_ms, self.device_id)
            await self._enter_error(error)
            raise error
        except DriverError as e:
            e.device_id = self.device_id
            await self._enter_error(e)
            raise
        # Other errors (e.g. ValidationError) propagate and leave the device Connected

        self.stats.record(kind, results, elapsed_ms(start))
        self.last_activity = utc_now()
        return results

    async def _enter_error(self, error: DriverError) -> None:
        """Drop the driver handle and move to Error"""
        await self._close_adapter()
        self._transition(ConnectionState.ERROR, error.message)

    async def _close_adapter(self) -> None:
        adapter, self._adapter = self._adapter, None
        if adapter is None:
            return
        try:
            await asyncio.wait_for(adapter.disconnect(), timeout=self.timeout_s)
        except Exception as e:
            logger.warning(
                f"Error closing driver for {self.device_id}: {e}",
                extra={"device": self.device_id},
            )

    def status(self) -> dict[str, Any]:
        """Snapshot for device_status"""
        return {
            "deviceId": self.device_id,
            "name": self.config.name,
            "protocolType": self.config.protocol_type.value,
            "enabled": self.config.enabled,
            "state": self._state.value,
            "isConnected": self.is_connected,
            "lastError": self.last_error,
            "lastActivity": format_timestamp(self.last_activity) if self.last_activity else None,
            "lastConnectedTime": (
                format_timestamp(self.last_connected_time) if self.last_connected_time else None
            ),
            "errorCount": self.error_count,
            "statistics": self.stats.to_dict(),
        }
