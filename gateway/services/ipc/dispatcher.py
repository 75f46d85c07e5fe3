"""
Command Dispatcher

Routes a decoded request to its handler. Handlers see only the payload,
the device registry and the server statistics; never the socket.

dispatch() always returns a CommandResult: known gateway errors become
structured failures, anything unexpected becomes an InternalError.
"""

import os
import platform
import time
from importlib import metadata
from typing import Any, Awaitable, Callable

from ... import __version__
from ...common.config import DeviceConfig
from ...common.exceptions import (
    DeviceNotConnectedError,
    GatewayError,
    InternalError,
    UnknownCommandError,
)
from ...common.logging_setup import get_service_logger
from ...common.timestamp import utc_timestamp_ms
from ..device.adapters import WritePoint
from ..device.registry import DeviceRegistry
from .protocol import (
    PROTOCOL_VERSION,
    SUPPORTED_PROTOCOL_VERSIONS,
    CommandResult,
    DeviceRefPayload,
    DeviceStatusPayload,
    IpcRequest,
    ReadDataPayload,
    WriteDataPayload,
    parse_payload,
)

logger = get_service_logger("ipc.dispatcher")

Handler = Callable[[dict[str, Any]], Awaitable[CommandResult]]
StatsProvider = Callable[[], dict[str, Any]]

# Driver distributions reported by the version command
DRIVER_PACKAGES = ("pymodbus", "python-snap7")


def _no_server_stats() -> dict[str, Any]:
    return {"active_connections": 0, "total_connections": 0, "messages_processed": 0}


def _batch_data(device_id: str, results: list) -> dict[str, Any]:
    success_count = sum(1 for r in results if r.success)
    return {
        "deviceId": device_id,
        "results": [r.to_dict() for r in results],
        "successCount": success_count,
        "failureCount": len(results) - success_count,
    }


class CommandDispatcher:
    """Case-insensitive command router"""

    def __init__(
        self,
        registry: DeviceRegistry,
        stats_provider: StatsProvider = _no_server_stats,
        protocol_version: str = PROTOCOL_VERSION,
        limits: dict[str, Any] | None = None,
    ):
        self.registry = registry
        self._stats_provider = stats_provider
        self.protocol_version = protocol_version
        self.limits = limits or {}
        self._started = time.monotonic()

        self._handlers: dict[str, Handler] = {
            "ping": self._ping,
            "status": self._status,
            "health_check": self._health_check,
            "version": self._version,
            "protocol_info": self._protocol_info,
            "device_list": self._device_list,
            "add_device": self._add_device,
            "remove_device": self._remove_device,
            "device_status": self._device_status,
            "connect_device": self._connect_device,
            "disconnect_device": self._disconnect_device,
            "test_connection": self._test_connection,
            "read_data": self._read_data,
            "write_data": self._write_data,
        }

    @property
    def available_commands(self) -> list[str]:
        return list(self._handlers)

    @property
    def uptime_seconds(self) -> float:
        return round(time.monotonic() - self._started, 3)

    async def dispatch(self, request: IpcRequest) -> CommandResult:
        """Run the handler for a request; never raises"""
        handler = self._handlers.get(request.command_key)
        if handler is None:
            logger.warning(f"Unknown command: {request.command}")
            return CommandResult.fail(UnknownCommandError(request.command, self.available_commands))

        logger.debug(
            f"Dispatching {request.command_key}",
            extra={"message_id": request.message_id, "payload": request.data},
        )
        try:
            return await handler(request.data)
        except GatewayError as e:
            logger.warning(
                f"Command {request.command_key} failed: {e.message}",
                extra={"kind": e.kind, "device": e.device_id},
            )
            return CommandResult.fail(e)
        except Exception as e:
            logger.exception(f"Unexpected error in {request.command_key}")
            return CommandResult.fail(InternalError(f"Internal error: {e}"))

    # Service commands

    async def _ping(self, data: dict[str, Any]) -> CommandResult:
        return CommandResult.ok({
            "message": "pong",
            "serverTime": utc_timestamp_ms(),
            "version": __version__,
        })

    async def _status(self, data: dict[str, Any]) -> CommandResult:
        stats = self._stats_provider()
        return CommandResult.ok({
            "status": "running",
            "uptimeSeconds": self.uptime_seconds,
            "version": __version__,
            "activeConnections": stats.get("active_connections", 0),
            "totalConnections": stats.get("total_connections", 0),
            "messagesProcessed": stats.get("messages_processed", 0),
            "deviceCount": len(self.registry),
            "connectedDeviceCount": self.registry.connected_count(),
            "processId": os.getpid(),
        })

    async def _health_check(self, data: dict[str, Any]) -> CommandResult:
        stats = self._stats_provider()
        return CommandResult.ok({
            "healthy": True,
            "uptimeSeconds": self.uptime_seconds,
            "activeConnections": stats.get("active_connections", 0),
            "messagesProcessed": stats.get("messages_processed", 0),
            "timestamp": utc_timestamp_ms(),
        })

    async def _version(self, data: dict[str, Any]) -> CommandResult:
        drivers: dict[str, str | None] = {}
        for package in DRIVER_PACKAGES:
            try:
                drivers[package] = metadata.version(package)
            except metadata.PackageNotFoundError:
                drivers[package] = None
        return CommandResult.ok({
            "serviceVersion": __version__,
            "protocolVersion": self.protocol_version,
            "pythonVersion": platform.python_version(),
            "drivers": drivers,
        })

    async def _protocol_info(self, data: dict[str, Any]) -> CommandResult:
        return CommandResult.ok({
            "protocol": {
                "current": self.protocol_version,
                "supported": SUPPORTED_PROTOCOL_VERSIONS,
            },
            "supportedCommands": self.available_commands,
            "limits": self.limits,
        })

    # Registry commands

    async def _device_list(self, data: dict[str, Any]) -> CommandResult:
        devices = []
        for config in self.registry.list_devices():
            entry = config.to_dict()
            entry["state"] = self.registry.entry(config.device_id).state.value
            devices.append(entry)
        return CommandResult.ok({
            "devices": devices,
            "count": len(devices),
            "supportedTypes": [p.value for p in self.registry.supported_protocols()],
        })

    async def _add_device(self, data: dict[str, Any]) -> CommandResult:
        config = await self.registry.add(DeviceConfig.from_dict(data))
        return CommandResult.ok({
            "deviceId": config.device_id,
            "protocolType": config.protocol_type.value,
            "message": f"Device {config.device_id} added",
        })

    async def _remove_device(self, data: dict[str, Any]) -> CommandResult:
        payload = parse_payload(DeviceRefPayload, data)
        await self.registry.remove(payload.device_id)
        return CommandResult.ok({
            "deviceId": payload.device_id,
            "message": f"Device {payload.device_id} removed",
        })

    async def _device_status(self, data: dict[str, Any]) -> CommandResult:
        payload = parse_payload(DeviceStatusPayload, data)
        if payload.device_id:
            return CommandResult.ok({
                "deviceId": payload.device_id,
                "status": self.registry.device_status(payload.device_id),
            })

        statuses = [self.registry.device_status(c.device_id) for c in self.registry.list_devices()]
        return CommandResult.ok({"devices": statuses, "count": len(statuses)})

    # Connection commands

    async def _connect_device(self, data: dict[str, Any]) -> CommandResult:
        payload = parse_payload(DeviceRefPayload, data)
        connection = await self.registry.connection_for(payload.device_id)
        state = await connection.connect()
        return CommandResult.ok({
            "deviceId": payload.device_id,
            "state": state.value,
            "message": f"Device {payload.device_id} connected",
        })

    async def _disconnect_device(self, data: dict[str, Any]) -> CommandResult:
        payload = parse_payload(DeviceRefPayload, data)
        connection = self.registry.existing_connection(payload.device_id)
        if connection is not None:
            state = (await connection.disconnect()).value
        else:
            state = self.registry.entry(payload.device_id).state.value
        return CommandResult.ok({
            "deviceId": payload.device_id,
            "state": state,
            "message": f"Device {payload.device_id} disconnected",
        })

    async def _test_connection(self, data: dict[str, Any]) -> CommandResult:
        payload = parse_payload(DeviceRefPayload, data)
        connection = self.registry.existing_connection(payload.device_id)
        connected = connection is not None and await connection.probe()
        return CommandResult.ok({"deviceId": payload.device_id, "connected": connected})

    async def _read_data(self, data: dict[str, Any]) -> CommandResult:
        payload = parse_payload(ReadDataPayload, data)
        connection = self.registry.existing_connection(payload.device_id)
        if connection is None:
            raise DeviceNotConnectedError(payload.device_id, "Disconnected")

        results = await connection.read_values(payload.addresses, payload.data_type)
        return CommandResult.ok(_batch_data(payload.device_id, results))

    async def _write_data(self, data: dict[str, Any]) -> CommandResult:
        payload = parse_payload(WriteDataPayload, data)
        connection = self.registry.existing_connection(payload.device_id)
        if connection is None:
            raise DeviceNotConnectedError(payload.device_id, "Disconnected")

        points = [
            WritePoint(address=p.address, value=p.value, data_type=p.data_type)
            for p in payload.data_points
        ]
        results = await connection.write_values(points, payload.data_type)
        return CommandResult.ok(_batch_data(payload.device_id, results))
