"""
Device Registry

In-memory mapping of deviceId to configuration and (lazily created)
connection. Rebuilt empty on every restart.
"""

import asyncio
from dataclasses import dataclass
from typing import Any

from ...common.config import ConnectionState, DeviceConfig, ProtocolType, validate_device_config
from ...common.exceptions import DeviceNotFoundError, DuplicateDeviceError, ValidationError
from ...common.logging_setup import get_service_logger
from .adapters import ADAPTER_REGISTRY, create_adapter, driver_bound
from .connection import AdapterFactory, DeviceConnection

logger = get_service_logger("device.registry")


@dataclass
class DeviceEntry:
    """Registered device: configuration plus connection, if one was ever opened"""
    config: DeviceConfig
    connection: DeviceConnection | None = None

    @property
    def state(self) -> ConnectionState:
        if self.connection is None:
            return ConnectionState.DISCONNECTED
        return self.connection.state


class DeviceRegistry:
    """
    Registry of configured devices.

    Mutations are serialized by one coarse lock; device counts are small.
    Per-device command ordering is the job of each DeviceConnection's lock.
    """

    def __init__(self, adapter_factory: AdapterFactory = create_adapter):
        self._devices: dict[str, DeviceEntry] = {}
        self._lock = asyncio.Lock()
        self._adapter_factory = adapter_factory

    def list_devices(self) -> list[DeviceConfig]:
        """Configurations in insertion order"""
        return [entry.config for entry in self._devices.values()]

    def get(self, device_id: str) -> DeviceConfig:
        """
        Raises:
            DeviceNotFoundError: if no device has this ID
        """
        return self.entry(device_id).config

    def entry(self, device_id: str) -> DeviceEntry:
        entry = self._devices.get(device_id)
        if entry is None:
            raise DeviceNotFoundError(device_id)
        return entry

    def __contains__(self, device_id: str) -> bool:
        return device_id in self._devices

    def __len__(self) -> int:
        return len(self._devices)

    async def add(self, config: DeviceConfig) -> DeviceConfig:
        """
        Register a device without opening a connection.

        Raises:
            DuplicateDeviceError: deviceId already registered (original untouched)
            ValidationError: protocol-specific parameters are invalid
        """
        is_valid, errors = validate_device_config(config)
        async with self._lock:
            if config.device_id in self._devices:
                raise DuplicateDeviceError(config.device_id)
            if not is_valid:
                raise ValidationError(
                    f"Invalid configuration for {config.device_id}: {'; '.join(errors)}",
                    errors=errors,
                    device_id=config.device_id,
                )
            self._devices[config.device_id] = DeviceEntry(config=config)

        logger.info(
            f"Registered device: {config.name} ({config.device_id})",
            extra={"device": config.device_id, "protocol": config.protocol_type.value},
        )
        return config

    async def remove(self, device_id: str) -> DeviceConfig:
        """
        Remove a device, disconnecting it first (best-effort).

        Raises:
            DeviceNotFoundError: if no device has this ID
        """
        async with self._lock:
            entry = self.entry(device_id)

        # Outside the registry lock: a slow driver only holds its own device lock
        if entry.connection is not None:
            await entry.connection.disconnect()

        async with self._lock:
            if self._devices.get(device_id) is not entry:
                raise DeviceNotFoundError(device_id)
            del self._devices[device_id]

        # A connect that slipped in between must not outlive the entry
        if entry.connection is not None and entry.connection.state != ConnectionState.DISCONNECTED:
            await entry.connection.disconnect()

        logger.info(f"Removed device: {device_id}", extra={"device": device_id})
        return entry.config

    async def connection_for(self, device_id: str) -> DeviceConnection:
        """
        Connection for a device, created on first use.

        Raises:
            DeviceNotFoundError: if no device has this ID
        """
        async with self._lock:
            entry = self.entry(device_id)
            if entry.connection is None:
                entry.connection = DeviceConnection(entry.config, self._adapter_factory)
            return entry.connection

    def existing_connection(self, device_id: str) -> DeviceConnection | None:
        """Connection if one was created, without creating it"""
        return self.entry(device_id).connection

    def device_status(self, device_id: str) -> dict[str, Any]:
        """Status snapshot; devices never connected report Disconnected"""
        entry = self.entry(device_id)
        if entry.connection is not None:
            return entry.connection.status()
        config = entry.config
        return {
            "deviceId": config.device_id,
            "name": config.name,
            "protocolType": config.protocol_type.value,
            "enabled": config.enabled,
            "state": ConnectionState.DISCONNECTED.value,
            "isConnected": False,
            "lastError": None,
            "lastActivity": None,
            "lastConnectedTime": None,
            "errorCount": 0,
            "statistics": None,
        }

    def connected_count(self) -> int:
        return sum(1 for e in self._devices.values() if e.state == ConnectionState.CONNECTED)

    @staticmethod
    def supported_protocols() -> list[ProtocolType]:
        """Protocol types backed by a driver library"""
        return [p for p in ADAPTER_REGISTRY if driver_bound(p)]

    async def close_all(self) -> None:
        """Disconnect every device (shutdown)"""
        async with self._lock:
            connections = [e.connection for e in self._devices.values() if e.connection]

        if connections:
            await asyncio.gather(*(c.disconnect() for c in connections))
            logger.info(f"Disconnected {len(connections)} devices")

    def get_stats(self) -> dict[str, Any]:
        """Registry statistics"""
        by_state: dict[str, int] = {state.value: 0 for state in ConnectionState}
        for entry in self._devices.values():
            by_state[entry.state.value] += 1
        return {
            "device_count": len(self._devices),
            "connected": by_state[ConnectionState.CONNECTED.value],
            "by_state": by_state,
        }
