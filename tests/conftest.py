"""Shared fixtures: a scriptable adapter standing in for protocol drivers."""

import asyncio

import pytest

from gateway.common.config import DeviceConfig, GatewayConfig
from gateway.common.exceptions import DriverError
from gateway.services.device.adapters import DataPointResult, ProtocolAdapter, WritePoint
from gateway.services.device.registry import DeviceRegistry
from gateway.services.ipc.dispatcher import CommandDispatcher


class FakeAdapter(ProtocolAdapter):
    """In-memory adapter; addresses starting with "bad" fail individually."""

    driver_name = "fake"

    def __init__(self, config: DeviceConfig, script: "AdapterScript"):
        super().__init__(config)
        self.protocol_type = config.protocol_type
        self.script = script
        self.connected = False
        self.disconnect_calls = 0

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def connect(self) -> None:
        self.script.connect_calls += 1
        if self.script.connect_delay:
            await asyncio.sleep(self.script.connect_delay)
        if self.script.connect_error:
            raise DriverError(self.script.connect_error, device_id=self.device_id)
        self.connected = True

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.connected = False
        if self.script.disconnect_error:
            raise RuntimeError(self.script.disconnect_error)

    async def _enter(self) -> None:
        self.script.in_flight += 1
        self.script.max_in_flight = max(self.script.max_in_flight, self.script.in_flight)
        self.script.global_in_flight[0] += 1
        self.script.global_max[0] = max(self.script.global_max[0], self.script.global_in_flight[0])
        if self.script.op_delay:
            await asyncio.sleep(self.script.op_delay)

    def _leave(self) -> None:
        self.script.in_flight -= 1
        self.script.global_in_flight[0] -= 1

    async def read_values(self, addresses, data_type=None):
        self.script.read_calls += 1
        await self._enter()
        try:
            if self.script.batch_error:
                raise self.link_lost(self.script.batch_error)
            results = []
            for address in addresses:
                if address.startswith("bad"):
                    results.append(DataPointResult.failed(address, "Invalid address", data_type))
                else:
                    value = self.script.values.get(address, 0)
                    results.append(DataPointResult(address, True, value, data_type=data_type or "int16"))
            return results
        finally:
            self._leave()

    async def write_values(self, points: list[WritePoint], data_type=None):
        self.script.write_calls += 1
        await self._enter()
        try:
            if self.script.batch_error:
                raise self.link_lost(self.script.batch_error)
            results = []
            for point in points:
                if point.address.startswith("bad"):
                    results.append(DataPointResult.failed(point.address, "Invalid address"))
                else:
                    self.script.values[point.address] = point.value
                    results.append(DataPointResult(point.address, True, point.value))
            return results
        finally:
            self._leave()

    async def probe(self) -> bool:
        return self.connected and self.script.probe_ok


class AdapterScript:
    """Behaviour knobs and counters for one device's FakeAdapter."""

    def __init__(self, global_in_flight: list[int], global_max: list[int]):
        self.values: dict[str, object] = {}
        self.connect_error: str | None = None
        self.disconnect_error: str | None = None
        self.batch_error: str | None = None
        self.connect_delay = 0.0
        self.op_delay = 0.0
        self.probe_ok = True
        self.connect_calls = 0
        self.read_calls = 0
        self.write_calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.global_in_flight = global_in_flight
        self.global_max = global_max
        self.adapters: list[FakeAdapter] = []


class FakeDrivers:
    """Adapter factory handing out FakeAdapters with per-device scripts."""

    def __init__(self):
        self.scripts: dict[str, AdapterScript] = {}
        self.global_in_flight = [0]
        self.global_max = [0]

    def script(self, device_id: str) -> AdapterScript:
        if device_id not in self.scripts:
            self.scripts[device_id] = AdapterScript(self.global_in_flight, self.global_max)
        return self.scripts[device_id]

    def __call__(self, config: DeviceConfig) -> FakeAdapter:
        script = self.script(config.device_id)
        adapter = FakeAdapter(config, script)
        script.adapters.append(adapter)
        return adapter

    @property
    def max_concurrent(self) -> int:
        return self.global_max[0]


def modbus_payload(device_id: str = "d1", **params) -> dict:
    connection = {"host": "127.0.0.1", "port": 502, "timeoutMs": 1000}
    connection.update(params)
    return {
        "deviceId": device_id,
        "name": f"Device {device_id}",
        "protocolType": "ModbusTcp",
        "connectionParams": connection,
    }


@pytest.fixture
def drivers() -> FakeDrivers:
    return FakeDrivers()


@pytest.fixture
def registry(drivers) -> DeviceRegistry:
    return DeviceRegistry(adapter_factory=drivers)


@pytest.fixture
def dispatcher(registry) -> CommandDispatcher:
    return CommandDispatcher(registry)


@pytest.fixture
def device_config() -> DeviceConfig:
    return DeviceConfig.from_dict(modbus_payload("d1"))


@pytest.fixture
def gateway_config() -> GatewayConfig:
    # Port 0: let the OS pick a free port
    return GatewayConfig(host="127.0.0.1", port=0, health_port=0)


@pytest.fixture
def make_payload():
    return modbus_payload
