"""Tests for the gateway service lifecycle and health endpoints."""

import asyncio
import json

from gateway.common.config import GatewayConfig
from gateway.services.ipc.protocol import IpcRequest
from gateway.services.ipc.service import GatewayService


def service_config(**overrides) -> GatewayConfig:
    values = {"host": "127.0.0.1", "port": 0, "health_port": 0}
    values.update(overrides)
    return GatewayConfig(**values)


async def test_preloads_configured_devices(drivers, make_payload):
    config = service_config(devices=[
        make_payload("a"),
        make_payload("b"),
        {"deviceId": "broken", "protocolType": "ModbusTcp", "connectionParams": {}},
        make_payload("a"),
    ])
    service = GatewayService(config, adapter_factory=drivers)

    await service.start()
    try:
        assert [c.device_id for c in service.registry.list_devices()] == ["a", "b"]
        assert service.is_running
        assert service.server.is_serving
        # Preloading registers only
        assert drivers.scripts == {}
    finally:
        await service.stop()

    assert not service.is_running
    assert not service.server.is_serving


async def test_health_handler_reports_running(drivers, make_payload):
    service = GatewayService(service_config(devices=[make_payload("a")]), adapter_factory=drivers)
    await service.start()
    try:
        response = await service._health_handler(None)
        body = json.loads(response.body)
        assert response.status == 200
        assert body["status"] == "healthy"
        assert body["devices"]["device_count"] == 1
        assert "clients" not in body["ipc"]
    finally:
        await service.stop()


async def test_health_handler_unhealthy_when_stopped(drivers):
    service = GatewayService(service_config(), adapter_factory=drivers)
    response = await service._health_handler(None)
    assert response.status == 503
    assert json.loads(response.body)["status"] == "unhealthy"


async def test_devices_handler(drivers, make_payload):
    service = GatewayService(service_config(devices=[make_payload("a")]), adapter_factory=drivers)
    await service.start()
    try:
        body = json.loads((await service._devices_handler(None)).body)
        assert body["count"] == 1
        assert body["devices"][0]["state"] == "Disconnected"
    finally:
        await service.stop()


async def test_stop_disconnects_devices(drivers, make_payload):
    service = GatewayService(service_config(devices=[make_payload("a")]), adapter_factory=drivers)
    await service.start()
    await (await service.registry.connection_for("a")).connect()

    await service.stop()

    assert drivers.script("a").adapters[0].disconnect_calls == 1


async def test_run_returns_after_shutdown_request(drivers):
    service = GatewayService(service_config(), adapter_factory=drivers)
    task = asyncio.create_task(service.run())
    while not service.is_running:
        await asyncio.sleep(0.01)

    service.request_shutdown()
    await asyncio.wait_for(task, timeout=5)

    assert not service.server.is_serving


async def test_status_command_sees_server_stats(drivers):
    service = GatewayService(service_config(), adapter_factory=drivers)
    await service.start()
    try:
        reader, writer = await asyncio.open_connection("127.0.0.1", service.server.bound_port)
        writer.write(b'{"messageId": "s", "command": "status"}')
        await writer.drain()
        body = json.loads(await asyncio.wait_for(reader.read(65536), timeout=5))
        writer.close()
        await writer.wait_closed()

        assert body["data"]["activeConnections"] == 1
        assert body["data"]["totalConnections"] == 1

        info = await service.dispatcher.dispatch(IpcRequest(command="protocol_info"))
        assert info.data["limits"]["maxConnections"] == 50
        assert info.data["limits"]["framing"] == "raw"
    finally:
        await service.stop()
