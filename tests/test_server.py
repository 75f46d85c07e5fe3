"""End-to-end tests over a loopback socket."""

import asyncio
import json

import pytest

from gateway.common.config import Framing, GatewayConfig
from gateway.common.exceptions import BindError
from gateway.services.ipc.server import IpcServer


@pytest.fixture
async def server(gateway_config, dispatcher):
    server = IpcServer(gateway_config, dispatcher)
    await server.start()
    yield server
    await server.stop()


@pytest.fixture
async def line_server(dispatcher):
    config = GatewayConfig(host="127.0.0.1", port=0, framing=Framing.NEWLINE, health_port=0)
    server = IpcServer(config, dispatcher)
    await server.start()
    yield server
    await server.stop()


async def open_client(server: IpcServer):
    return await asyncio.open_connection("127.0.0.1", server.bound_port)


async def raw_call(reader, writer, message: dict | bytes) -> dict:
    payload = message if isinstance(message, bytes) else json.dumps(message).encode()
    writer.write(payload)
    await writer.drain()
    data = await asyncio.wait_for(reader.read(65536), timeout=5)
    return json.loads(data)


async def line_call(reader, writer, message: dict) -> dict:
    writer.write(json.dumps(message).encode() + b"\n")
    await writer.drain()
    line = await asyncio.wait_for(reader.readline(), timeout=5)
    return json.loads(line)


async def close(writer):
    writer.close()
    await writer.wait_closed()


async def test_ping_round_trip(server):
    reader, writer = await open_client(server)
    response = await raw_call(reader, writer, {"messageId": "abc-123", "command": "ping"})
    await close(writer)

    assert response["messageId"] == "abc-123"
    assert response["success"] is True
    assert response["command"] == "ping"
    assert response["data"]["message"] == "pong"
    assert response["error"] is None
    assert response["version"] == "1.0"
    assert response["processingTimeMs"] >= 0


async def test_parse_error_keeps_connection_open(server):
    reader, writer = await open_client(server)

    bad = await raw_call(reader, writer, b"{not json")
    assert bad["success"] is False
    assert bad["error"]["kind"] == "ParseError"
    assert bad["messageId"]

    good = await raw_call(reader, writer, {"messageId": "m2", "command": "ping"})
    assert good["success"] is True
    await close(writer)


async def test_device_scenario_over_socket(server, drivers, make_payload):
    reader, writer = await open_client(server)

    added = await raw_call(reader, writer, {"messageId": "1", "command": "add_device", "data": make_payload("d1")})
    assert added["success"]

    not_connected = await raw_call(reader, writer, {
        "messageId": "2", "command": "read_data", "data": {"deviceId": "d1", "addresses": ["0"]},
    })
    assert not_connected["error"]["kind"] == "DeviceNotConnectedError"
    assert not_connected["error"]["deviceId"] == "d1"

    drivers.script("d1").values = {"0": 99}
    await raw_call(reader, writer, {"messageId": "3", "command": "connect_device", "data": {"deviceId": "d1"}})
    read = await raw_call(reader, writer, {
        "messageId": "4", "command": "read_data", "data": {"deviceId": "d1", "addresses": ["0", "bad"]},
    })
    assert read["messageId"] == "4"
    assert read["data"]["results"][0]["value"] == 99
    assert read["data"]["failureCount"] == 1

    await close(writer)


async def test_unknown_command_over_socket(server):
    reader, writer = await open_client(server)
    response = await raw_call(reader, writer, {"messageId": "x", "command": "self_destruct"})
    await close(writer)
    assert response["success"] is False
    assert response["error"]["kind"] == "UnknownCommandError"


async def test_newline_framing_pipelined(line_server):
    reader, writer = await open_client(line_server)
    batch = b"".join(
        json.dumps({"messageId": f"m{i}", "command": "ping"}).encode() + b"\n" for i in range(3)
    )
    writer.write(batch)
    await writer.drain()

    ids = []
    for _ in range(3):
        line = await asyncio.wait_for(reader.readline(), timeout=5)
        ids.append(json.loads(line)["messageId"])
    await close(writer)

    assert ids == ["m0", "m1", "m2"]


async def test_newline_framing_skips_blank_lines(line_server):
    reader, writer = await open_client(line_server)
    writer.write(b"\n\n")
    response = await line_call(reader, writer, {"messageId": "after-blank", "command": "ping"})
    await close(writer)
    assert response["messageId"] == "after-blank"


async def test_clients_are_independent(server):
    clients = [await open_client(server) for _ in range(3)]
    responses = await asyncio.gather(*(
        raw_call(r, w, {"messageId": f"c{i}", "command": "ping"}) for i, (r, w) in enumerate(clients)
    ))
    for _, writer in clients:
        await close(writer)
    assert [r["messageId"] for r in responses] == ["c0", "c1", "c2"]


async def test_connection_limit(dispatcher):
    config = GatewayConfig(host="127.0.0.1", port=0, max_connections=1, health_port=0)
    server = IpcServer(config, dispatcher)
    await server.start()
    try:
        first_reader, first_writer = await open_client(server)
        await raw_call(first_reader, first_writer, {"command": "ping"})

        second_reader, second_writer = await open_client(server)
        data = await asyncio.wait_for(second_reader.read(65536), timeout=5)
        rejected = json.loads(data)
        assert rejected["success"] is False
        assert rejected["error"]["kind"] == "ServiceUnavailableError"
        assert await asyncio.wait_for(second_reader.read(1), timeout=5) == b""
        assert server.rejected_connections == 1

        await close(first_writer)
        await close(second_writer)
    finally:
        await server.stop()


async def test_stats_track_clients(server):
    reader, writer = await open_client(server)
    await raw_call(reader, writer, {"command": "ping"})

    stats = server.get_stats()
    assert stats["active_connections"] == 1
    assert stats["messages_processed"] == 1
    assert stats["clients"][0]["messageCount"] == 1

    await close(writer)


async def test_bind_conflict_raises_bind_error(server, dispatcher):
    config = GatewayConfig(host="127.0.0.1", port=server.bound_port, health_port=0)
    other = IpcServer(config, dispatcher)
    with pytest.raises(BindError) as exc:
        await other.start()
    assert str(server.bound_port) in exc.value.message


async def test_stop_closes_clients(gateway_config, dispatcher):
    server = IpcServer(gateway_config, dispatcher)
    await server.start()
    reader, writer = await open_client(server)
    await raw_call(reader, writer, {"command": "ping"})

    await server.stop()

    assert await asyncio.wait_for(reader.read(1), timeout=5) == b""
    assert server.is_serving is False
    writer.close()


async def test_process_message_without_socket(server):
    response = await server.process_message(b'{"messageId": "direct", "command": "version"}')
    assert response.success
    assert response.message_id == "direct"
