"""Tests for request decoding and the response envelope."""

import json
import re
import uuid
from datetime import datetime, timezone

import pytest

from gateway.common.exceptions import DeviceNotFoundError, ParseError, ValidationError
from gateway.common.timestamp import format_timestamp
from gateway.services.ipc.protocol import (
    CommandResult,
    ReadDataPayload,
    WriteDataPayload,
    build_response,
    decode_request,
    error_response,
    parse_payload,
)

TIMESTAMP_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z$")


def test_decode_full_request():
    request = decode_request(b'{"messageId": "m-1", "command": "ping", "data": {"x": 1}, "version": "1.0"}')
    assert request.message_id == "m-1"
    assert request.command == "ping"
    assert request.data == {"x": 1}
    assert request.version == "1.0"


def test_decode_minimal_request_defaults():
    request = decode_request('{"command": "status"}')
    assert request.message_id is None
    assert request.data == {}
    assert request.version == "1.0"


def test_command_key_is_trimmed_and_lowercased():
    request = decode_request(b'{"command": "  Device_List "}')
    assert request.command_key == "device_list"


@pytest.mark.parametrize("raw", [
    b"",
    b"   ",
    b"not json",
    b"[1, 2, 3]",
    b'"ping"',
    b"\xff\xfe\x00",
])
def test_decode_rejects_malformed(raw):
    with pytest.raises(ParseError):
        decode_request(raw)


def test_missing_command_keeps_message_id():
    with pytest.raises(ParseError) as exc:
        decode_request(b'{"messageId": "m-7", "data": {}}')
    assert exc.value.message_id == "m-7"
    assert exc.value.kind == "ParseError"


def test_non_object_data_is_parse_error():
    with pytest.raises(ParseError) as exc:
        decode_request(b'{"messageId": "m-8", "command": "read_data", "data": [1]}')
    assert exc.value.command == "read_data"


def test_numeric_message_id_is_stringified():
    request = decode_request(b'{"messageId": 42, "command": "ping"}')
    assert request.message_id == "42"


def test_response_copies_message_id_verbatim():
    request = decode_request(b'{"messageId": "abc-\\u00e9-123", "command": "ping"}')
    response = build_response(CommandResult.ok({"message": "pong"}), request)
    assert response.message_id == request.message_id
    assert response.command == "ping"


def test_response_generates_message_id_when_missing():
    request = decode_request(b'{"command": "ping"}')
    response = build_response(CommandResult.ok(), request)
    uuid.UUID(response.message_id)


def test_response_timestamp_format():
    response = build_response(CommandResult.ok(), decode_request(b'{"command": "ping"}'))
    assert TIMESTAMP_RE.match(response.timestamp)


def test_format_timestamp_milliseconds():
    ts = datetime(2024, 5, 1, 12, 30, 45, 123456, tzinfo=timezone.utc)
    assert format_timestamp(ts) == "2024-05-01T12:30:45.123Z"


def test_failure_envelope_shape():
    request = decode_request(b'{"messageId": "m-2", "command": "device_status", "data": {"deviceId": "x"}}')
    response = build_response(CommandResult.fail(DeviceNotFoundError("x")), request)
    body = json.loads(response.encode())

    assert body["success"] is False
    assert body["data"] is None
    assert body["error"] == {
        "kind": "DeviceNotFoundError",
        "message": "Device x not found",
        "deviceId": "x",
    }
    assert set(body) == {
        "messageId", "timestamp", "success", "command", "data", "error", "version", "processingTimeMs",
    }


def test_success_envelope_has_null_error():
    response = build_response(CommandResult.ok({"a": 1}), decode_request(b'{"command": "ping"}'))
    body = response.to_dict()
    assert body["success"] is True
    assert body["error"] is None
    assert body["data"] == {"a": 1}


def test_error_response_without_request():
    response = error_response(ParseError("Invalid JSON"))
    assert response.success is False
    assert response.command is None
    assert response.error["kind"] == "ParseError"
    uuid.UUID(response.message_id)


def test_read_payload_accepts_aliases_and_numeric_addresses():
    payload = parse_payload(ReadDataPayload, {"device_id": "d1", "addresses": [0, "ir:3"], "dataType": "uint16"})
    assert payload.device_id == "d1"
    assert payload.addresses == ["0", "ir:3"]
    assert payload.data_type == "uint16"


def test_read_payload_requires_addresses():
    with pytest.raises(ValidationError) as exc:
        parse_payload(ReadDataPayload, {"deviceId": "d1", "addresses": []})
    assert exc.value.device_id == "d1"
    assert any("addresses" in err for err in exc.value.errors)


def test_write_payload_points():
    payload = parse_payload(WriteDataPayload, {
        "deviceId": "d1",
        "dataPoints": [{"address": "10", "value": 5}, {"address": 11, "value": 1.5, "dataType": "float32"}],
    })
    assert [p.address for p in payload.data_points] == ["10", "11"]
    assert payload.data_points[1].data_type == "float32"


def test_write_payload_missing_device_id():
    with pytest.raises(ValidationError) as exc:
        parse_payload(WriteDataPayload, {"dataPoints": [{"address": "1", "value": 1}]})
    assert exc.value.kind == "ValidationError"
    assert exc.value.to_dict()["details"]
