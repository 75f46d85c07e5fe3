"""
IPC Wire Protocol

Request decoding, command payload models and the response envelope.

Request:  {"messageId"?, "command", "data"?, "version"?}
Response: {"messageId", "timestamp", "success", "command", "data",
           "error", "version", "processingTimeMs"}

``error`` is null on success, otherwise ``{"kind", "message", "deviceId"?}``.
"""

import json
import uuid
from dataclasses import dataclass, field
from typing import Any, TypeVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from ...common.exceptions import GatewayError, ParseError, ValidationError
from ...common.timestamp import utc_timestamp_ms

PROTOCOL_VERSION = "1.0"
SUPPORTED_PROTOCOL_VERSIONS = ["1.0"]


@dataclass
class IpcRequest:
    """Decoded client request"""
    command: str
    message_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    version: str = PROTOCOL_VERSION

    @property
    def command_key(self) -> str:
        """Normalized command name used for dispatch"""
        return self.command.strip().lower()


def decode_request(raw: bytes | str) -> IpcRequest:
    """
    Decode one JSON request.

    Raises:
        ParseError: bad UTF-8, bad JSON, non-object, or missing command.
            Carries the messageId/command when they could be recovered.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ParseError(f"Invalid UTF-8: {e}")

    text = raw.strip()
    if not text:
        raise ParseError("Empty message")

    try:
        doc = json.loads(text)
    except json.JSONDecodeError as e:
        raise ParseError(f"Invalid JSON: {e.msg} at position {e.pos}")

    if not isinstance(doc, dict):
        raise ParseError("Request must be a JSON object")

    message_id = doc.get("messageId")
    if message_id is not None and not isinstance(message_id, str):
        message_id = str(message_id)

    command = doc.get("command")
    if not isinstance(command, str) or not command.strip():
        raise ParseError("Missing or invalid 'command'", message_id=message_id)

    data = doc.get("data")
    if data is None:
        data = {}
    elif not isinstance(data, dict):
        raise ParseError("'data' must be a JSON object", message_id=message_id, command=command)

    version = doc.get("version") or PROTOCOL_VERSION

    return IpcRequest(
        command=command,
        message_id=message_id,
        data=data,
        version=str(version),
    )


@dataclass
class CommandResult:
    """Outcome of a command handler"""
    success: bool
    data: dict[str, Any] | None = None
    error: GatewayError | None = None

    @classmethod
    def ok(cls, data: dict[str, Any] | None = None) -> "CommandResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: GatewayError, data: dict[str, Any] | None = None) -> "CommandResult":
        return cls(success=False, data=data, error=error)


@dataclass
class IpcResponse:
    """Response envelope"""
    message_id: str
    timestamp: str
    success: bool
    command: str | None
    data: dict[str, Any] | None = None
    error: dict[str, Any] | None = None
    version: str = PROTOCOL_VERSION
    processing_time_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "messageId": self.message_id,
            "timestamp": self.timestamp,
            "success": self.success,
            "command": self.command,
            "data": self.data,
            "error": self.error,
            "version": self.version,
            "processingTimeMs": self.processing_time_ms,
        }

    def encode(self) -> bytes:
        """UTF-8 JSON, without framing"""
        return json.dumps(self.to_dict(), default=str, ensure_ascii=False).encode("utf-8")


def new_message_id() -> str:
    return str(uuid.uuid4())


def build_response(
    result: CommandResult,
    request: IpcRequest | None = None,
    message_id: str | None = None,
    command: str | None = None,
    version: str = PROTOCOL_VERSION,
    processing_time_ms: float = 0.0,
) -> IpcResponse:
    """
    Wrap a handler result in the wire envelope.

    The request's messageId is copied verbatim when present; otherwise
    (no id, or the request did not parse far enough) a fresh one is made.
    """
    if request is not None:
        message_id = request.message_id
        command = request.command

    return IpcResponse(
        message_id=message_id if message_id else new_message_id(),
        timestamp=utc_timestamp_ms(),
        success=result.success,
        command=command,
        data=result.data,
        error=result.error.to_dict() if result.error is not None else None,
        version=version,
        processing_time_ms=processing_time_ms,
    )


def error_response(
    error: GatewayError,
    message_id: str | None = None,
    command: str | None = None,
    version: str = PROTOCOL_VERSION,
) -> IpcResponse:
    """Envelope for failures that never reached the dispatcher"""
    return build_response(
        CommandResult.fail(error),
        message_id=message_id,
        command=command,
        version=version,
    )


# Command payloads

_DEVICE_ID = AliasChoices("deviceId", "device_id")
_DATA_TYPE = AliasChoices("dataType", "data_type")


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class DeviceRefPayload(_Payload):
    device_id: str = Field(..., min_length=1, validation_alias=_DEVICE_ID)


class DeviceStatusPayload(_Payload):
    device_id: str | None = Field(None, validation_alias=_DEVICE_ID)


def _address_text(value: Any) -> Any:
    # Plain numeric addresses ("addresses": [0, 1]) are accepted as text
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


class ReadDataPayload(_Payload):
    device_id: str = Field(..., min_length=1, validation_alias=_DEVICE_ID)
    addresses: list[str] = Field(..., min_length=1)
    data_type: str | None = Field(None, validation_alias=_DATA_TYPE)

    @field_validator("addresses", mode="before")
    @classmethod
    def numeric_addresses(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [_address_text(v) for v in value]
        return value


class DataPointPayload(_Payload):
    address: str = Field(..., min_length=1)
    value: Any = None
    data_type: str | None = Field(None, validation_alias=_DATA_TYPE)

    @field_validator("address", mode="before")
    @classmethod
    def numeric_address(cls, value: Any) -> Any:
        return _address_text(value)


class WriteDataPayload(_Payload):
    device_id: str = Field(..., min_length=1, validation_alias=_DEVICE_ID)
    data_points: list[DataPointPayload] = Field(
        ..., min_length=1, validation_alias=AliasChoices("dataPoints", "data_points"),
    )
    data_type: str | None = Field(None, validation_alias=_DATA_TYPE)


PayloadT = TypeVar("PayloadT", bound=BaseModel)


def parse_payload(model: type[PayloadT], data: dict[str, Any]) -> PayloadT:
    """
    Validate a command payload.

    Raises:
        ValidationError: listing each offending field
    """
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        errors = [
            f"{'.'.join(str(part) for part in err['loc']) or 'data'}: {err['msg']}"
            for err in e.errors()
        ]
        device_id = data.get("deviceId") or data.get("device_id")
        raise ValidationError(
            f"Invalid payload: {'; '.join(errors)}",
            errors=errors,
            device_id=device_id if isinstance(device_id, str) else None,
        )
