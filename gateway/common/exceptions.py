"""
Custom Exception Classes for the Field Device Gateway

Hierarchical exception structure shared by the device layer and the IPC layer.
Every exception carries a stable ``kind`` that is written to the wire in the
``error`` object of a failed response envelope.
"""

from typing import Any


class GatewayError(Exception):
    """Base exception for all gateway errors"""

    kind = "GatewayError"

    def __init__(
        self,
        message: str,
        device_id: str | None = None,
        recoverable: bool = True,
    ):
        self.message = message
        self.device_id = device_id
        self.recoverable = recoverable
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Structured error object for the response envelope"""
        error: dict[str, Any] = {
            "kind": self.kind,
            "message": self.message,
        }
        if self.device_id is not None:
            error["deviceId"] = self.device_id
        return error


class ParseError(GatewayError):
    """Inbound message could not be decoded into a request"""

    kind = "ParseError"

    def __init__(
        self,
        message: str,
        message_id: str | None = None,
        command: str | None = None,
    ):
        # Whatever could be recovered from the broken request, for correlation
        self.message_id = message_id
        self.command = command
        super().__init__(message)


class ValidationError(GatewayError):
    """Request payload or configuration failed validation"""

    kind = "ValidationError"

    def __init__(
        self,
        message: str,
        errors: list[str] | None = None,
        device_id: str | None = None,
    ):
        self.errors = errors or []
        super().__init__(message, device_id)

    def to_dict(self) -> dict[str, Any]:
        error = super().to_dict()
        if self.errors:
            error["details"] = self.errors
        return error


class ConfigError(GatewayError):
    """Gateway configuration errors"""

    kind = "ConfigError"

    def __init__(self, message: str, recoverable: bool = False):
        super().__init__(f"Config Error: {message}", recoverable=recoverable)


class DuplicateDeviceError(GatewayError):
    """A device with the same ID is already registered"""

    kind = "DuplicateDeviceError"

    def __init__(self, device_id: str):
        super().__init__(f"Device {device_id} already exists", device_id)


class DeviceNotFoundError(GatewayError):
    """No device registered under the given ID"""

    kind = "DeviceNotFoundError"

    def __init__(self, device_id: str):
        super().__init__(f"Device {device_id} not found", device_id)


class DeviceNotConnectedError(GatewayError):
    """Operation needs a Connected device"""

    kind = "DeviceNotConnectedError"

    def __init__(self, device_id: str, state: str | None = None):
        self.state = state
        message = f"Device {device_id} is not connected"
        if state:
            message += f" (state={state})"
        super().__init__(message, device_id)


class DriverError(GatewayError):
    """Opaque failure surfaced by a protocol driver library"""

    kind = "DriverError"

    def __init__(
        self,
        message: str,
        device_id: str | None = None,
        host: str | None = None,
        port: int | None = None,
    ):
        self.host = host
        self.port = port
        super().__init__(message, device_id)


class ConnectionTimeoutError(DriverError):
    """Driver call exceeded the device timeout"""

    kind = "ConnectionTimeoutError"

    def __init__(
        self,
        operation: str,
        timeout_ms: int,
        device_id: str | None = None,
    ):
        self.operation = operation
        self.timeout_ms = timeout_ms
        super().__init__(
            f"{operation} timed out after {timeout_ms}ms",
            device_id,
        )


class UnknownCommandError(GatewayError):
    """Command name is not recognized by the dispatcher"""

    kind = "UnknownCommandError"

    def __init__(self, command: str, available: list[str] | None = None):
        self.command = command
        self.available = available or []
        message = f"Unknown command: {command}"
        if self.available:
            message += f" (available: {', '.join(self.available)})"
        super().__init__(message)


class InvalidStateTransitionError(GatewayError):
    """Connection state machine was asked for a transition it does not allow"""

    kind = "InvalidStateTransitionError"

    def __init__(self, device_id: str, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(
            f"Invalid state transition for {device_id}: {current} -> {target}",
            device_id,
            recoverable=False,
        )


class ServiceUnavailableError(GatewayError):
    """Gateway cannot take more work (e.g. connection limit reached)"""

    kind = "ServiceUnavailableError"


class BindError(GatewayError):
    """IPC listener could not bind its address"""

    kind = "BindError"

    def __init__(self, host: str, port: int, reason: str):
        self.host = host
        self.port = port
        super().__init__(
            f"Cannot bind {host}:{port}: {reason}",
            recoverable=False,
        )


class InternalError(GatewayError):
    """Unexpected failure inside a command handler"""

    kind = "InternalError"
