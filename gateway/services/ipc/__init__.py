"""
IPC Service - Client Command Surface

Responsibilities:
- Decode requests and build correlated response envelopes
- Dispatch commands to the device registry
- Serve clients over loopback TCP
- Service lifecycle and HTTP health endpoint
"""

from .dispatcher import CommandDispatcher
from .protocol import CommandResult, IpcRequest, IpcResponse, build_response, decode_request
from .server import IpcServer
from .service import GatewayService

__all__ = [
    "CommandDispatcher",
    "CommandResult",
    "GatewayService",
    "IpcRequest",
    "IpcResponse",
    "IpcServer",
    "build_response",
    "decode_request",
]
