"""
IPC TCP Server

Loopback TCP listener. Each client connection runs in its own task; requests
on one connection are processed strictly in order.

Framing:
- raw:     one read is one complete JSON document. Clients must send one
           request and wait for its response before sending the next;
           pipelining without framing is not supported.
- newline: newline-delimited JSON in both directions; pipelining is safe.
"""

import asyncio
import itertools
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ...common.config import Framing, GatewayConfig
from ...common.exceptions import BindError, ParseError, ServiceUnavailableError
from ...common.logging_setup import get_service_logger
from ...common.timestamp import elapsed_ms, format_timestamp, monotonic_ms, utc_now
from .dispatcher import CommandDispatcher
from .protocol import IpcResponse, build_response, decode_request, error_response

logger = get_service_logger("ipc.server")


@dataclass
class ClientConnection:
    """Bookkeeping for one connected IPC client"""
    client_id: int
    remote: str
    connected_at: datetime = field(default_factory=utc_now)
    last_activity: datetime = field(default_factory=utc_now)
    message_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "clientId": self.client_id,
            "remote": self.remote,
            "connectedAt": format_timestamp(self.connected_at),
            "lastActivity": format_timestamp(self.last_activity),
            "messageCount": self.message_count,
        }


class IpcServer:
    """Accepts IPC clients and feeds their requests to the dispatcher"""

    def __init__(self, config: GatewayConfig, dispatcher: CommandDispatcher):
        self.config = config
        self.dispatcher = dispatcher

        self._server: asyncio.AbstractServer | None = None
        self._clients: dict[int, ClientConnection] = {}
        self._client_tasks: dict[int, asyncio.Task] = {}
        self._ids = itertools.count(1)

        self.total_connections = 0
        self.rejected_connections = 0
        self.messages_processed = 0

    @property
    def active_connections(self) -> int:
        return len(self._clients)

    @property
    def is_serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    @property
    def sockets(self) -> list:
        return list(self._server.sockets) if self._server else []

    @property
    def bound_port(self) -> int | None:
        """Actual listening port (useful when configured with port 0)"""
        for sock in self.sockets:
            return sock.getsockname()[1]
        return None

    async def start(self) -> None:
        """
        Bind and start accepting.

        Raises:
            BindError: if the address cannot be bound
        """
        try:
            self._server = await asyncio.start_server(
                self._handle_client,
                host=self.config.host,
                port=self.config.port,
                limit=self.config.max_message_size,
            )
        except OSError as e:
            raise BindError(self.config.host, self.config.port, e.strerror or str(e))

        logger.info(
            f"IPC server listening on {self.config.host}:{self.bound_port}",
            extra={"framing": self.config.framing.value},
        )

    async def stop(self) -> None:
        """Stop accepting and close every client connection"""
        if self._server is None:
            return

        self._server.close()

        tasks = list(self._client_tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        await self._server.wait_closed()
        self._server = None
        logger.info("IPC server stopped")

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        peer = writer.get_extra_info("peername")
        remote = f"{peer[0]}:{peer[1]}" if peer else "unknown"

        if self.active_connections >= self.config.max_connections:
            self.rejected_connections += 1
            logger.warning(
                f"Rejecting client {remote}: connection limit reached",
                extra={"max_connections": self.config.max_connections},
            )
            error = ServiceUnavailableError(
                f"Connection limit reached ({self.config.max_connections})"
            )
            await self._send(writer, error_response(error, version=self.config.protocol_version))
            await self._close_writer(writer)
            return

        client = ClientConnection(client_id=next(self._ids), remote=remote)
        self._clients[client.client_id] = client
        self._client_tasks[client.client_id] = asyncio.current_task()
        self.total_connections += 1
        logger.info(f"Client {client.client_id} connected from {remote}")

        try:
            if self.config.framing == Framing.NEWLINE:
                await self._serve_lines(client, reader, writer)
            else:
                await self._serve_raw(client, reader, writer)
        except asyncio.CancelledError:
            pass
        except (ConnectionError, OSError) as e:
            logger.debug(f"Client {client.client_id} connection error: {e}")
        finally:
            self._clients.pop(client.client_id, None)
            self._client_tasks.pop(client.client_id, None)
            await self._close_writer(writer)
            logger.info(
                f"Client {client.client_id} disconnected",
                extra={"messages": client.message_count},
            )

    async def _serve_raw(
        self,
        client: ClientConnection,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        while True:
            data = await reader.read(self.config.buffer_size)
            if not data:
                return
            response = await self.process_message(data, client)
            if not await self._send(writer, response):
                return

    async def _serve_lines(
        self,
        client: ClientConnection,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        while True:
            try:
                line = await reader.readline()
            except ValueError:
                # Line exceeded max_message_size; the stream cannot be resynchronized
                error = ParseError(f"Message exceeds {self.config.max_message_size} bytes")
                await self._send(writer, error_response(error, version=self.config.protocol_version))
                return
            if not line:
                return
            if not line.strip():
                continue
            response = await self.process_message(line, client)
            if not await self._send(writer, response):
                return

    async def process_message(
        self,
        raw: bytes,
        client: ClientConnection | None = None,
    ) -> IpcResponse:
        """Decode, dispatch and wrap one inbound message"""
        start = monotonic_ms()
        if client is not None:
            client.last_activity = utc_now()
            client.message_count += 1

        try:
            request = decode_request(raw)
        except ParseError as e:
            logger.warning(f"Parse error: {e.message}", extra={"bytes": len(raw)})
            response = error_response(
                e, message_id=e.message_id, command=e.command,
                version=self.config.protocol_version,
            )
        else:
            result = await self.dispatcher.dispatch(request)
            response = build_response(
                result,
                request,
                version=self.config.protocol_version,
                processing_time_ms=elapsed_ms(start),
            )

        self.messages_processed += 1
        return response

    async def _send(self, writer: asyncio.StreamWriter, response: IpcResponse) -> bool:
        payload = response.encode()
        if self.config.framing == Framing.NEWLINE:
            payload += b"\n"
        try:
            writer.write(payload)
            await writer.drain()
        except (ConnectionError, OSError) as e:
            logger.debug(f"Write failed: {e}")
            return False
        return True

    @staticmethod
    async def _close_writer(writer: asyncio.StreamWriter) -> None:
        if writer.is_closing():
            return
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError):
            pass

    def get_stats(self) -> dict[str, Any]:
        """Server statistics"""
        return {
            "active_connections": self.active_connections,
            "total_connections": self.total_connections,
            "rejected_connections": self.rejected_connections,
            "messages_processed": self.messages_processed,
            "clients": [c.to_dict() for c in self._clients.values()],
        }
