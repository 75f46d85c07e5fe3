"""
Gateway Service - IPC Lifecycle

Responsible for:
- Building the device registry, dispatcher and TCP server
- Preloading devices listed in the configuration file
- Serving the HTTP health endpoint
- Graceful shutdown on SIGTERM/SIGINT
"""

import asyncio
import signal
from datetime import datetime, timezone

from aiohttp import web

from ... import __version__
from ...common.config import DeviceConfig, GatewayConfig
from ...common.exceptions import GatewayError
from ...common.logging_setup import get_service_logger
from ..device.adapters import create_adapter
from ..device.connection import AdapterFactory
from ..device.registry import DeviceRegistry
from .dispatcher import CommandDispatcher
from .server import IpcServer

logger = get_service_logger("ipc")


class GatewayService:
    """
    Field device gateway service.

    Owns the registry for its whole lifetime; the registry is handed to
    the dispatcher, which the server calls for every request.
    """

    def __init__(
        self,
        config: GatewayConfig,
        adapter_factory: AdapterFactory = create_adapter,
    ):
        self.config = config
        self.registry = DeviceRegistry(adapter_factory)
        self.dispatcher = CommandDispatcher(
            self.registry,
            stats_provider=self._server_stats,
            protocol_version=config.protocol_version,
            limits={
                "maxConnections": config.max_connections,
                "bufferSize": config.buffer_size,
                "maxMessageSize": config.max_message_size,
                "framing": config.framing.value,
            },
        )
        self.server = IpcServer(config, self.dispatcher)

        self._start_time = datetime.now(timezone.utc)
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Health server
        self._health_runner: web.AppRunner | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    def _server_stats(self) -> dict:
        return self.server.get_stats()

    async def start(self) -> None:
        """
        Start the gateway.

        Raises:
            BindError: if the IPC listener cannot bind
        """
        logger.info(f"Starting Field Device Gateway v{__version__}")

        await self._preload_devices()
        await self.server.start()

        if self.config.health_port:
            await self._start_health_server()

        self._running = True
        logger.info(
            f"Gateway started ({len(self.registry)} devices)",
            extra={"config": self.config.to_dict()},
        )

    async def run(self) -> None:
        """Start, wait for a shutdown signal, then stop"""
        try:
            await self.start()
            self._setup_signal_handlers()
            await self._shutdown_event.wait()
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the gateway and disconnect every device"""
        logger.info("Stopping Field Device Gateway")
        self._running = False

        await self.server.stop()
        await self.registry.close_all()
        await self._stop_health_server()

        logger.info("Field Device Gateway stopped")

    def request_shutdown(self) -> None:
        """Ask run() to return"""
        self._shutdown_event.set()

    def _setup_signal_handlers(self) -> None:
        """Setup graceful shutdown signal handlers"""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown)
            except NotImplementedError:
                signal.signal(sig, lambda s, f: self._handle_shutdown())

    def _handle_shutdown(self) -> None:
        """Handle shutdown signal"""
        logger.info("Received shutdown signal")
        self.request_shutdown()

    async def _preload_devices(self) -> None:
        """Register devices from the configuration file (not persisted back)"""
        for entry in self.config.devices:
            try:
                await self.registry.add(DeviceConfig.from_dict(entry))
            except GatewayError as e:
                logger.warning(f"Skipping configured device: {e.message}")

        if self.config.devices:
            logger.info(f"Preloaded {len(self.registry)} devices from config")

    async def _start_health_server(self) -> None:
        """Start the health check HTTP server"""
        app = web.Application()
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/devices", self._devices_handler)

        self._health_runner = web.AppRunner(app)
        await self._health_runner.setup()

        site = web.TCPSite(self._health_runner, "127.0.0.1", self.config.health_port)
        await site.start()

        logger.info(f"Health server started on port {self.config.health_port}")

    async def _stop_health_server(self) -> None:
        """Stop the health check HTTP server"""
        if self._health_runner:
            await self._health_runner.cleanup()
            self._health_runner = None

    async def _health_handler(self, request: web.Request) -> web.Response:
        """Handle health check requests"""
        uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()
        healthy = self._running and self.server.is_serving
        stats = self.server.get_stats()
        stats.pop("clients", None)

        return web.json_response(
            {
                "status": "healthy" if healthy else "unhealthy",
                "service": "gateway",
                "version": __version__,
                "uptime": int(uptime),
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "ipc": stats,
                "devices": self.registry.get_stats(),
            },
            status=200 if healthy else 503,
        )

    async def _devices_handler(self, request: web.Request) -> web.Response:
        """Return status of every registered device"""
        statuses = [self.registry.device_status(c.device_id) for c in self.registry.list_devices()]
        return web.json_response({"devices": statuses, "count": len(statuses)})
