#!/usr/bin/env python3
"""
Field Device Gateway - Entry Point

Usage:
    field-gateway                          # Defaults (127.0.0.1:8888, raw framing)
    field-gateway --config gateway.yaml    # Use a configuration file
    field-gateway --framing newline        # Newline-delimited JSON
    field-gateway --dry-run                # Validate config and exit
    field-gateway --verbose                # Debug logging, plain text
"""

import argparse
import asyncio
import sys

from . import __version__
from .common.config import Framing, GatewayConfig, load_gateway_config, validate_gateway_config
from .common.exceptions import BindError, ConfigError
from .common.logging_setup import get_service_logger, reconfigure_service_loggers
from .services.ipc.service import GatewayService

logger = get_service_logger("main")


def build_config(args: argparse.Namespace) -> GatewayConfig:
    """
    Load the configuration file and apply command-line overrides.

    Raises:
        ConfigError: if the file or a value is invalid
    """
    config = load_gateway_config(args.config)

    if args.host:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.framing:
        config.framing = Framing(args.framing)
    if args.verbose:
        config.log_level = "DEBUG"
        config.log_format = "text"

    return config


def print_startup_banner(config: GatewayConfig) -> None:
    """Print startup information."""
    print()
    print("=" * 60)
    print(f"  FIELD DEVICE GATEWAY v{__version__}")
    print("=" * 60)
    print()
    print(f"  IPC endpoint:  tcp://{config.host}:{config.port} ({config.framing.value} framing)")
    if config.health_port:
        print(f"  Health:        http://127.0.0.1:{config.health_port}/health")
    print(f"  Max clients:   {config.max_connections}")
    print(f"  Devices:       {len(config.devices)} preconfigured")
    print()
    print("=" * 60)
    print()


async def main_async(config: GatewayConfig) -> None:
    """Run the gateway until a shutdown signal arrives."""
    service = GatewayService(config)
    await service.run()


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Field Device Gateway - JSON/TCP access to Modbus, S7, FINS and MC devices",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment overrides:
    GATEWAY_HOST, GATEWAY_PORT, GATEWAY_FRAMING, GATEWAY_HEALTH_PORT,
    GATEWAY_LOG_LEVEL, GATEWAY_LOG_FORMAT
        """,
    )

    parser.add_argument(
        "--config", "-c",
        type=str,
        default=None,
        help="Path to YAML configuration file",
    )

    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Listen address (default: 127.0.0.1)",
    )

    parser.add_argument(
        "--port", "-p",
        type=int,
        default=None,
        help="Listen port (default: 8888)",
    )

    parser.add_argument(
        "--framing",
        choices=[f.value for f in Framing],
        default=None,
        help="Message framing (default: raw)",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate configuration and exit without starting",
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (debug) logging",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Field Device Gateway v{__version__}",
    )

    args = parser.parse_args(argv)

    try:
        config = build_config(args)
    except ConfigError as e:
        print(f"Error: {e.message}")
        return 1

    reconfigure_service_loggers(config.log_level, config.log_format == "json")

    is_valid, errors = validate_gateway_config(config)
    if not is_valid:
        print("Configuration errors:")
        for error in errors:
            print(f"  - {error}")
        return 1

    print_startup_banner(config)

    if args.dry_run:
        print("Dry run mode - configuration valid")
        return 0

    try:
        asyncio.run(main_async(config))
    except KeyboardInterrupt:
        print("\nStopped by user")
    except BindError as e:
        logger.critical(e.message)
        return 1
    except Exception as e:
        logger.critical(f"Fatal error: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
