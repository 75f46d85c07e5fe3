"""
Device Service - Field Device Access

Responsibilities:
- Normalize protocol drivers behind one adapter interface
- Run the per-device connection state machine
- Keep the registry of configured devices
"""

from .connection import DeviceConnection, ConnectionStatistics, ALLOWED_TRANSITIONS
from .registry import DeviceEntry, DeviceRegistry

__all__ = [
    "ALLOWED_TRANSITIONS",
    "ConnectionStatistics",
    "DeviceConnection",
    "DeviceEntry",
    "DeviceRegistry",
]
