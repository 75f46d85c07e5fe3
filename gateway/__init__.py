"""
Field Device IPC Gateway

Exposes a JSON request/response command surface over loopback TCP so an
automation platform can manage and operate Modbus, S7, FINS and MC devices.
"""

__version__ = "1.0.0"
