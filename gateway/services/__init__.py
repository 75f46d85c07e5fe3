"""
Gateway Services

Two layers:
1. Device Service - adapters, connection state machine, registry
2. IPC Service - wire protocol, command dispatcher, TCP server, lifecycle
"""
