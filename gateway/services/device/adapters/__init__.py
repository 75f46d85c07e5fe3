"""
Protocol Driver Adapters

One adapter class per ProtocolType, looked up through ADAPTER_REGISTRY.
"""

from ....common.config import DeviceConfig, ProtocolType
from .base import DataPointResult, ProtocolAdapter, WritePoint
from .modbus import ModbusRtuAdapter, ModbusTcpAdapter
from .placeholder import MitsubishiMcAdapter, OmronFinsAdapter, UnboundProtocolAdapter
from .s7 import SiemensS7Adapter

ADAPTER_REGISTRY: dict[ProtocolType, type[ProtocolAdapter]] = {
    ProtocolType.MODBUS_TCP: ModbusTcpAdapter,
    ProtocolType.MODBUS_RTU: ModbusRtuAdapter,
    ProtocolType.SIEMENS_S7: SiemensS7Adapter,
    ProtocolType.OMRON_FINS: OmronFinsAdapter,
    ProtocolType.MITSUBISHI_MC: MitsubishiMcAdapter,
}


def create_adapter(config: DeviceConfig) -> ProtocolAdapter:
    """Instantiate the adapter bound to a device's protocol"""
    return ADAPTER_REGISTRY[config.protocol_type](config)


def driver_bound(protocol: ProtocolType) -> bool:
    """True when a real driver library backs the protocol"""
    adapter_cls = ADAPTER_REGISTRY.get(protocol)
    return adapter_cls is not None and not issubclass(adapter_cls, UnboundProtocolAdapter)


__all__ = [
    "ADAPTER_REGISTRY",
    "DataPointResult",
    "ProtocolAdapter",
    "WritePoint",
    "ModbusTcpAdapter",
    "ModbusRtuAdapter",
    "SiemensS7Adapter",
    "OmronFinsAdapter",
    "MitsubishiMcAdapter",
    "create_adapter",
    "driver_bound",
]
