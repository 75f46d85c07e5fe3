"""
Placeholder Adapters

Omron FINS and Mitsubishi MC devices can be registered and inspected,
but no driver library is bound for them: connecting fails with
DriverError and the protocols are not advertised as supported.
"""

from ....common.config import ProtocolType
from ....common.exceptions import DriverError
from .base import DataPointResult, ProtocolAdapter, WritePoint


class UnboundProtocolAdapter(ProtocolAdapter):
    """Adapter for a protocol without a driver library"""

    driver_name = ""

    @property
    def is_connected(self) -> bool:
        return False

    async def connect(self) -> None:
        raise DriverError(
            f"No driver available for {self.protocol_type.value}",
            device_id=self.device_id,
            host=self.params.host or None,
            port=self.params.port,
        )

    async def disconnect(self) -> None:
        return None

    async def read_values(
        self,
        addresses: list[str],
        data_type: str | None = None,
    ) -> list[DataPointResult]:
        raise self.link_lost("no driver available")

    async def write_values(
        self,
        points: list[WritePoint],
        data_type: str | None = None,
    ) -> list[DataPointResult]:
        raise self.link_lost("no driver available")


class OmronFinsAdapter(UnboundProtocolAdapter):
    protocol_type = ProtocolType.OMRON_FINS


class MitsubishiMcAdapter(UnboundProtocolAdapter):
    protocol_type = ProtocolType.MITSUBISHI_MC
