"""Common modules for servolink.

This package contains code shared by the transport and the CLI:
- protocol: Adapter/servo/link enums, return codes, SerialPort Protocol
- config: Environment-driven TransportSettings
- device: Serial device opening and adapter latency tuning
"""

from common.config import TransportSettings
from common.protocol import (
    AUTO_DEVICE,
    BITS_PER_BYTE,
    HARD_FAILURE,
    TRACE,
    AdapterType,
    LinkState,
    LinkStatus,
    SerialPort,
    ServoFamily,
)

__all__ = [
    # Protocol
    "AdapterType",
    "ServoFamily",
    "LinkStatus",
    "LinkState",
    "SerialPort",
    "AUTO_DEVICE",
    "BITS_PER_BYTE",
    "HARD_FAILURE",
    "TRACE",
    # Config
    "TransportSettings",
]
