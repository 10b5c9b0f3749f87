"""Protocol definitions for servolink.

Contains:
- AdapterType, ServoFamily enums describing what is on the other end of the link
- LinkStatus, LinkState enums for the transport state machine
- SerialPort Protocol for type checking
- Return-code and timing constants
- Logging configuration
"""

import logging
from enum import Enum, IntEnum
from typing import Protocol

# TRACE logging level (below DEBUG)
TRACE = 5
logging.addLevelName(TRACE, "TRACE")

# tx()/rx() return value for hard failures (device not open, handle error)
HARD_FAILURE = -1

# Device path sentinel: scan for ports and use the first one found
AUTO_DEVICE = "auto"

# Values up to this one are servo baud indexes, not bits per second
MAX_BAUDNUM = 254

# 8N1 framing: start bit + 8 data bits + stop bit
BITS_PER_BYTE = 10


class AdapterType(IntEnum):
    """USB to TTL/RS485 converter in use, if known."""

    UNKNOWN = 0
    USB2DYNAMIXEL = 1  # FTDI based
    USB2AX = 2  # CDC-ACM based
    ZIG2SERIAL = 3
    OTHER_FTDI = 4
    OTHER_CDC_ACM = 5


class ServoFamily(IntEnum):
    """Servo protocol family spoken on the bus."""

    UNKNOWN = 0
    DYNAMIXEL = 1  # Dynamixel protocol v1 (AX, MX, RX, EX)
    DYNAMIXEL_V2 = 2  # Dynamixel protocol v2 (XL-320, X series, PRO)
    HERKULEX = 3


class LinkStatus(IntEnum):
    """Result of SerialTransport.open_link(). Values double as exit codes."""

    SUCCESS = 0
    DEVICE_NOT_FOUND = 1
    DEVICE_LOCKED = 2
    UNSUPPORTED_BAUD = 3
    OS_OPEN_FAILURE = 4

    @property
    def ok(self) -> bool:
        return self is LinkStatus.SUCCESS


class LinkState(Enum):
    """Lifecycle of a SerialTransport."""

    CLOSED = "closed"
    OPENING = "opening"
    OPEN = "open"
    CLOSING = "closing"


class SerialPort(Protocol):
    """Protocol for the pyserial operations used by the transport."""

    timeout: float | None
    name: str | None

    def write(self, data: bytes, /) -> int | None: ...
    def read(self, size: int = ..., /) -> bytes: ...
    def close(self) -> None: ...
    def reset_input_buffer(self) -> None: ...
    def reset_output_buffer(self) -> None: ...
    @property
    def in_waiting(self) -> int: ...
    @property
    def is_open(self) -> bool: ...


# Default timing constants
DEFAULT_LATENCY_MS = 16.0  # FTDI latency_timer factory default
CDC_ACM_LATENCY_MS = 1.0  # CDC-ACM adapters forward on USB frame boundaries
DEFAULT_TIMEOUT_MARGIN_MS = 2.0
DEFAULT_INTER_BYTE_GAP_MS = 0.0
