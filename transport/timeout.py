"""Transfer deadlines for servolink.

Contains:
- TimeoutPolicy: Converts an expected packet size into a wait time
- TimeoutState: A deadline armed for one logical transfer
"""

import time
from dataclasses import dataclass, field

from common.protocol import (
    BITS_PER_BYTE,
    DEFAULT_INTER_BYTE_GAP_MS,
    DEFAULT_LATENCY_MS,
    DEFAULT_TIMEOUT_MARGIN_MS,
)


@dataclass
class TimeoutPolicy:
    """Parameters of the packet timeout computation.

    Attributes:
        baudrate: Link speed in bits per second.
        latency_ms: Adapter latency; counted twice (request and reply).
        margin_ms: Fixed protocol margin.
        inter_byte_gap_ms: Idle time allowed between consecutive bytes.
        bits_per_byte: Bits on the wire per byte, start and stop bits included.
    """

    baudrate: int
    latency_ms: float = DEFAULT_LATENCY_MS
    margin_ms: float = DEFAULT_TIMEOUT_MARGIN_MS
    inter_byte_gap_ms: float = DEFAULT_INTER_BYTE_GAP_MS
    bits_per_byte: int = BITS_PER_BYTE

    @property
    def byte_time_ms(self) -> float:
        """Time to transmit one byte on the wire."""
        return self.bits_per_byte * 1000.0 / self.baudrate

    def packet_timeout_ms(self, packet_length: int) -> float:
        """Wait time for a packet of packet_length bytes."""
        if packet_length < 0:
            raise ValueError(f"Packet length must not be negative, got {packet_length}")
        gaps = max(0, packet_length - 1) * self.inter_byte_gap_ms
        return (
            packet_length * self.byte_time_ms
            + gaps
            + 2.0 * self.latency_ms
            + self.margin_ms
        )


@dataclass
class TimeoutState:
    """Deadline for one transfer, measured on the monotonic clock."""

    duration_ms: float
    start: float = field(default_factory=time.monotonic)

    @property
    def deadline(self) -> float:
        return self.start + self.duration_ms / 1000.0

    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.start) * 1000.0

    def remaining_s(self) -> float:
        """Seconds left before the deadline, never negative."""
        return max(0.0, self.deadline - time.monotonic())

    @property
    def expired(self) -> bool:
        return time.monotonic() >= self.deadline
