"""Baudrate resolution for servolink.

Maps a requested speed to one of the standard rates the tty layer can
select directly, or to a custom-speed marker when no standard rate is close
enough. Servo baud indexes (Dynamixel, HerkuleX) are converted to bits per
second first.
"""

from dataclasses import dataclass

import serial

from common.config import DEFAULT_BAUD_TOLERANCE
from common.protocol import MAX_BAUDNUM, ServoFamily

# Standard speeds with a dedicated termios flag
STANDARD_BAUDRATES: tuple[int, ...] = tuple(serial.SerialBase.BAUDRATES)

# Relative drift accepted when matching a standard speed (+/- 1.5%)
BAUDRATE_TOLERANCE = DEFAULT_BAUD_TOLERANCE

# Dynamixel protocol v1: 2000000 / (baudnum + 1), plus high speed extensions
_DXL_V1_HIGH_SPEED = {250: 2250000, 251: 2500000, 252: 3000000}

# Dynamixel protocol v2 baud indexes
_DXL_V2_BAUDRATES = {
    0: 9600,
    1: 57600,
    2: 115200,
    3: 1000000,
    4: 2000000,
    5: 3000000,
    6: 4000000,
    7: 4500000,
}

# HerkuleX baudrate register values
_HKX_BAUDRATES = {
    0x02: 666666,
    0x03: 500000,
    0x04: 400000,
    0x07: 250000,
    0x09: 200000,
    0x10: 115200,
    0x22: 57600,
    0x67: 19200,
}

DEFAULT_BAUDRATE = 1000000


@dataclass(frozen=True)
class BaudRateFlag:
    """A resolved link speed.

    rate is the standard speed selected, or the exact requested speed when
    custom is True.
    """

    rate: int
    custom: bool = False

    @classmethod
    def custom_speed(cls, rate: int) -> "BaudRateFlag":
        return cls(rate=rate, custom=True)


def resolve(requested: int, tolerance: float = BAUDRATE_TOLERANCE) -> BaudRateFlag:
    """Match requested against the standard speed table.

    The nearest standard speed within tolerance (relative to the table
    entry) wins. Otherwise the custom-speed marker carries the exact value.
    """
    if requested <= 0:
        raise ValueError(f"Baudrate must be positive, got {requested}")

    best: int | None = None
    best_drift = 0.0
    for rate in STANDARD_BAUDRATES:
        drift = abs(requested - rate) / rate
        if drift <= tolerance and (best is None or drift < best_drift):
            best, best_drift = rate, drift

    if best is None:
        return BaudRateFlag.custom_speed(requested)
    return BaudRateFlag(rate=best)


def baudnum_to_baudrate(baudnum: int, servo_family: ServoFamily = ServoFamily.UNKNOWN) -> int:
    """Convert a servo baud index to bits per second.

    Unknown indexes fall back to DEFAULT_BAUDRATE.
    """
    if baudnum < 0 or baudnum > MAX_BAUDNUM:
        raise ValueError(f"Baud index out of range: {baudnum}")

    if servo_family == ServoFamily.HERKULEX:
        return _HKX_BAUDRATES.get(baudnum, DEFAULT_BAUDRATE)
    if servo_family == ServoFamily.DYNAMIXEL_V2:
        return _DXL_V2_BAUDRATES.get(baudnum, DEFAULT_BAUDRATE)
    if baudnum in _DXL_V1_HIGH_SPEED:
        return _DXL_V1_HIGH_SPEED[baudnum]
    if baudnum > 249:
        return DEFAULT_BAUDRATE
    return round(2000000 / (baudnum + 1))


def requested_baudrate(baud: int, servo_family: ServoFamily = ServoFamily.UNKNOWN) -> int:
    """Interpret baud as a servo baud index (0..MAX_BAUDNUM) or as bps."""
    if baud < 0:
        raise ValueError(f"Baudrate must not be negative, got {baud}")
    if baud <= MAX_BAUDNUM:
        return baudnum_to_baudrate(baud, servo_family)
    return baud
