"""Serial transport package for servolink.

This package contains the layers between a servo protocol and the OS:
- baudrate: Standard speed matching, custom speed marker, servo baud indexes
- lock: Cross-process advisory device locks
- scanner: USB-serial / ACM-serial port discovery
- timeout: Transfer deadline model
- link: SerialTransport, the locked and timeout-bounded link
"""

from transport.baudrate import (
    BAUDRATE_TOLERANCE,
    STANDARD_BAUDRATES,
    BaudRateFlag,
    baudnum_to_baudrate,
    requested_baudrate,
    resolve,
)
from transport.link import LinkConfig, SerialTransport
from transport.lock import DeviceLock, LockError, LockHandle
from transport.scanner import DeviceClass, PortDescriptor, first_port, scan
from transport.timeout import TimeoutPolicy, TimeoutState

__all__ = [
    # Baudrate
    "BAUDRATE_TOLERANCE",
    "STANDARD_BAUDRATES",
    "BaudRateFlag",
    "baudnum_to_baudrate",
    "requested_baudrate",
    "resolve",
    # Lock
    "DeviceLock",
    "LockError",
    "LockHandle",
    # Scanner
    "DeviceClass",
    "PortDescriptor",
    "first_port",
    "scan",
    # Timeout
    "TimeoutPolicy",
    "TimeoutState",
    # Link
    "LinkConfig",
    "SerialTransport",
]
