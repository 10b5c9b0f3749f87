"""Serial port discovery.

Only USB-serial (FTDI and friends) and ACM-serial (CDC-ACM) adapters are
reported. Fixed ports such as /dev/ttyS* always look valid even with no
adapter attached, so they are never returned.
"""

import fnmatch
import logging
import os
import sys
from dataclasses import dataclass
from enum import Enum

import serial.tools.list_ports

logger = logging.getLogger(__name__)

DEFAULT_DEV_DIR = "/dev"

USB_SERIAL_PATTERNS = ("ttyUSB*", "tty.usbserial*")
ACM_SERIAL_PATTERNS = ("ttyACM*", "tty.usbmodem*")
FIXED_PORT_PATTERNS = ("ttyS*",)


class DeviceClass(Enum):
    """Kind of adapter behind a device node."""

    USB_SERIAL = "usb-serial"
    ACM_SERIAL = "acm-serial"
    OTHER = "other"


@dataclass(frozen=True)
class PortDescriptor:
    """A candidate serial device."""

    device: str
    device_class: DeviceClass


def _matches(name: str, patterns: tuple[str, ...]) -> bool:
    return any(fnmatch.fnmatchcase(name, pattern) for pattern in patterns)


def classify(name: str) -> DeviceClass:
    """Classify a device node name (or path) by naming convention."""
    name = os.path.basename(name)
    if _matches(name, FIXED_PORT_PATTERNS):
        return DeviceClass.OTHER
    if _matches(name, USB_SERIAL_PATTERNS):
        return DeviceClass.USB_SERIAL
    if _matches(name, ACM_SERIAL_PATTERNS):
        return DeviceClass.ACM_SERIAL
    return DeviceClass.OTHER


def _scan_comports() -> list[PortDescriptor]:
    """Fallback for platforms without /dev nodes: USB ports known to pyserial."""
    ports = []
    for info in serial.tools.list_ports.comports():
        if info.vid is None:
            continue
        ports.append(PortDescriptor(device=info.device, device_class=DeviceClass.USB_SERIAL))
    return ports


def scan(dev_dir: str = DEFAULT_DEV_DIR) -> list[PortDescriptor]:
    """List USB-serial and ACM-serial device nodes in dev_dir.

    Order is directory enumeration order. Devices are not opened.
    """
    if sys.platform == "win32" and dev_dir == DEFAULT_DEV_DIR:
        return _scan_comports()

    ports = []
    try:
        with os.scandir(dev_dir) as entries:
            for entry in entries:
                device_class = classify(entry.name)
                if device_class is DeviceClass.OTHER:
                    continue
                ports.append(PortDescriptor(device=entry.path, device_class=device_class))
    except FileNotFoundError:
        logger.debug(f"Device directory {dev_dir} does not exist")
        return []
    except PermissionError:
        logger.warning(f"Cannot list {dev_dir}: permission denied")
        return []

    logger.debug(f"Found {len(ports)} serial port(s) in {dev_dir}")
    return ports


def first_port(dev_dir: str = DEFAULT_DEV_DIR) -> str | None:
    """Return the first port found by scan(), or None."""
    ports = scan(dev_dir)
    return ports[0].device if ports else None
