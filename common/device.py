"""Serial device setup and adapter tuning for servolink.

Contains:
- configure_latency_timer: Set the FTDI latency timer through sysfs
- set_low_latency: Request ASYNC_LOW_LATENCY on an open port
- write_nonblocking: Write without waiting for the driver
- read_before: Read with a deadline
- log_device_info: Log USB metadata about a serial device
- open_serial: Open and configure a serial port
"""

import io
import logging
import math
import os
import select
import time
from collections.abc import Callable

import serial
import serial.tools.list_ports

from common.protocol import SerialPort

logger = logging.getLogger(__name__)

SYSFS_USB_SERIAL = "/sys/bus/usb-serial/devices"

# The FTDI driver accepts 1..255 ms
LATENCY_TIMER_MIN_MS = 1
LATENCY_TIMER_MAX_MS = 255

SerialFactory = Callable[..., serial.Serial]


def latency_timer_value(latency_us: int) -> int:
    """Convert a latency request in microseconds to a latency_timer value."""
    value = math.ceil(latency_us / 1000)
    return max(LATENCY_TIMER_MIN_MS, min(LATENCY_TIMER_MAX_MS, value))


def configure_latency_timer(
    device: str, target_ms: int, sysfs_root: str = SYSFS_USB_SERIAL
) -> bool:
    """Write target_ms to the FTDI latency timer of a ttyUSB device.

    Returns True if the timer reads back as target_ms. Any failure is
    reported at debug level and returns False.
    """
    device_name = os.path.basename(os.path.realpath(device))

    if not device_name.startswith("ttyUSB"):
        logger.debug(f"Latency timer not applicable to {device_name}")
        return False

    sysfs_path = os.path.join(sysfs_root, device_name, "latency_timer")

    if not os.path.exists(sysfs_path):
        logger.debug(f"Cannot configure latency timer: {sysfs_path} not found")
        return False

    try:
        with open(sysfs_path, "r") as f:
            current_value = int(f.read().strip())

        if current_value == target_ms:
            logger.debug(f"Latency timer already set to {target_ms}ms")
            return True

        with open(sysfs_path, "w") as f:
            f.write(str(target_ms))

        with open(sysfs_path, "r") as f:
            new_value = int(f.read().strip())

        if new_value == target_ms:
            logger.info(f"Set latency timer of {device_name} from {current_value}ms to {target_ms}ms")
            return True
        logger.debug(f"Failed to set latency timer: wrote {target_ms}, read {new_value}")
        return False

    except PermissionError:
        logger.debug("Cannot configure latency timer: permission denied")
        return False
    except (OSError, ValueError) as e:
        logger.debug(f"Failed to configure latency timer: {e}")
        return False


def set_low_latency(ser: SerialPort) -> bool:
    """Ask the tty driver for ASYNC_LOW_LATENCY. Linux only, may need root."""
    setter = getattr(ser, "set_low_latency_mode", None)
    if setter is None:
        logger.debug("Low latency mode not supported on this platform")
        return False
    try:
        setter(True)
    except (OSError, ValueError, NotImplementedError) as e:
        logger.debug(f"Failed to enable low latency mode: {e}")
        return False
    logger.debug(f"Low latency mode enabled on {ser.name}")
    return True


def _port_fd(ser: SerialPort) -> int | None:
    """File descriptor of a POSIX pyserial port, None for other ports."""
    fileno = getattr(ser, "fileno", None)
    if fileno is None:
        return None
    try:
        return fileno()
    except io.UnsupportedOperation:
        return None


def write_nonblocking(ser: SerialPort, data: bytes) -> int:
    """Write what the driver accepts right now and return the count.

    pyserial's POSIX write retries EAGAIN until everything is sent, even
    with write_timeout=0, so the descriptor is written directly there.
    """
    fd = _port_fd(ser)
    if fd is None:
        return ser.write(data) or 0
    try:
        return os.write(fd, data)
    except BlockingIOError:
        return 0


def read_before(ser: SerialPort, size: int, timeout_s: float) -> bytes:
    """Read up to size bytes, waiting at most timeout_s for them.

    On POSIX ports the port timeout stays at 0 and the wait happens in
    select(), so no termios reconfiguration happens per read.
    """
    fd = _port_fd(ser)
    if fd is None:
        if ser.timeout != timeout_s:
            ser.timeout = timeout_s
        return ser.read(size)

    deadline = time.monotonic() + timeout_s
    data = bytearray()
    while len(data) < size:
        remaining = max(0.0, deadline - time.monotonic())
        ready, _, _ = select.select([fd], [], [], remaining)
        if not ready:
            break
        data.extend(ser.read(size - len(data)))
    return bytes(data)


def log_device_info(device: str) -> None:
    """Log information about a serial device."""
    real_path = os.path.realpath(device)
    if real_path.startswith("/dev/pts/"):
        logger.debug(f"Device: {device} -> {real_path} (pty)")
        return

    ports = [p for p in serial.tools.list_ports.comports() if p.device in (device, real_path)]
    if not ports:
        logger.debug(f"Device: {device} (not in port list)")
        return

    info = ports[0]
    logger.debug(f"Device: {info.device}")
    logger.debug(f"Description: {info.description}")
    if info.vid is not None:
        logger.debug(f"VID:PID: {info.vid:04x}:{info.pid:04x}")
    if info.manufacturer:
        logger.debug(f"Manufacturer: {info.manufacturer}")


def open_serial(
    device: str,
    baudrate: int,
    factory: SerialFactory = serial.Serial,
) -> serial.Serial:
    """Open and configure a serial port for servo bus traffic.

    Reads and writes are non-blocking; read_before() does the waiting.
    Non-standard baudrates go through pyserial's custom speed support and
    raise ValueError or NotImplementedError when the platform cannot do it.
    """
    log_device_info(device)
    ser = factory(
        port=device,
        baudrate=baudrate,
        bytesize=serial.EIGHTBITS,
        parity=serial.PARITY_NONE,
        stopbits=serial.STOPBITS_ONE,
        xonxoff=False,
        rtscts=False,
        timeout=0,
        write_timeout=0,
    )
    try:
        ser.reset_input_buffer()
        ser.reset_output_buffer()
    except Exception:
        ser.close()
        raise
    logger.debug(f"Serial port: baudrate={ser.baudrate}")
    return ser
