"""Serial link to a servo bus.

SerialTransport owns one pyserial handle and the advisory lock of its
device. Both are acquired together by open_link() and released together by
close_link(). Transfers are bounded by a deadline armed with
set_timeout_for_packet() or set_timeout_ms().

A SerialTransport must be driven by a single thread. Using one instance
from several threads at once is not supported.
"""

import logging
import os
from contextlib import ExitStack
from dataclasses import dataclass

import serial

from common.config import TransportSettings
from common.device import (
    SerialFactory,
    configure_latency_timer,
    latency_timer_value,
    open_serial,
    read_before,
    set_low_latency,
    write_nonblocking,
)
from common.protocol import (
    AUTO_DEVICE,
    CDC_ACM_LATENCY_MS,
    DEFAULT_LATENCY_MS,
    HARD_FAILURE,
    TRACE,
    AdapterType,
    LinkState,
    LinkStatus,
    SerialPort,
    ServoFamily,
)
from transport.baudrate import BaudRateFlag, requested_baudrate, resolve
from transport.lock import DeviceLock
from transport.scanner import DEFAULT_DEV_DIR, DeviceClass, classify, first_port
from transport.timeout import TimeoutPolicy, TimeoutState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LinkConfig:
    """Link parameters, fixed at construction."""

    device_path: str
    baud: int  # bps, or a servo baud index
    adapter: AdapterType = AdapterType.UNKNOWN
    servo_family: ServoFamily = ServoFamily.UNKNOWN


def infer_adapter(device_path: str) -> AdapterType:
    """Guess the adapter family from the device node name."""
    match classify(device_path):
        case DeviceClass.USB_SERIAL:
            return AdapterType.OTHER_FTDI
        case DeviceClass.ACM_SERIAL:
            return AdapterType.OTHER_CDC_ACM
        case _:
            return AdapterType.UNKNOWN


def default_latency_ms(adapter: AdapterType) -> float:
    if adapter in (AdapterType.USB2AX, AdapterType.OTHER_CDC_ACM):
        return CDC_ACM_LATENCY_MS
    return DEFAULT_LATENCY_MS


class SerialTransport:
    """Timeout-bounded byte transport over a locked serial device.

    Args:
        device_path: Device node (e.g. /dev/ttyUSB0), or "auto" to use the
            first port found by the scanner.
        baud: Speed in bps, or a servo baud index (0..254).
        adapter: USB converter in use, inferred from the device name if unknown.
        servo_family: Servo protocol family, used to decode baud indexes.
        lock: Lock owner; a private one is created by default.
        settings: Tunables; read from the environment by default.
        serial_factory: Callable building the pyserial port.
        scan_dir: Directory scanned when device_path is "auto".
    """

    def __init__(
        self,
        device_path: str,
        baud: int,
        adapter: AdapterType = AdapterType.UNKNOWN,
        servo_family: ServoFamily = ServoFamily.UNKNOWN,
        *,
        lock: DeviceLock | None = None,
        settings: TransportSettings | None = None,
        serial_factory: SerialFactory = serial.Serial,
        scan_dir: str = DEFAULT_DEV_DIR,
    ) -> None:
        self._settings = settings or TransportSettings.from_env()

        if device_path == AUTO_DEVICE:
            found = first_port(scan_dir)
            if found is None:
                logger.warning("No serial port found during autodetection")
            else:
                logger.info(f"Autodetected serial port {found}")
                device_path = found

        if adapter == AdapterType.UNKNOWN:
            adapter = infer_adapter(device_path)

        self._config = LinkConfig(
            device_path=device_path,
            baud=baud,
            adapter=adapter,
            servo_family=servo_family,
        )
        self._lock = lock or DeviceLock(self._settings.lock_dir)
        self._serial_factory = serial_factory
        self._serial: SerialPort | None = None
        self._resources: ExitStack | None = None
        self._state = LinkState.CLOSED
        self._timeout: TimeoutState | None = None

        self._baud_flag = self._resolve_baud()
        latency = self._settings.latency_ms
        self._policy = TimeoutPolicy(
            baudrate=self._baud_flag.rate,
            latency_ms=default_latency_ms(adapter) if latency is None else latency,
            margin_ms=self._settings.timeout_margin_ms,
            inter_byte_gap_ms=self._settings.inter_byte_gap_ms,
        )

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def device_path(self) -> str:
        return self._config.device_path

    @property
    def config(self) -> LinkConfig:
        return self._config

    @property
    def baud_flag(self) -> BaudRateFlag:
        return self._baud_flag

    @property
    def baudrate(self) -> int:
        """Resolved link speed in bps."""
        return self._baud_flag.rate

    @property
    def state(self) -> LinkState:
        return self._state

    @property
    def latency_ms(self) -> float:
        return self._policy.latency_ms

    @property
    def timeout_policy(self) -> TimeoutPolicy:
        return self._policy

    # -------------------------------------------------------------------------
    # Link lifecycle
    # -------------------------------------------------------------------------

    def _resolve_baud(self) -> BaudRateFlag:
        rate = requested_baudrate(self._config.baud, self._config.servo_family)
        flag = resolve(rate, self._settings.baud_tolerance)
        if flag.custom:
            logger.debug(f"No standard speed within tolerance of {rate} bps, using custom speed")
        elif flag.rate != rate:
            logger.debug(f"Requested {rate} bps, using standard speed {flag.rate} bps")
        return flag

    def _fail(self, status: LinkStatus) -> LinkStatus:
        self._state = LinkState.CLOSED
        return status

    def open_link(self) -> LinkStatus:
        """Lock the device and open it. Returns the outcome as a LinkStatus."""
        if self._state is LinkState.OPEN:
            return LinkStatus.SUCCESS

        device = self.device_path
        if device == AUTO_DEVICE or not os.path.exists(device):
            logger.warning(f"Serial device {device} not found")
            return LinkStatus.DEVICE_NOT_FOUND

        self._state = LinkState.OPENING

        if self._lock.is_locked(device):
            logger.warning(f"{device} is in use by another process")
            return self._fail(LinkStatus.DEVICE_LOCKED)

        self._baud_flag = self._resolve_baud()
        self._policy.baudrate = self._baud_flag.rate

        with ExitStack() as stack:
            if not self._lock.set_lock(device):
                logger.warning(f"Could not lock {device}")
                return self._fail(LinkStatus.DEVICE_LOCKED)
            stack.callback(self._release_lock, device)

            try:
                ser = open_serial(device, self._baud_flag.rate, self._serial_factory)
            except (ValueError, NotImplementedError) as e:
                if self._baud_flag.custom:
                    logger.warning(f"Custom speed {self._baud_flag.rate} bps not supported on {device}: {e}")
                    return self._fail(LinkStatus.UNSUPPORTED_BAUD)
                logger.warning(f"Failed to configure {device}: {e}")
                return self._fail(LinkStatus.OS_OPEN_FAILURE)
            except OSError as e:
                logger.warning(f"Failed to open {device}: {e}")
                return self._fail(LinkStatus.OS_OPEN_FAILURE)

            stack.callback(self._close_handle, ser)
            self._serial = ser
            self._resources = stack.pop_all()

        self._timeout = None
        self._state = LinkState.OPEN
        logger.info(f"Opened {device} at {self._baud_flag.rate} bps")
        return LinkStatus.SUCCESS

    def is_open(self) -> bool:
        return self._state is LinkState.OPEN

    def close_link(self) -> None:
        """Close the handle and release the lock. Never raises."""
        resources, self._resources = self._resources, None
        if resources is None:
            self._state = LinkState.CLOSED
            return

        self._state = LinkState.CLOSING
        try:
            resources.close()
        except Exception as e:
            logger.debug(f"Error while closing {self.device_path}: {e}")
        finally:
            self._serial = None
            self._timeout = None
            self._state = LinkState.CLOSED
        logger.info(f"Closed {self.device_path}")

    def _close_handle(self, ser: SerialPort) -> None:
        try:
            ser.close()
        except (serial.SerialException, OSError) as e:
            logger.debug(f"Failed to close {self.device_path}: {e}")

    def _release_lock(self, device: str) -> None:
        if not self._lock.remove_lock(device):
            # Already gone, nothing to release
            logger.debug(f"No lock to remove for {device}")

    def _hard_failure(self, operation: str, error: Exception) -> int:
        logger.warning(f"{operation} failed on {self.device_path}: {error}")
        self.close_link()
        return HARD_FAILURE

    def __enter__(self) -> "SerialTransport":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close_link()

    def __del__(self) -> None:
        if getattr(self, "_resources", None) is not None:
            self.close_link()

    # -------------------------------------------------------------------------
    # Transfers
    # -------------------------------------------------------------------------

    def tx(self, buffer: bytes | bytearray | memoryview, length: int | None = None) -> int:
        """Write up to length bytes without blocking.

        Returns the number of bytes accepted by the driver, which may be
        less than requested, or HARD_FAILURE.
        """
        if length is not None and length < 0:
            raise ValueError(f"Length must not be negative, got {length}")
        if not self.is_open() or self._serial is None:
            return HARD_FAILURE

        data = bytes(buffer[:length] if length is not None else buffer)
        if not data:
            return 0

        try:
            written = write_nonblocking(self._serial, data)
        except serial.SerialTimeoutException:
            written = 0
        except (serial.SerialException, OSError) as e:
            return self._hard_failure("tx", e)

        logger.log(TRACE, f"tx {written}/{len(data)} bytes")
        return written

    def rx(self, buffer: bytearray | memoryview, length: int | None = None) -> int:
        """Read up to length bytes into buffer before the armed deadline.

        Returns the number of bytes stored (0 if the deadline passed with no
        data) or HARD_FAILURE. A deadline is armed from length if none is.
        """
        if isinstance(buffer, memoryview):
            if buffer.readonly:
                raise TypeError("rx() needs a writable buffer")
        elif not isinstance(buffer, bytearray):
            raise TypeError(f"rx() needs a bytearray, got {type(buffer).__name__}")
        if length is None:
            length = len(buffer)
        if length < 0 or length > len(buffer):
            raise ValueError(f"Length {length} does not fit a buffer of {len(buffer)} bytes")
        if not self.is_open() or self._serial is None:
            return HARD_FAILURE
        if length == 0:
            return 0

        if self._timeout is None:
            self.set_timeout_for_packet(length)
        assert self._timeout is not None

        try:
            data = read_before(self._serial, length, self._timeout.remaining_s())
        except (serial.SerialException, OSError) as e:
            return self._hard_failure("rx", e)

        count = len(data)
        buffer[:count] = data
        logger.log(TRACE, f"rx {count}/{length} bytes")
        return count

    def flush(self) -> None:
        """Discard unread input and unsent output. No-op when closed."""
        if not self.is_open() or self._serial is None:
            return
        try:
            self._serial.reset_input_buffer()
            self._serial.reset_output_buffer()
        except (serial.SerialException, OSError) as e:
            logger.debug(f"Flush failed on {self.device_path}: {e}")

    # -------------------------------------------------------------------------
    # Latency
    # -------------------------------------------------------------------------

    def set_latency(self, latency_us: int) -> None:
        """Advise the adapter latency, in microseconds.

        The value feeds the packet timeout computation and, for FTDI
        devices, is written to the driver latency timer when permitted.
        Failures are silent.
        """
        if latency_us < 0:
            raise ValueError(f"Latency must not be negative, got {latency_us}")
        self._policy.latency_ms = latency_us / 1000.0
        configure_latency_timer(self.device_path, latency_timer_value(latency_us))

    def switch_high_speed(self) -> bool:
        """Request ASYNC_LOW_LATENCY on the open device. Best-effort."""
        if not self.is_open() or self._serial is None:
            return False
        return set_low_latency(self._serial)

    # -------------------------------------------------------------------------
    # Timeouts
    # -------------------------------------------------------------------------

    def set_timeout_for_packet(self, packet_length: int) -> None:
        """Arm a deadline long enough to receive packet_length bytes."""
        self.set_timeout_ms(self._policy.packet_timeout_ms(packet_length))

    def set_timeout_ms(self, msec: float) -> None:
        """Arm an explicit deadline, in milliseconds from now."""
        if msec < 0:
            raise ValueError(f"Timeout must not be negative, got {msec}")
        self._timeout = TimeoutState(duration_ms=msec)

    def check_timeout(self) -> float:
        """Milliseconds elapsed since the deadline was armed (0 if never armed)."""
        if self._timeout is None:
            return 0.0
        return self._timeout.elapsed_ms()

    @property
    def timed_out(self) -> bool:
        return self._timeout is not None and self._timeout.expired
