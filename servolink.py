#!/usr/bin/env python3
"""Serial transport tool for servo buses."""

import argparse
import logging
import os
import pty
import sys
import threading
import time

from common.protocol import AUTO_DEVICE, AdapterType, LinkStatus, ServoFamily
from transport.link import SerialTransport
from transport.scanner import scan

logger = logging.getLogger(__name__)

DEFAULT_BAUDRATE = 1000000
DEFAULT_LOOPBACK_BAUDRATE = 115200
DEFAULT_TIMEOUT_MS = 100

LOOPBACK_PAYLOAD = b"\xff\xff\x01\x02\x01\xfb"  # Dynamixel v1 PING to id 1
ECHO_SETTLE_S = 0.05


class LoopbackDevice:
    """Virtual loopback device using a pty pair."""

    def __init__(self) -> None:
        if sys.platform not in ("linux", "darwin"):
            raise RuntimeError(
                f"Loopback mode only supported on Linux/macOS, not {sys.platform}"
            )
        self._master_fd, self._slave_fd = pty.openpty()
        self.path = os.ttyname(self._slave_fd)
        self._running = True
        self._echo_thread = threading.Thread(target=self._echo_loop, daemon=True)
        self._echo_thread.start()
        logger.info(f"Loopback pty: {self.path}")

    def _echo_loop(self) -> None:
        while self._running:
            try:
                data = os.read(self._master_fd, 4096)
                if data:
                    os.write(self._master_fd, data)
            except OSError:
                break

    def close(self) -> None:
        self._running = False
        os.close(self._slave_fd)
        os.close(self._master_fd)
        logger.info("Closed loopback device")


def run_scan() -> int:
    """Print the serial ports found, one per line."""
    ports = scan()
    if not ports:
        logger.info("No serial port found")
    for port in ports:
        print(f"{port.device} {port.device_class.value}")
    return 0


def run_probe(device: str, baud: int, adapter: AdapterType, servo: ServoFamily) -> int:
    """Open and close a link, reporting the outcome."""
    link = SerialTransport(device, baud, adapter, servo)
    status = link.open_link()
    try:
        print(f"{link.device_path}: {status.name.lower()} (baudrate={link.baudrate}"
              f"{', custom' if link.baud_flag.custom else ''})")
    finally:
        link.close_link()
    return status


def run_loopback(baud: int, timeout_ms: int) -> int:
    """Exercise tx, flush, rx and the timeout path over a pty echo."""
    dev = LoopbackDevice()
    link = SerialTransport(dev.path, baud)
    try:
        status = link.open_link()
        if not status.ok:
            print(f"open: {status.name.lower()}")
            return status

        # Echo
        link.tx(LOOPBACK_PAYLOAD)
        link.set_timeout_for_packet(len(LOOPBACK_PAYLOAD))
        buffer = bytearray(len(LOOPBACK_PAYLOAD))
        received = 0
        while received < len(buffer) and not link.timed_out:
            count = link.rx(memoryview(buffer)[received:])
            if count < 0:
                print("echo: hard failure")
                return 1
            received += count
        echo_ok = bytes(buffer[:received]) == LOOPBACK_PAYLOAD
        print(f"echo: {'ok' if echo_ok else 'FAILED'} ({received}/{len(buffer)} bytes "
              f"in {link.check_timeout():.1f}ms)")

        # Flush discards what the echo sent back
        link.tx(LOOPBACK_PAYLOAD)
        time.sleep(ECHO_SETTLE_S)
        link.flush()
        link.set_timeout_ms(timeout_ms)
        residual = link.rx(bytearray(len(LOOPBACK_PAYLOAD)))
        elapsed = link.check_timeout()
        flush_ok = residual == 0
        print(f"flush: {'ok' if flush_ok else 'FAILED'} ({residual} residual bytes)")
        print(f"timeout: {elapsed:.1f}ms elapsed for {timeout_ms}ms armed")

        return 0 if echo_ok and flush_ok else 1
    finally:
        link.close_link()
        dev.close()


def _add_link_args(parser: argparse.ArgumentParser, default_baud: int) -> None:
    """Add baudrate argument to a parser."""
    parser.add_argument(
        "-b",
        "--baudrate",
        type=int,
        default=default_baud,
        help=f"Baud rate in bps, or a servo baud index (default: {default_baud})",
    )


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Serial transport tool for servo buses",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s scan                              List USB serial adapters
  %(prog)s probe -d /dev/ttyUSB0 -b 1000000  Lock and open a device
  %(prog)s probe -b 1 --servo dynamixel      Autodetect, Dynamixel baud index 1
  %(prog)s loopback                          Self test over a pty
""",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="mode")

    subparsers.add_parser("scan", help="List USB-serial and ACM-serial ports")

    probe_parser = subparsers.add_parser("probe", help="Open and close a serial link")
    probe_parser.add_argument(
        "-d",
        "--device",
        type=str,
        default=AUTO_DEVICE,
        help=f"Serial device path or '{AUTO_DEVICE}' (default: {AUTO_DEVICE})",
    )
    probe_parser.add_argument(
        "--adapter",
        type=str.upper,
        choices=[a.name for a in AdapterType],
        default=AdapterType.UNKNOWN.name,
        help="USB converter in use (default: inferred from device name)",
    )
    probe_parser.add_argument(
        "--servo",
        type=str.upper,
        choices=[s.name for s in ServoFamily],
        default=ServoFamily.UNKNOWN.name,
        help="Servo protocol family, used for baud indexes (default: UNKNOWN)",
    )
    _add_link_args(probe_parser, DEFAULT_BAUDRATE)

    loopback_parser = subparsers.add_parser(
        "loopback", help="Run loopback self test using pty"
    )
    _add_link_args(loopback_parser, DEFAULT_LOOPBACK_BAUDRATE)
    loopback_parser.add_argument(
        "-t",
        "--timeout",
        type=int,
        default=DEFAULT_TIMEOUT_MS,
        help=f"Receive timeout in milliseconds (default: {DEFAULT_TIMEOUT_MS})",
    )

    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    if args.mode == "scan":
        return run_scan()

    if args.mode == "probe":
        return run_probe(
            args.device,
            args.baudrate,
            AdapterType[args.adapter],
            ServoFamily[args.servo],
        )

    if args.mode == "loopback":
        return run_loopback(args.baudrate, args.timeout)

    parser.print_help()
    return 2


if __name__ == "__main__":
    sys.exit(main())
