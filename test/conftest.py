"""pytest configuration and fixtures for servolink tests.

Provides:
- MockSerial: In-memory stand-in for serial.Serial with loopback and fault injection
- MockSerialFactory: Serial factory recording the ports it builds
- Device node, lock directory and settings fixtures
- pty echo and pty sink fixtures for integration tests
- Markers for unit vs integration tests
"""

import os
import sys
import threading
import time
from collections.abc import Generator
from pathlib import Path

import pytest
import serial

from common.config import TransportSettings


class MockSerial:
    """Mock pyserial port.

    With loopback=True, bytes written are queued for reading, like a
    TX-RX jumper. read() waits out the timeout when nothing is queued.
    """

    def __init__(self, port: str | None = None, baudrate: int = 9600, *, loopback: bool = True, **kwargs: object) -> None:
        self.port = port
        self.name = port
        self.baudrate = baudrate
        self._timeout = kwargs.get("timeout")
        self.timeout_sets = 0
        self.write_timeout = kwargs.get("write_timeout")
        self.loopback = loopback
        self.write_capacity: int | None = None
        self.read_error: Exception | None = None
        self.write_error: Exception | None = None
        self.low_latency: bool | None = None
        self.written = bytearray()
        self._rx = bytearray()
        self._is_open = True
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return self._is_open

    @property
    def timeout(self) -> float | None:
        return self._timeout

    @timeout.setter
    def timeout(self, value: float | None) -> None:
        # pyserial reconfigures the port on every assignment
        self.timeout_sets += 1
        self._timeout = value

    @property
    def in_waiting(self) -> int:
        with self._lock:
            return len(self._rx)

    def inject(self, data: bytes) -> None:
        """Queue data as if received from the bus."""
        with self._lock:
            self._rx.extend(data)

    def write(self, data: bytes, /) -> int:
        if self.write_error is not None:
            raise self.write_error
        if self.write_capacity is not None:
            data = data[: self.write_capacity]
        with self._lock:
            self.written.extend(data)
            if self.loopback:
                self._rx.extend(data)
        return len(data)

    def read(self, size: int = 1, /) -> bytes:
        if self.read_error is not None:
            raise self.read_error
        deadline = time.monotonic() + (self.timeout or 0)
        while True:
            with self._lock:
                if len(self._rx) >= size or time.monotonic() >= deadline:
                    data = bytes(self._rx[:size])
                    del self._rx[:size]
                    return data
            time.sleep(0.001)

    def reset_input_buffer(self) -> None:
        with self._lock:
            self._rx.clear()

    def reset_output_buffer(self) -> None:
        pass

    def set_low_latency_mode(self, low_latency_settings: bool) -> None:
        self.low_latency = low_latency_settings

    def close(self) -> None:
        self._is_open = False


class MockSerialFactory:
    """Builds MockSerial ports, or raises error when set."""

    def __init__(self, error: BaseException | None = None) -> None:
        self.error = error
        self.ports: list[MockSerial] = []

    def __call__(self, **kwargs: object) -> MockSerial:
        if self.error is not None:
            raise self.error
        port = MockSerial(**kwargs)  # type: ignore[arg-type]
        self.ports.append(port)
        return port

    @property
    def last(self) -> MockSerial:
        return self.ports[-1]


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: mark test as unit test")
    config.addinivalue_line("markers", "integration: mark test as integration test (requires a pty)")


@pytest.fixture
def lock_dir(tmp_path: Path) -> Path:
    """Directory for lock files, private to the test."""
    path = tmp_path / "lock"
    path.mkdir()
    return path


@pytest.fixture
def dev_dir(tmp_path: Path) -> Path:
    """Fake /dev directory."""
    path = tmp_path / "dev"
    path.mkdir()
    return path


@pytest.fixture
def device(dev_dir: Path) -> str:
    """A fake USB serial device node."""
    node = dev_dir / "ttyUSB0"
    node.touch()
    return str(node)


@pytest.fixture
def settings(lock_dir: Path) -> TransportSettings:
    """Settings with a private lock directory and no adapter latency."""
    return TransportSettings(lock_dir=str(lock_dir), latency_ms=0.0)


@pytest.fixture
def factory() -> MockSerialFactory:
    return MockSerialFactory()


@pytest.fixture
def pty_echo() -> Generator[str, None, None]:
    """Create a pty whose master echoes everything back.

    Yields the slave device path.

    Requires: Linux.
    """
    if sys.platform != "linux":
        pytest.skip("pty echo fixture requires Linux")

    import pty

    master_fd, slave_fd = pty.openpty()
    running = True

    def echo() -> None:
        while running:
            try:
                data = os.read(master_fd, 4096)
                if data:
                    os.write(master_fd, data)
            except OSError:
                break

    thread = threading.Thread(target=echo, daemon=True)
    thread.start()
    try:
        yield os.ttyname(slave_fd)
    finally:
        running = False
        os.close(slave_fd)
        os.close(master_fd)
        thread.join(timeout=1.0)


@pytest.fixture
def pty_sink() -> Generator[str, None, None]:
    """Create a pty whose master is never read, so writes eventually fill it.

    Yields the slave device path.

    Requires: Linux.
    """
    if sys.platform != "linux":
        pytest.skip("pty sink fixture requires Linux")

    import pty

    master_fd, slave_fd = pty.openpty()
    try:
        yield os.ttyname(slave_fd)
    finally:
        os.close(slave_fd)
        os.close(master_fd)


@pytest.fixture
def serial_error() -> serial.SerialException:
    return serial.SerialException("device reports readiness to read but returned no data")
