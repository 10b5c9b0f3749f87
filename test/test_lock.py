"""Tests for cross-process device locks."""

import logging
import os
import socket
import subprocess
import sys
import time
from pathlib import Path

import psutil
import pytest

from transport.lock import LOCK_PREFIX, DeviceLock, _LockInfo, lock_name

_ROOT_DIR = Path(__file__).parent.parent

DEVICE = "/dev/ttyUSB0"


def _dead_pid() -> int:
    """Return the pid of a process that has already exited."""
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


class _SleepingProcess:
    """Stands in for psutil.Process of a live, idle owner."""

    def __init__(self, pid: int) -> None:
        self.pid = pid

    def status(self) -> str:
        return psutil.STATUS_SLEEPING


@pytest.mark.unit
class TestLockName:
    """Tests for lock file naming."""

    def test_deterministic(self) -> None:
        assert lock_name(DEVICE) == lock_name(DEVICE)

    def test_prefix_and_flattening(self) -> None:
        name = lock_name(DEVICE)
        assert name.startswith(LOCK_PREFIX)
        assert "/" not in name
        assert name.endswith("ttyUSB0")

    def test_distinct_devices(self) -> None:
        assert lock_name("/dev/ttyUSB0") != lock_name("/dev/ttyUSB1")
        assert lock_name("/dev/ttyUSB0") != lock_name("/tmp/ttyUSB0")

    def test_symlink_shares_lock(self, tmp_path: Path) -> None:
        node = tmp_path / "ttyACM0"
        node.touch()
        link = tmp_path / "usb-adapter-if00"
        link.symlink_to(node)
        assert lock_name(str(link)) == lock_name(str(node))


@pytest.mark.unit
class TestDeviceLock:
    """Tests for DeviceLock in a single process."""

    def test_set_then_is_locked(self, lock_dir: Path) -> None:
        owner = DeviceLock(str(lock_dir))
        assert owner.is_locked(DEVICE) is False
        assert owner.set_lock(DEVICE) is True
        assert owner.is_locked(DEVICE) is True
        assert os.path.exists(owner.lock_path(DEVICE))

    def test_two_owners_only_one_wins(self, lock_dir: Path) -> None:
        first = DeviceLock(str(lock_dir))
        second = DeviceLock(str(lock_dir))
        assert first.set_lock(DEVICE) is True
        assert second.set_lock(DEVICE) is False
        assert second.is_locked(DEVICE) is True

    def test_remove_then_not_locked(self, lock_dir: Path) -> None:
        owner = DeviceLock(str(lock_dir))
        assert owner.set_lock(DEVICE)
        assert owner.remove_lock(DEVICE) is True
        assert owner.is_locked(DEVICE) is False

    def test_remove_is_idempotent(self, lock_dir: Path) -> None:
        owner = DeviceLock(str(lock_dir))
        assert owner.set_lock(DEVICE)
        assert owner.remove_lock(DEVICE) is True
        assert owner.remove_lock(DEVICE) is False

    def test_remove_without_lock(self, lock_dir: Path) -> None:
        assert DeviceLock(str(lock_dir)).remove_lock(DEVICE) is False

    def test_remove_foreign_lock_refused(self, lock_dir: Path) -> None:
        first = DeviceLock(str(lock_dir))
        second = DeviceLock(str(lock_dir))
        assert first.set_lock(DEVICE)
        assert second.remove_lock(DEVICE) is False
        assert first.is_locked(DEVICE) is True

    def test_second_owner_after_release(self, lock_dir: Path) -> None:
        first = DeviceLock(str(lock_dir))
        second = DeviceLock(str(lock_dir))
        assert first.set_lock(DEVICE)
        assert first.remove_lock(DEVICE)
        assert second.set_lock(DEVICE) is True

    def test_set_lock_twice_same_owner(self, lock_dir: Path) -> None:
        owner = DeviceLock(str(lock_dir))
        assert owner.set_lock(DEVICE)
        assert owner.set_lock(DEVICE) is True

    def test_handle_tracks_ownership(self, lock_dir: Path) -> None:
        owner = DeviceLock(str(lock_dir))
        assert owner.handle(DEVICE) is None
        owner.set_lock(DEVICE)
        handle = owner.handle(DEVICE)
        assert handle is not None
        assert handle.pid == os.getpid()
        assert handle.lock_path == owner.lock_path(DEVICE)
        owner.remove_lock(DEVICE)
        assert owner.handle(DEVICE) is None

    def test_lock_file_contents(self, lock_dir: Path) -> None:
        owner = DeviceLock(str(lock_dir))
        owner.set_lock(DEVICE)
        lines = Path(owner.lock_path(DEVICE)).read_text().splitlines()
        assert lines[0] == str(os.getpid())
        assert lines[1] == socket.gethostname()

    def test_no_staging_files_left(self, lock_dir: Path) -> None:
        owner = DeviceLock(str(lock_dir))
        owner.set_lock(DEVICE)
        assert os.listdir(lock_dir) == [lock_name(DEVICE)]

    def test_missing_directory(self, tmp_path: Path) -> None:
        owner = DeviceLock(str(tmp_path / "missing"))
        assert owner.set_lock(DEVICE) is False
        assert owner.is_locked(DEVICE) is False

    def test_release_all(self, lock_dir: Path) -> None:
        owner = DeviceLock(str(lock_dir))
        owner.set_lock("/dev/ttyUSB0")
        owner.set_lock("/dev/ttyUSB1")
        owner.release_all()
        assert os.listdir(lock_dir) == []


@pytest.mark.unit
class TestStaleLock:
    """Tests for locks left behind by dead processes."""

    def _write_lock(self, owner: DeviceLock, pid: int, hostname: str | None = None) -> None:
        Path(owner.lock_path(DEVICE)).write_text(
            f"{pid}\n{hostname or socket.gethostname()}\ndeadbeef\n"
        )

    def test_stale_lock_is_absent(self, lock_dir: Path) -> None:
        owner = DeviceLock(str(lock_dir))
        self._write_lock(owner, _dead_pid())
        assert owner.is_locked(DEVICE) is False

    def test_stale_lock_is_replaced(self, lock_dir: Path) -> None:
        owner = DeviceLock(str(lock_dir))
        self._write_lock(owner, _dead_pid())
        assert owner.set_lock(DEVICE) is True
        lines = Path(owner.lock_path(DEVICE)).read_text().splitlines()
        assert lines[0] == str(os.getpid())

    def test_corrupt_lock_is_replaced(self, lock_dir: Path) -> None:
        owner = DeviceLock(str(lock_dir))
        Path(owner.lock_path(DEVICE)).write_text("garbage")
        assert owner.is_locked(DEVICE) is False
        assert owner.set_lock(DEVICE) is True

    def test_liveness_comes_from_process_table(self, lock_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        owner = DeviceLock(str(lock_dir))
        self._write_lock(owner, 4242)
        monkeypatch.setattr(psutil, "pid_exists", lambda pid: False)
        assert owner.is_locked(DEVICE) is False

        monkeypatch.setattr(psutil, "pid_exists", lambda pid: True)
        monkeypatch.setattr(psutil, "Process", _SleepingProcess)
        assert owner.is_locked(DEVICE) is True

    def test_unreadable_owner_counts_as_live(self, lock_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        owner = DeviceLock(str(lock_dir))
        self._write_lock(owner, 4242)

        def denied(pid: int) -> None:
            raise psutil.AccessDenied(pid)

        monkeypatch.setattr(psutil, "pid_exists", lambda pid: True)
        monkeypatch.setattr(psutil, "Process", denied)
        assert owner.is_locked(DEVICE) is True

    @pytest.mark.skipif(sys.platform != "linux", reason="Requires Linux zombie reporting")
    def test_zombie_owner_is_stale(self, lock_dir: Path) -> None:
        proc = subprocess.Popen([sys.executable, "-c", "pass"])
        try:
            deadline = time.monotonic() + 5.0
            while psutil.Process(proc.pid).status() != psutil.STATUS_ZOMBIE:
                assert time.monotonic() < deadline
                time.sleep(0.01)

            owner = DeviceLock(str(lock_dir))
            self._write_lock(owner, proc.pid)
            assert owner.is_locked(DEVICE) is False
            assert owner.set_lock(DEVICE) is True
        finally:
            proc.wait()

    def test_fresh_lock_is_put_back(self, lock_dir: Path) -> None:
        holder = DeviceLock(str(lock_dir))
        breaker = DeviceLock(str(lock_dir))
        assert holder.set_lock(DEVICE) is True
        judged_stale = _LockInfo(pid=1, hostname="elsewhere", token="old")
        assert breaker._break(breaker.lock_path(DEVICE), judged_stale) is False
        assert holder.remove_lock(DEVICE) is True

    def test_failed_put_back_is_logged(
        self, lock_dir: Path, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
    ) -> None:
        holder = DeviceLock(str(lock_dir))
        breaker = DeviceLock(str(lock_dir))
        assert holder.set_lock(DEVICE) is True

        def taken(src: str, dst: str) -> None:
            raise FileExistsError(dst)

        monkeypatch.setattr(os, "link", taken)
        judged_stale = _LockInfo(pid=1, hostname="elsewhere", token="old")
        with caplog.at_level(logging.WARNING, logger="transport.lock"):
            assert breaker._break(breaker.lock_path(DEVICE), judged_stale) is False
        assert "Could not restore live lock" in caplog.text

    def test_remote_host_lock_is_live(self, lock_dir: Path) -> None:
        owner = DeviceLock(str(lock_dir))
        self._write_lock(owner, _dead_pid(), hostname="some-other-host")
        assert owner.is_locked(DEVICE) is True
        assert owner.set_lock(DEVICE) is False


_HOLDER = """
import sys, time
from transport.lock import DeviceLock
lock = DeviceLock(sys.argv[1])
print("locked" if lock.set_lock(sys.argv[2]) else "busy", flush=True)
time.sleep(30)
"""


@pytest.mark.integration
@pytest.mark.skipif(sys.platform == "win32", reason="Requires POSIX process semantics")
class TestCrossProcess:
    """Tests with a lock held by another process."""

    def test_lock_held_by_other_process(self, lock_dir: Path) -> None:
        proc = subprocess.Popen(
            [sys.executable, "-c", _HOLDER, str(lock_dir), DEVICE],
            cwd=_ROOT_DIR,
            stdout=subprocess.PIPE,
            text=True,
        )
        try:
            assert proc.stdout is not None
            assert proc.stdout.readline().strip() == "locked"

            owner = DeviceLock(str(lock_dir))
            assert owner.is_locked(DEVICE) is True
            assert owner.set_lock(DEVICE) is False
            assert owner.remove_lock(DEVICE) is False
        finally:
            proc.kill()
            proc.wait()
            if proc.stdout:
                proc.stdout.close()

        # The holder died without cleanup: its lock is now stale
        owner = DeviceLock(str(lock_dir))
        assert owner.is_locked(DEVICE) is False
        assert owner.set_lock(DEVICE) is True
