"""Cross-process advisory locking of serial devices.

A lock is a small file named after the device path, placed in a shared
directory. It records the owner pid, hostname and a per-owner token, one
per line. Files are written aside and hard-linked into place so that
creation is atomic and a reader never sees a half-written lock.

A lock whose owner process no longer runs on this host is stale and counts
as absent. Locks owned by another host are always considered live.
"""

import logging
import os
import socket
import uuid
from dataclasses import dataclass

import psutil

from common.config import TransportSettings

logger = logging.getLogger(__name__)

LOCK_PREFIX = "LCK.."


class LockError(Exception):
    """Raised when a lock file cannot be read or written."""

    pass


@dataclass(frozen=True)
class LockHandle:
    """Ownership of the lock for one device path."""

    device_path: str
    lock_path: str
    pid: int
    hostname: str
    token: str

    def serialize(self) -> str:
        return f"{self.pid}\n{self.hostname}\n{self.token}\n"


@dataclass(frozen=True)
class _LockInfo:
    pid: int
    hostname: str
    token: str


def lock_name(device_path: str) -> str:
    """Derive the lock file name for a device path."""
    real_path = os.path.realpath(device_path)
    flat = real_path.strip("/\\")
    for sep in ("/", "\\", ":"):
        flat = flat.replace(sep, "_")
    return LOCK_PREFIX + flat


def _pid_alive(pid: int) -> bool:
    """True if pid runs on this host and has not exited (zombies count as exited)."""
    if pid <= 0 or not psutil.pid_exists(pid):
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.ZombieProcess):
        return False
    except psutil.AccessDenied:
        return True


def _read_info(lock_path: str) -> _LockInfo | None:
    """Read a lock file. Returns None if it is missing or unparseable."""
    try:
        with open(lock_path, "r") as f:
            lines = f.read().splitlines()
    except FileNotFoundError:
        return None
    except OSError as e:
        raise LockError(f"Cannot read {lock_path}: {e}") from e

    if len(lines) < 3:
        return None
    try:
        pid = int(lines[0])
    except ValueError:
        return None
    return _LockInfo(pid=pid, hostname=lines[1], token=lines[2])


class DeviceLock:
    """Advisory lock owner. Each instance is one independent owner.

    All operations report failure through their return value; contention,
    permission problems and missing directories are never raised.
    """

    def __init__(self, lock_dir: str | None = None) -> None:
        self.lock_dir = lock_dir or TransportSettings.from_env().lock_dir
        self._token = uuid.uuid4().hex
        self._hostname = socket.gethostname()
        self._held: dict[str, LockHandle] = {}

    def lock_path(self, device_path: str) -> str:
        return os.path.join(self.lock_dir, lock_name(device_path))

    def handle(self, device_path: str) -> LockHandle | None:
        """Return our handle for device_path, if we hold its lock."""
        return self._held.get(device_path)

    def _is_stale(self, info: _LockInfo) -> bool:
        if info.hostname != self._hostname:
            return False
        return not _pid_alive(info.pid)

    def _owns(self, info: _LockInfo) -> bool:
        return info.pid == os.getpid() and info.token == self._token

    def is_locked(self, device_path: str) -> bool:
        """True if a live owner holds the lock for device_path."""
        lock_path = self.lock_path(device_path)
        try:
            info = _read_info(lock_path)
        except LockError as e:
            logger.debug(f"Treating unreadable lock as held: {e}")
            return True
        if info is None:
            return False
        if self._is_stale(info):
            logger.debug(f"Stale lock {lock_path} (pid {info.pid} is gone)")
            return False
        return True

    def set_lock(self, device_path: str) -> bool:
        """Atomically take the lock for device_path.

        Returns False if a live owner holds it or the file cannot be created.
        """
        lock_path = self.lock_path(device_path)
        handle = LockHandle(
            device_path=device_path,
            lock_path=lock_path,
            pid=os.getpid(),
            hostname=self._hostname,
            token=self._token,
        )

        try:
            for attempt in range(2):
                if self._create(handle):
                    self._held[device_path] = handle
                    logger.debug(f"Locked {device_path} ({lock_path})")
                    return True

                info = _read_info(lock_path)
                if info is None:
                    # Removed between our create and read, or corrupt
                    if attempt == 0 and self._break(lock_path, info):
                        continue
                    return False
                if self._owns(info):
                    self._held[device_path] = handle
                    return True
                if not self._is_stale(info):
                    logger.debug(f"{device_path} is locked by pid {info.pid} on {info.hostname}")
                    return False
                if attempt == 0:
                    logger.info(f"Breaking stale lock {lock_path} left by pid {info.pid}")
                    self._break(lock_path, info)
        except LockError as e:
            logger.warning(f"Cannot lock {device_path}: {e}")
            return False
        return False

    def remove_lock(self, device_path: str) -> bool:
        """Remove our lock for device_path.

        Returns False if there is no lock or it belongs to another owner.
        """
        lock_path = self.lock_path(device_path)
        self._held.pop(device_path, None)
        try:
            info = _read_info(lock_path)
        except LockError as e:
            logger.debug(f"Cannot remove lock: {e}")
            return False
        if info is None or not self._owns(info):
            return False
        try:
            os.unlink(lock_path)
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.debug(f"Cannot remove {lock_path}: {e}")
            return False
        logger.debug(f"Unlocked {device_path}")
        return True

    def release_all(self) -> None:
        """Remove every lock this owner holds."""
        for device_path in list(self._held):
            self.remove_lock(device_path)

    def _create(self, handle: LockHandle) -> bool:
        """Publish a lock file. False if one already exists."""
        staging = f"{handle.lock_path}.{handle.token}.tmp"
        try:
            # Staging name is private to this owner
            with open(staging, "w") as f:
                f.write(handle.serialize())
        except OSError as e:
            raise LockError(f"Cannot create {staging}: {e}") from e

        try:
            os.link(staging, handle.lock_path)
        except FileExistsError:
            return False
        except OSError as e:
            raise LockError(f"Cannot create {handle.lock_path}: {e}") from e
        finally:
            try:
                os.unlink(staging)
            except OSError:
                pass
        return True

    def _break(self, lock_path: str, seen: _LockInfo | None) -> bool:
        """Move a stale lock out of the way.

        The lock is renamed aside first and re-read, so that a fresh lock
        created by another process after we judged it stale is put back.
        """
        grave = f"{lock_path}.{self._token}.stale"
        try:
            os.rename(lock_path, grave)
        except FileNotFoundError:
            return True
        except OSError as e:
            raise LockError(f"Cannot break {lock_path}: {e}") from e

        try:
            if _read_info(grave) != seen:
                # The lock path is empty until the link below. An owner that
                # creates it in that window keeps it, and the original owner
                # is left believing it still holds the lock.
                try:
                    os.link(grave, lock_path)
                except FileExistsError:
                    logger.warning(
                        f"Could not restore live lock {lock_path}: another owner took it meanwhile"
                    )
                except OSError as e:
                    logger.warning(f"Could not restore live lock {lock_path}: {e}")
                return False
            return True
        finally:
            try:
                os.unlink(grave)
            except OSError:
                pass
