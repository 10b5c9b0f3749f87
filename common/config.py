"""Environment-driven settings for servolink.

Environment variables:
    SERVOLINK_LOCK_DIR: Directory holding device lock files (default: system temp dir)
    SERVOLINK_BAUD_TOLERANCE: Relative baudrate matching tolerance (default: 0.015)
    SERVOLINK_TIMEOUT_MARGIN_MS: Fixed margin added to packet timeouts (default: 2.0)
    SERVOLINK_INTER_BYTE_GAP_MS: Gap allowed between bytes of a packet (default: 0.0)
    SERVOLINK_LATENCY_MS: Adapter latency override, unset means per-adapter default
"""

import logging
import os
import tempfile
from dataclasses import dataclass

from common.protocol import DEFAULT_INTER_BYTE_GAP_MS, DEFAULT_TIMEOUT_MARGIN_MS

logger = logging.getLogger(__name__)

DEFAULT_BAUD_TOLERANCE = 0.015


def get_env(name: str, default: str = "") -> str:
    """Get environment variable with default."""
    return os.environ.get(name, default)


def _float_env(name: str, default: float) -> float:
    raw = get_env(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring {name}={raw!r}: not a number, using {default}")
        return default


@dataclass(frozen=True)
class TransportSettings:
    """Tunables shared by the lock, the resolver and the timeout model."""

    lock_dir: str = tempfile.gettempdir()
    baud_tolerance: float = DEFAULT_BAUD_TOLERANCE
    timeout_margin_ms: float = DEFAULT_TIMEOUT_MARGIN_MS
    inter_byte_gap_ms: float = DEFAULT_INTER_BYTE_GAP_MS
    latency_ms: float | None = None

    @classmethod
    def from_env(cls) -> "TransportSettings":
        latency = get_env("SERVOLINK_LATENCY_MS")
        return cls(
            lock_dir=get_env("SERVOLINK_LOCK_DIR") or tempfile.gettempdir(),
            baud_tolerance=_float_env("SERVOLINK_BAUD_TOLERANCE", DEFAULT_BAUD_TOLERANCE),
            timeout_margin_ms=_float_env("SERVOLINK_TIMEOUT_MARGIN_MS", DEFAULT_TIMEOUT_MARGIN_MS),
            inter_byte_gap_ms=_float_env("SERVOLINK_INTER_BYTE_GAP_MS", DEFAULT_INTER_BYTE_GAP_MS),
            latency_ms=_float_env("SERVOLINK_LATENCY_MS", 0.0) if latency else None,
        )
