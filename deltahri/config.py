"""
Central configuration for deltahri tunables and shared constants.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

TRACE: int = 5
logging.addLevelName(TRACE, "TRACE")
# Add Logger.trace if missing
if not hasattr(logging.Logger, "trace"):

    def _trace(self, msg, *args, **kwargs):
        if self.isEnabledFor(TRACE):
            self._log(TRACE, msg, args, **kwargs)

    logging.Logger.trace = _trace  # type: ignore[attr-defined]
    logging.TRACE = TRACE  # type: ignore[attr-defined]

TRACE_ENABLED = str(os.getenv("DELTAHRI_TRACE", "0")).lower() in (
    "1",
    "true",
    "yes",
    "on",
)

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    s = raw.strip().lower()
    if s in ("1", "true", "yes", "on"):
        return True
    if s in ("0", "false", "no", "off"):
        return False
    return default


def _env_float_optional(name: str, default: float | None) -> float | None:
    raw = os.getenv(name)
    if raw is None:
        return default
    s = raw.strip().lower()
    if s in ("", "none", "inf", "unbounded"):
        return None
    return float(s)


# Serial link (Atmel board, CDC-ACM)
SERIAL_BAUD: int = int(os.getenv("DELTAHRI_SERIAL_BAUD", "115200"))
SERIAL_READ_TIMEOUT_S: float = float(os.getenv("DELTAHRI_READ_TIMEOUT_S", "6.0"))
SERIAL_WRITE_TIMEOUT_S: float = float(os.getenv("DELTAHRI_WRITE_TIMEOUT_S", "1.5"))
DEVICE_VID: int = int(os.getenv("DELTAHRI_DEVICE_VID", "03EB"), 16)
DEVICE_PID: int = int(os.getenv("DELTAHRI_DEVICE_PID", "6124"), 16)

# Heartbeats should arrive every second; the watchdog allows a few to go missing
HEARTBEAT_TIMEOUT_S: float = float(os.getenv("DELTAHRI_HEARTBEAT_TIMEOUT_S", "5.0"))

# Reconnect policy when the device is not present
RECONNECT_INTERVAL_S: float = float(os.getenv("DELTAHRI_RECONNECT_INTERVAL_S", "1.0"))
RECONNECT_MAX_INTERVAL_S: float = float(
    os.getenv("DELTAHRI_RECONNECT_MAX_INTERVAL_S", "30.0")
)

# Simulated microcontroller instead of real hardware
FAKE_SERIAL: bool = _env_bool("DELTAHRI_FAKE_SERIAL", False)
SIM_TICK_S: float = float(os.getenv("DELTAHRI_SIM_TICK_S", "0.02"))

# Interaction loop timing
SKIP_TIMEOUT_S: float = float(os.getenv("DELTAHRI_SKIP_TIMEOUT_S", "10.0"))
MOVEMENT_DELAY_S: float = float(os.getenv("DELTAHRI_MOVEMENT_DELAY_S", "0.5"))
# "none" keeps the skip/timeout-only behaviour, "wait" also waits for the force settle
SETTLE_POLICY: str = os.getenv("DELTAHRI_SETTLE_POLICY", "none").strip().lower()
SETTLE_TIMEOUT_S: float | None = _env_float_optional("DELTAHRI_SETTLE_TIMEOUT_S", None)
SETTLE_FORCE_N: float = float(os.getenv("DELTAHRI_SETTLE_FORCE_N", "0.5"))
SETTLE_FORCE_SAMPLES: int = int(os.getenv("DELTAHRI_SETTLE_FORCE_SAMPLES", "10"))

# Display link (one-way, best effort)
DISPLAY_HOST: str = os.getenv("DELTAHRI_DISPLAY_HOST", "127.0.0.1")
DISPLAY_PORT: int = int(os.getenv("DELTAHRI_DISPLAY_PORT", "5020"))
DISPLAY_ENABLED: bool = _env_bool("DELTAHRI_DISPLAY_ENABLED", True)

LOG_LEVEL_DEFAULT: str = "INFO"

# Last port that worked, remembered across runs
COM_PORT_FILE: str = os.getenv(
    "DELTAHRI_COM_FILE", str(Path.home() / ".deltahri" / "com_port.txt")
)


def save_com_port(port: str) -> bool:
    """Remember ``port`` for the next run. Returns False if the file cannot be written."""
    path = Path(COM_PORT_FILE)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(port.strip())
    except OSError as e:
        logger.error("Could not remember serial port in %s: %s", path, e)
        return False
    logger.info("Remembered serial port %s", port.strip())
    return True


def load_com_port() -> str | None:
    """The remembered port, or None if there is none."""
    path = Path(COM_PORT_FILE)
    try:
        port = path.read_text().strip()
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.error("Could not read remembered serial port from %s: %s", path, e)
        return None
    return port or None
