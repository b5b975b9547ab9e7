"""Locate the robot's serial port and open it with retries."""

import logging
import os
import threading
import time

from serial.tools import list_ports

from deltahri.config import (
    DEVICE_PID,
    DEVICE_VID,
    RECONNECT_INTERVAL_S,
    RECONNECT_MAX_INTERVAL_S,
    load_com_port,
)
from deltahri.errors import PortUnavailable
from deltahri.server.transports.serial_transport import LinkTransport

logger = logging.getLogger(__name__)


def find_device_port(vid: int = DEVICE_VID, pid: int = DEVICE_PID) -> str | None:
    """
    Find the first serial port whose USB ids match the robot board.

    Returns:
        Device name, or None if no matching port is present.
    """
    for info in list_ports.comports():
        if info.vid == vid and info.pid == pid:
            logger.debug("Found device %04X:%04X on %s", vid, pid, info.device)
            return info.device
    return None


def resolve_port(port: str | None = None) -> str | None:
    """
    Resolve which port to open.

    Priority:
      1) Explicit port argument
      2) DELTAHRI_COM_PORT or DELTAHRI_SERIAL
      3) The port remembered from the last run
      4) USB VID/PID scan
    """
    if port:
        return port
    for name in ("DELTAHRI_COM_PORT", "DELTAHRI_SERIAL"):
        env_port = (os.getenv(name) or "").strip()
        if env_port:
            return env_port
    return load_com_port() or find_device_port()


def connect_with_retry(
    transport: LinkTransport,
    port: str | None = None,
    attempts: int | None = None,
    interval: float = RECONNECT_INTERVAL_S,
    max_interval: float = RECONNECT_MAX_INTERVAL_S,
    stop_event: threading.Event | None = None,
) -> str:
    """
    Connect the transport, retrying with exponential backoff.

    The first failure is logged at WARNING; later ones at DEBUG.

    Args:
        transport: Link to connect
        port: Explicit port; resolved on every attempt when omitted
        attempts: Maximum attempts, None for unlimited
        interval: Initial delay between attempts
        max_interval: Delay cap
        stop_event: Abort the retry loop when set

    Returns:
        The port that was opened.

    Raises:
        PortUnavailable: Attempts exhausted, or stop_event set.
    """
    delay = interval
    attempt = 0
    while True:
        attempt += 1
        candidate = resolve_port(port)
        if candidate and transport.connect(candidate):
            if attempt > 1:
                logger.info("Serial connected to %s after %d attempts", candidate, attempt)
            return candidate

        log_level = logging.WARNING if attempt == 1 else logging.DEBUG
        if candidate:
            logger.log(log_level, "Serial port %s unavailable, retrying in %.1fs", candidate, delay)
        else:
            logger.log(
                log_level,
                "No robot found (USB %04X:%04X), retrying in %.1fs",
                DEVICE_VID,
                DEVICE_PID,
                delay,
            )

        if attempts is not None and attempt >= attempts:
            raise PortUnavailable(
                f"could not open serial port {candidate or '(none found)'} "
                f"after {attempt} attempts"
            )
        if stop_event is not None:
            if stop_event.wait(delay):
                raise PortUnavailable("connect aborted")
        else:
            time.sleep(delay)
        delay = min(delay * 2.0, max_interval)
