"""
Transport modules for the deltahri server.

This package provides the serial link to the robot microcontroller and a
simulated microcontroller for running without hardware.
"""

import logging

from deltahri import config as cfg

from .discovery import connect_with_retry, find_device_port, resolve_port
from .mock_serial import MockSerialPort
from .serial_transport import Command, LinkStats, LinkTransport

logger = logging.getLogger(__name__)


def is_simulation_mode() -> bool:
    return cfg._env_bool("DELTAHRI_FAKE_SERIAL", cfg.FAKE_SERIAL)


def create_transport(
    port: str | None = None,
    fake: bool | None = None,
    attempts: int | None = None,
    **kwargs,
) -> LinkTransport:
    """
    Create a connected (not yet started) link transport.

    Args:
        port: Serial port; resolved from env, com_port.txt or USB scan if omitted
        fake: Use the simulated microcontroller; defaults to DELTAHRI_FAKE_SERIAL
        attempts: Connection attempts before PortUnavailable, None to retry forever
        **kwargs: Passed to LinkTransport

    Raises:
        PortUnavailable: The device could not be opened.
    """
    transport = LinkTransport(port=port, **kwargs)
    if fake if fake is not None else is_simulation_mode():
        transport.attach(
            MockSerialPort(timeout=transport.read_timeout, geometry=transport.geometry),
            name="MOCK_SERIAL",
        )
        logger.info("Using simulated microcontroller")
        return transport

    connect_with_retry(transport, port, attempts=attempts)
    return transport


__all__ = [
    "Command",
    "LinkStats",
    "LinkTransport",
    "MockSerialPort",
    "connect_with_retry",
    "create_transport",
    "find_device_port",
    "is_simulation_mode",
    "resolve_port",
]
