"""
One-way line sender for the participant display.

Messages are short ASCII lines ("GStt,<index>") sent as UDP datagrams.
Delivery is best effort: a failed send is logged and forgotten.
"""

from __future__ import annotations

import logging
import socket

from deltahri.config import DISPLAY_HOST, DISPLAY_PORT

logger = logging.getLogger(__name__)

GAME_STATE_PREFIX = "GStt"
NO_TARGET = -1


def format_game_state(index: int) -> str:
    return f"{GAME_STATE_PREFIX},{index}"


class DisplayLink:
    """
    Sends game-state lines to the display.

    This class handles:
    - Socket creation
    - Best-effort line sending
    - Counting sent and failed messages
    """

    def __init__(self, host: str = DISPLAY_HOST, port: int = DISPLAY_PORT):
        """
        Initialize the display link.

        Args:
            host: Display address
            port: Display UDP port
        """
        self.host = host
        self.port = port
        self.socket: socket.socket | None = None
        self.sent = 0
        self.failed = 0

    def create_socket(self) -> bool:
        """
        Create the UDP socket.

        Returns:
            True if successful, False otherwise
        """
        try:
            self.socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            self.socket.setblocking(False)
            logger.info(f"Display link ready for {self.host}:{self.port}")
            return True
        except OSError as e:
            logger.error(f"Failed to create display socket: {e}")
            self.socket = None
            return False

    def close_socket(self) -> None:
        if self.socket:
            try:
                self.socket.close()
            except OSError as e:
                logger.error(f"Error closing display socket: {e}")
            finally:
                self.socket = None

    def send(self, line: str) -> bool:
        """Send one line. Returns False if it could not be sent."""
        if self.socket is None and not self.create_socket():
            self.failed += 1
            return False
        assert self.socket is not None
        try:
            self.socket.sendto((line + "\n").encode("ascii"), (self.host, self.port))
        except OSError as e:
            self.failed += 1
            logger.warning("Display send of %r failed: %s", line, e)
            return False
        self.sent += 1
        logger.debug("Display <- %s", line)
        return True

    def send_game_state(self, index: int) -> bool:
        return self.send(format_game_state(index))
