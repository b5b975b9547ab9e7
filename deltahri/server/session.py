"""
Robot session: wires the serial link, the interaction loop and the display.

The session is the surface the human controls act on: press() starts the
game or skips the current interaction, toggle_enabled() switches the motor
drivers, and offer_target() feeds tracked positions to the follower.
"""

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any

from deltahri.config import (
    DISPLAY_ENABLED,
    DISPLAY_HOST,
    DISPLAY_PORT,
    FAKE_SERIAL,
    save_com_port,
)
from deltahri.protocol.types import Position
from deltahri.server.async_logging import AsyncLogHandler
from deltahri.server.display import DisplayLink
from deltahri.server.game import GameConfig, GameLoop
from deltahri.server.transports import LinkTransport, create_transport
from deltahri.utils.follower import TargetFollower

logger = logging.getLogger("deltahri.server.session")

EnabledListener = Callable[[bool], None]


@dataclass
class SessionConfig:
    """Configuration for a robot session."""

    serial_port: str | None = None
    fake_serial: bool = FAKE_SERIAL
    connect_attempts: int | None = None
    strict_replies: bool = False
    display_enabled: bool = DISPLAY_ENABLED
    display_host: str = DISPLAY_HOST
    display_port: int = DISPLAY_PORT
    persist_port: bool = True
    game: GameConfig = field(default_factory=GameConfig)


class Session:
    """
    Owns one live serial link and the interaction loop driving it.

    Position and force telemetry from the link are fanned out to the game
    loop; enable replies update ``enabled`` and notify subscribers.
    """

    def __init__(
        self,
        config: SessionConfig | None = None,
        transport: LinkTransport | None = None,
        display: DisplayLink | None = None,
    ):
        """
        Args:
            config: Session configuration
            transport: Pre-built link (connected, not started); created from
                config on initialize() when omitted
            display: Display sender; created from config when omitted
        """
        self.config = config or SessionConfig()
        self.shutdown_event = threading.Event()
        self.transport = transport
        if display is None and self.config.display_enabled:
            display = DisplayLink(self.config.display_host, self.config.display_port)
        self.display = display
        self.game: GameLoop | None = None
        self.follower: TargetFollower | None = None
        self.enabled: bool | None = None
        self._enabled_listeners: list[EnabledListener] = []
        self._async_log = AsyncLogHandler()
        self._initialized = False
        self.running = False

    def initialize(self) -> None:
        """
        Create the link (if not injected) and the components that consume it.

        Raises:
            PortUnavailable: The robot could not be found or opened.
        """
        if self._initialized:
            return
        if self.transport is None:
            self.transport = create_transport(
                port=self.config.serial_port,
                fake=self.config.fake_serial,
                attempts=self.config.connect_attempts,
                strict=self.config.strict_replies,
            )
            if (
                self.config.persist_port
                and not self.config.fake_serial
                and self.transport.port
            ):
                save_com_port(self.transport.port)

        self.game = GameLoop(self.transport, self.display, self.config.game)
        self.transport.subscribe_positions(self.game.on_position)
        self.transport.subscribe_forces(self.game.on_force)
        self.follower = TargetFollower(
            self.transport.set_target_position,
            is_busy=self.game.is_running,
            workspace=self.config.game.workspace,
        )
        self._initialized = True
        logger.info("Session initialized on %s", self.transport.port)

    def start(self) -> None:
        """Start the link threads."""
        if self.running:
            logger.warning("Session already running")
            return
        self.initialize()
        assert self.transport is not None
        self._async_log.start()
        self.transport.start()
        self.running = True
        logger.info("Session started")

    def stop(self) -> None:
        """Stop the game, the link and the display; flush async logs."""
        logger.info("Stopping session...")
        self.running = False
        self.shutdown_event.set()
        if self.game is not None:
            self.game.stop()
        if self.transport is not None:
            self.transport.stop()
        if self.display is not None:
            self.display.close_socket()
        self._async_log.stop()
        logger.info("Session stopped")

    # ================================
    # Human controls
    # ================================
    def press(self) -> bool:
        """
        Start/skip button.

        Returns:
            True if the game loop was started, False if the press was used as
            a skip or refused because the robot is disabled.
        """
        if self.game is None:
            raise RuntimeError("Session is not initialized")
        if self.enabled is False:
            logger.warning("Robot is disabled; enable it before starting the game")
            return False
        return self.game.start()

    def request_enabled(self, enabled: bool) -> "Future[bool]":
        if self.transport is None:
            raise RuntimeError("Session is not initialized")
        logger.info("Requesting robot %s", "enable" if enabled else "disable")
        return self.transport.set_enabled(enabled, on_reply=self._on_enabled_reply)

    def toggle_enabled(self) -> "Future[bool]":
        return self.request_enabled(not self.enabled)

    def subscribe_enabled(self, listener: EnabledListener) -> None:
        self._enabled_listeners.append(listener)

    def offer_target(self, x: float, y: float, z: float) -> Position | None:
        """Feed a tracked target candidate to the follower."""
        if self.follower is None:
            return None
        return self.follower.offer(x, y, z)

    def handle_command(self, text: str) -> bool:
        if self.transport is None:
            return False
        return self.transport.handle_command(text)

    def _on_enabled_reply(self, enabled: bool) -> None:
        self.enabled = enabled
        logger.info("Robot reports %s", "enabled" if enabled else "disabled")
        for listener in list(self._enabled_listeners):
            try:
                listener(enabled)
            except Exception:
                logger.exception("Enabled listener failed")
        if not enabled and self.game is not None and self.game.is_running():
            # Reply callbacks run on the receive thread; stopping joins the game thread
            threading.Thread(
                target=self.game.stop, name="deltahri-disable", daemon=True
            ).start()

    def get_info(self) -> dict[str, Any]:
        info: dict[str, Any] = {
            "enabled": self.enabled,
            "running": self.running,
            "game_running": self.game.is_running() if self.game else False,
            "phase": self.game.phase.name if self.game else None,
            "cycles": self.game.cycles if self.game else 0,
        }
        if self.transport is not None:
            info["link"] = self.transport.get_info()
        if self.display is not None:
            info["display_sent"] = self.display.sent
            info["display_failed"] = self.display.failed
        return info
