"""Drive the robot toward filtered tracked positions while the game is idle."""

import logging
import math
import threading
import time
from collections.abc import Callable

from deltahri import DELTA_ROBOT
from deltahri.DELTA_ROBOT import Workspace
from deltahri.protocol.types import Position
from deltahri.utils.filters import PositionFilter

logger = logging.getLogger(__name__)


def clamp_to_workspace(x: float, y: float, z: float, ws: Workspace) -> Position:
    """Project a point into the workspace cylinder."""
    r = math.hypot(x, y)
    if r > ws.radius:
        scale = ws.radius / r
        x *= scale
        y *= scale
    lo, hi = sorted((ws.z_low, ws.z_interaction))
    z = min(max(z, lo), hi)
    return Position(x, y, z)


class TargetFollower:
    """
    Filters target candidates (e.g. a tracked head or hand) and forwards them
    as target-position commands.

    Commands are rate limited and suppressed while ``is_busy()`` returns True
    (the interaction loop owns the robot while it runs).
    """

    def __init__(
        self,
        send_target: Callable[[float, float, float], object],
        is_busy: Callable[[], bool] = lambda: False,
        position_filter: PositionFilter | None = None,
        workspace: Workspace = DELTA_ROBOT.workspace,
        min_interval: float = 0.05,
    ):
        self._send_target = send_target
        self._is_busy = is_busy
        self.filter = position_filter or PositionFilter()
        self.workspace = workspace
        self.min_interval = min_interval
        self._lock = threading.Lock()
        self._last_offer: float | None = None
        self._last_sent = -math.inf
        self.last_target: Position | None = None
        self.sent = 0

    def offer(self, x: float, y: float, z: float, timestamp: float | None = None) -> Position | None:
        """
        Feed one candidate.

        Returns:
            The commanded position, or None if nothing was sent.
        """
        now = time.monotonic() if timestamp is None else timestamp
        with self._lock:
            prev = self._last_offer
            self._last_offer = now
            if prev is None or now <= prev:
                self.filter.reset()
                rate = 1.0 / self.min_interval
            else:
                rate = 1.0 / (now - prev)
            fx, fy, fz = self.filter.filter(x, y, z, rate)
            target = clamp_to_workspace(fx, fy, fz, self.workspace)

            if self._is_busy():
                return None
            if now - self._last_sent < self.min_interval:
                return None
            self._last_sent = now
            self.last_target = target
            self.sent += 1

        logger.trace("Follow target %s", target.as_tuple())  # type: ignore[attr-defined]
        self._send_target(target.x, target.y, target.z)
        return target
