"""
Interaction state machine.

One control thread cycles through the phases of the experiment:

  Descend -> Randomize -> Engage -> Approach -> Wait -> Descend ...

Motion phases block in move_to_point() on the telemetry queue until the
end-effector is close to the target and has stopped moving. stop() wakes
every blocking wait by putting a Cancel message on the queue and setting the
skip and settled events, then joins the thread.
"""

import logging
import queue
import threading
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Protocol

import numpy as np

from deltahri import DELTA_ROBOT
from deltahri.config import (
    MOVEMENT_DELAY_S,
    SETTLE_FORCE_N,
    SETTLE_FORCE_SAMPLES,
    SETTLE_POLICY,
    SETTLE_TIMEOUT_S,
    SKIP_TIMEOUT_S,
)
from deltahri.DELTA_ROBOT import Workspace
from deltahri.protocol.types import (
    Cancel,
    ForceSample,
    ImpedanceSetting,
    Phase,
    Position,
    PositionSample,
    SettlePolicy,
    Telemetry,
)

logger = logging.getLogger("deltahri.server.game")

PhaseListener = Callable[[Phase, bool], None]


class RobotLink(Protocol):
    """The commands the interaction loop issues."""

    def set_target_position(self, x: float, y: float, z: float) -> "Future[Any]": ...

    def set_impedance(self, setting: ImpedanceSetting) -> "Future[Any]": ...


class GameDisplay(Protocol):
    def send_game_state(self, index: int) -> bool: ...


def _default_impedances() -> tuple[ImpedanceSetting, ...]:
    return tuple(ImpedanceSetting(*row) for row in DELTA_ROBOT.impedance.as_tuples())


@dataclass
class GameConfig:
    """Interaction loop tunables."""

    workspace: Workspace = DELTA_ROBOT.workspace
    impedances: tuple[ImpedanceSetting, ...] = field(default_factory=_default_impedances)
    free_impedance: ImpedanceSetting = field(
        default_factory=lambda: ImpedanceSetting(*DELTA_ROBOT.free_impedance)
    )
    dist_thresh_square: float = DELTA_ROBOT.dist_thresh_square
    velocity_thresh_square: float = DELTA_ROBOT.velocity_thresh_square
    skip_timeout: float = SKIP_TIMEOUT_S
    movement_delay: float = MOVEMENT_DELAY_S
    settle_policy: SettlePolicy = field(
        default_factory=lambda: SettlePolicy.parse(SETTLE_POLICY)
    )
    settle_timeout: float | None = SETTLE_TIMEOUT_S
    settle_force: float = SETTLE_FORCE_N
    settle_samples: int = SETTLE_FORCE_SAMPLES
    seed: int | None = None
    # Approach height per impedance profile; all at the workspace interaction z if omitted
    interaction_heights: tuple[float, ...] = ()

    def __post_init__(self) -> None:
        if not self.impedances:
            raise ValueError("at least one impedance profile is required")
        if not self.interaction_heights:
            self.interaction_heights = (self.workspace.z_interaction,) * len(self.impedances)
        else:
            self.interaction_heights = tuple(float(z) for z in self.interaction_heights)
        if len(self.interaction_heights) != len(self.impedances):
            raise ValueError(
                f"{len(self.interaction_heights)} interaction heights given "
                f"for {len(self.impedances)} impedance profiles"
            )
        self.settle_policy = SettlePolicy.parse(self.settle_policy)


def squared_velocity(prev: PositionSample, cur: PositionSample) -> float:
    """Squared speed between two samples; a repeated timestamp counts as still
    only if the position did not change."""
    disp = prev.position.distance_squared(cur.position)
    dt = cur.timestamp - prev.timestamp
    if dt <= 0.0:
        return 0.0 if disp == 0.0 else float("inf")
    return disp / (dt * dt)


class GameLoop:
    """
    Sequences the robot through the interaction phases on a dedicated thread.

    Position telemetry arrives through on_position() (called on the receive
    thread) and force telemetry through on_force(). All robot commands are
    issued from the control thread.
    """

    def __init__(
        self,
        link: RobotLink,
        display: GameDisplay | None = None,
        config: GameConfig | None = None,
    ):
        self.link = link
        self.display = display
        self.config = config or GameConfig()

        self._telemetry: queue.Queue[Telemetry] = queue.Queue()
        self._cancel = threading.Event()
        self._skip = threading.Event()
        self._settled = threading.Event()
        self._accepting = threading.Event()
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None

        self._rng = np.random.default_rng(self.config.seed)
        self._impedance_index = -1
        self._last_sample: PositionSample | None = None
        self._quiet_force_samples = 0

        self.phase = Phase.IDLE
        self.interactable = False
        self.cycles = 0
        self._listeners: list[PhaseListener] = []

    # ================================
    # Control surface
    # ================================
    def start(self) -> bool:
        """
        Start the loop, or request a skip if it is already running.

        Returns:
            True if a new control thread was started.
        """
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                self.skip()
                return False
            self._cancel.clear()
            self._skip.clear()
            self._settled.clear()
            self._telemetry = queue.Queue()
            self._accepting.set()
            self._thread = threading.Thread(
                target=self._run, name="deltahri-game", daemon=True
            )
            self._thread.start()
            logger.info("Game loop started")
            return True

    def skip(self) -> None:
        """End the current Wait phase early."""
        if self.phase is Phase.WAIT:
            logger.info("Interaction skipped")
            self._skip.set()
        else:
            logger.debug("Skip ignored in phase %s", self.phase.name)

    def stop(self, timeout: float | None = 5.0) -> None:
        """Cancel every wait, join the control thread and reset the telemetry queue."""
        with self._lock:
            self._cancel.set()
            self._accepting.clear()
            self._skip.set()
            self._settled.set()
            thread = self._thread
            if thread is not None and thread.is_alive():
                self._telemetry.put(Cancel())
                thread.join(timeout)
                if thread.is_alive():
                    logger.warning("Game loop did not stop within %.1fs", timeout)
            self._thread = None
            self._telemetry = queue.Queue()
            was_running = thread is not None
        if was_running:
            if self.display is not None:
                self.display.send_game_state(-1)
            self._set_phase(Phase.STOPPED, interactable=False)
            logger.info("Game loop stopped")

    def is_running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def add_phase_listener(self, listener: PhaseListener) -> None:
        self._listeners.append(listener)

    def remove_phase_listener(self, listener: PhaseListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def impedance_index(self) -> int:
        return self._impedance_index

    # ================================
    # Telemetry inputs
    # ================================
    def on_position(self, sample: PositionSample) -> None:
        """Queue a position sample; dropped while the loop is not running."""
        if self._accepting.is_set():
            self._telemetry.put(sample)

    def on_force(self, sample: ForceSample) -> None:
        """Raise the settled signal once the force stays low during Wait."""
        if self.phase is not Phase.WAIT:
            return
        if sample.magnitude < self.config.settle_force:
            self._quiet_force_samples += 1
            if self._quiet_force_samples >= self.config.settle_samples:
                self._settled.set()
        else:
            self._quiet_force_samples = 0

    # ================================
    # Motion
    # ================================
    def move_to_point(self, target: Position) -> bool:
        """
        Command a target and block until the robot has reached it.

        Converged when the squared distance to the target and the squared
        velocity between consecutive samples are both below their thresholds.

        Returns:
            True on convergence, False if cancelled.
        """
        self.link.set_target_position(target.x, target.y, target.z)
        while True:
            msg = self._telemetry.get()
            if isinstance(msg, Cancel) or self._cancel.is_set():
                return False
            prev = self._last_sample
            self._last_sample = msg
            if prev is None:
                continue
            dist_sq = target.distance_squared(msg.position)
            vel_sq = squared_velocity(prev, msg)
            logger.trace(  # type: ignore[attr-defined]
                "dist^2=%.5f vel^2=%.6f", dist_sq, vel_sq
            )
            if (
                dist_sq < self.config.dist_thresh_square
                and vel_sq < self.config.velocity_thresh_square
            ):
                return True

    def random_point(self) -> tuple[float, float]:
        """Uniform sample from the workspace disc."""
        r = np.sqrt(self._rng.random()) * self.config.workspace.radius
        angle = self._rng.random() * 2.0 * np.pi
        return float(r * np.cos(angle)), float(r * np.sin(angle))

    # ================================
    # Control thread
    # ================================
    def _run(self) -> None:
        try:
            self._run_phases()
        except Exception:
            logger.exception("Game loop failed")
        finally:
            self._accepting.clear()
            self.interactable = False

    def _run_phases(self) -> None:
        first = self._telemetry.get()
        if isinstance(first, Cancel) or self._cancel.is_set():
            return
        self._last_sample = first
        x, y = first.position.x, first.position.y
        ws = self.config.workspace

        while not self._cancel.is_set():
            # Passive end-effector while repositioning
            self._set_phase(Phase.DESCEND, interactable=False)
            self.link.set_impedance(self.config.free_impedance)
            if not self.move_to_point(Position(x, y, ws.z_low)):
                return
            if self._cancel.wait(self.config.movement_delay):
                return

            self._set_phase(Phase.RANDOMIZE)
            x, y = self.random_point()
            if not self.move_to_point(Position(x, y, ws.z_low)):
                return
            if self._cancel.wait(self.config.movement_delay):
                return

            self._set_phase(Phase.ENGAGE)
            self._impedance_index = (self._impedance_index + 1) % len(self.config.impedances)
            setting = self.config.impedances[self._impedance_index]
            logger.info("Impedance profile %d: %s", self._impedance_index, setting.as_tuple())
            self.link.set_impedance(setting)
            if self.display is not None:
                self.display.send_game_state(self._impedance_index)
            self._set_phase(Phase.ENGAGE, interactable=True)

            self._set_phase(Phase.APPROACH)
            height = self.config.interaction_heights[self._impedance_index]
            if not self.move_to_point(Position(x, y, height)):
                return

            self._wait_for_interaction()
            if self._cancel.is_set():
                return
            self.cycles += 1

    def _wait_for_interaction(self) -> None:
        # Drop skips and settle signals raised after the previous Wait ended
        self._skip.clear()
        self._settled.clear()
        self._quiet_force_samples = 0
        if self._cancel.is_set():
            return
        self._set_phase(Phase.WAIT)
        if not self._skip.wait(self.config.skip_timeout):
            logger.debug("Interaction timed out after %.1fs", self.config.skip_timeout)
        if self.config.settle_policy is SettlePolicy.WAIT and not self._cancel.is_set():
            if not self._settled.wait(self.config.settle_timeout):
                logger.debug("Settle wait timed out")
        self._set_phase(Phase.WAIT, interactable=False)

    def _set_phase(self, phase: Phase, interactable: bool | None = None) -> None:
        if interactable is not None:
            self.interactable = interactable
        changed = phase is not self.phase
        self.phase = phase
        if changed:
            logger.debug("Phase -> %s", phase.name)
        for listener in list(self._listeners):
            try:
                listener(phase, self.interactable)
            except Exception:
                logger.exception("Phase listener failed")
