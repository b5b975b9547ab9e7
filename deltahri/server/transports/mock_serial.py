"""
Simulated delta robot microcontroller.

MockSerialPort looks like an open ``serial.Serial`` to the link transport
(``write``, ``read_until``, ``cancel_read``, ``close``) and behaves like the
firmware at the frame level:
- every synchronous command is answered in order with an echo reply
- a heartbeat line is emitted once per second
- joint angles are streamed as unsolicited packets, slewing toward the
  inverse kinematics of the last target position
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field

import numpy as np
from numba import njit  # type: ignore[import-untyped]

from deltahri import DELTA_ROBOT, kinematics
from deltahri.config import SERIAL_READ_TIMEOUT_S, SIM_TICK_S
from deltahri.DELTA_ROBOT import DeltaGeometry
from deltahri.errors import MalformedPacket
from deltahri.protocol.types import ImpedanceSetting, JointAngles
from deltahri.protocol.wire import (
    DEFAULT_TAG,
    HEARTBEAT,
    LINE_TERMINATOR,
    AsyncId,
    CommandId,
    decode,
    encode,
    pack_enable,
    pack_vec3,
    unpack_vec3,
)

logger = logging.getLogger(__name__)


@njit(cache=True)
def _slew_jit(angles: np.ndarray, target: np.ndarray, max_step: float) -> bool:
    """Move each joint toward its target by at most max_step. Returns True if moved."""
    moved = False
    for i in range(3):
        err = target[i] - angles[i]
        if err > max_step:
            err = max_step
        elif err < -max_step:
            err = -max_step
        if err != 0.0:
            angles[i] += err
            moved = True
    return moved


def _home_angles(geom: DeltaGeometry) -> np.ndarray:
    home = kinematics.solve_inverse(0.0, 0.0, DELTA_ROBOT.workspace.z_low, geom)
    if home is None:
        return np.zeros((3,), dtype=np.float64)
    return np.array(home.as_tuple(), dtype=np.float64)


@dataclass
class MockRobotState:
    """Internal state of the simulated robot."""

    angles: np.ndarray = field(default_factory=lambda: np.zeros((3,), dtype=np.float64))
    target_angles: np.ndarray = field(
        default_factory=lambda: np.zeros((3,), dtype=np.float64)
    )
    enabled: bool = False
    impedance: ImpedanceSetting = field(
        default_factory=lambda: ImpedanceSetting(*DELTA_ROBOT.free_impedance)
    )
    force: tuple[float, float, float] = (0.0, 0.0, 0.0)


class MockSerialPort:
    """
    Serial port stand-in backed by a simulated microcontroller.

    The simulation advances inside ``read_until`` on the reader's thread, one
    tick at a time, so no extra thread is needed.
    """

    def __init__(
        self,
        port: str = "MOCK_SERIAL",
        timeout: float | None = SERIAL_READ_TIMEOUT_S,
        tick_s: float = SIM_TICK_S,
        heartbeat_interval: float = 1.0,
        slew_rate: float = 1.5,
        stream_angles: bool = True,
        stream_forces: bool = False,
        geometry: DeltaGeometry = DELTA_ROBOT.geometry,
    ):
        """
        Args:
            port: Name reported in logs
            timeout: Seconds read_until may block without producing a line
            tick_s: Simulation period
            heartbeat_interval: Seconds between heartbeat lines (<=0 disables)
            slew_rate: Joint speed toward the target (rad/s)
            stream_angles: Emit unsolicited joint-angle packets every tick
            stream_forces: Emit unsolicited force packets every tick
            geometry: Mechanism dimensions used for the inverse kinematics
        """
        self.port = port
        self.name = port
        self.timeout = timeout
        self.tick_s = tick_s
        self.heartbeat_interval = heartbeat_interval
        self.slew_rate = slew_rate
        self.stream_angles = stream_angles
        self.stream_forces = stream_forces
        self.geometry = geometry

        self.state = MockRobotState()
        home = _home_angles(geometry)
        self.state.angles[:] = home
        self.state.target_angles[:] = home

        self.is_open = True
        self._cond = threading.Condition()
        self._lines: deque[bytes] = deque()
        self._cancelled = False
        self._last_tick = time.monotonic()
        self._last_heartbeat = self._last_tick

        # Host commands received, in order, for inspection
        self.received: list[tuple[int, bytes]] = []
        self.writes = 0

        logger.info("MockSerialPort initialized - simulation mode active")

    # ================================
    # serial.Serial surface
    # ================================
    def write(self, data: bytes) -> int:
        if not self.is_open:
            raise OSError("mock serial port is closed")
        self.writes += 1
        for line in bytes(data).split(LINE_TERMINATOR):
            if line:
                self._handle_line(line)
        return len(data)

    def read_until(self, expected: bytes = LINE_TERMINATOR, size: int | None = None) -> bytes:
        deadline = None if self.timeout is None else time.monotonic() + self.timeout
        with self._cond:
            while True:
                if not self.is_open or self._cancelled:
                    self._cancelled = False
                    return b""
                if self._lines:
                    return self._lines.popleft()
                now = time.monotonic()
                if now - self._last_tick >= self.tick_s:
                    self._tick(now)
                    continue
                wait = self.tick_s - (now - self._last_tick)
                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        return b""
                    wait = min(wait, remaining)
                self._cond.wait(wait)

    def cancel_read(self) -> None:
        with self._cond:
            self._cancelled = True
            self._cond.notify_all()

    def close(self) -> None:
        with self._cond:
            self.is_open = False
            self._cond.notify_all()

    def reset_input_buffer(self) -> None:
        with self._cond:
            self._lines.clear()

    def reset_output_buffer(self) -> None:
        pass

    @property
    def in_waiting(self) -> int:
        with self._cond:
            return sum(len(line) for line in self._lines)

    # ================================
    # Test hooks
    # ================================
    def inject(self, frame: bytes) -> None:
        """Queue a raw frame (without terminator) for the reader."""
        with self._cond:
            self._lines.append(bytes(frame) + LINE_TERMINATOR)
            self._cond.notify_all()

    def set_force(self, fx: float, fy: float, fz: float) -> None:
        self.state.force = (fx, fy, fz)

    def current_angles(self) -> JointAngles:
        a = self.state.angles
        return JointAngles(float(a[0]), float(a[1]), float(a[2]))

    # ================================
    # Firmware behaviour
    # ================================
    def _emit(self, frame: bytes) -> None:
        self._lines.append(frame + LINE_TERMINATOR)
        self._cond.notify_all()

    def _tick(self, now: float) -> None:
        dt = now - self._last_tick
        self._last_tick = now
        _slew_jit(self.state.angles, self.state.target_angles, self.slew_rate * dt)

        if self.heartbeat_interval > 0 and now - self._last_heartbeat >= self.heartbeat_interval:
            self._last_heartbeat = now
            self._emit(HEARTBEAT)
        if self.stream_angles:
            a = self.state.angles
            self._emit(
                encode(
                    DEFAULT_TAG,
                    AsyncId.JOINT_ANGLES,
                    pack_vec3(float(a[0]), float(a[1]), float(a[2])),
                    synchronous=False,
                )
            )
        if self.stream_forces:
            self._emit(encode(DEFAULT_TAG, AsyncId.FORCE, pack_vec3(*self.state.force), synchronous=False))

    def _handle_line(self, line: bytes) -> None:
        try:
            packet = decode(line)
        except MalformedPacket as e:
            logger.warning("Mock MCU dropped malformed frame: %s", e)
            return
        with self._cond:
            self.received.append((packet.id, packet.payload))
            reply = self._execute(packet.id, packet.payload)
            if reply is not None and packet.synchronous:
                self._emit(encode(packet.tag, packet.id, reply))

    def _execute(self, packet_id: int, payload: bytes) -> bytes | None:
        """Apply a host command. Returns the reply payload, or None for no reply."""
        match packet_id:
            case CommandId.SET_TARGET_POSITION | CommandId.SET_TARGET_FORCE:
                try:
                    x, y, z = unpack_vec3(payload[:12])
                except MalformedPacket as e:
                    logger.warning("Mock MCU: bad target payload: %s", e)
                    return payload
                angles = kinematics.solve_inverse(x, y, z, self.geometry)
                if angles is None:
                    logger.debug("Mock MCU: target (%.3f, %.3f, %.3f) unreachable", x, y, z)
                else:
                    self.state.target_angles[:] = angles.as_tuple()
                return payload
            case CommandId.SET_IMPEDANCE:
                try:
                    self.state.impedance = ImpedanceSetting(*unpack_vec3(payload))
                except MalformedPacket as e:
                    logger.warning("Mock MCU: bad impedance payload: %s", e)
                return payload
            case CommandId.ENABLE:
                self.state.enabled = bool(payload[:1] and payload[0])
                return pack_enable(self.state.enabled)
            case CommandId.RESET:
                home = _home_angles(self.geometry)
                self.state = MockRobotState()
                self.state.angles[:] = home
                self.state.target_angles[:] = home
                logger.info("Mock MCU reset")
                return None
            case _:
                self._emit(
                    encode(
                        DEFAULT_TAG,
                        AsyncId.PRINT,
                        f"unknown command {chr(packet_id)}".encode("cp437", errors="replace"),
                        synchronous=False,
                    )
                )
                return b""
