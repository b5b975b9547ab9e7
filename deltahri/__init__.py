"""
deltahri Python Package

Control core for a delta-robot haptic human-robot-interaction experiment.

Key components:
- kinematics.solve: joint angles to end-effector position
- protocol.wire: serial frame codec for the robot microcontroller
- server.transports.LinkTransport: serial link with reply correlation
- server.game.GameLoop: the interaction state machine
- server.session.Session: wires link, game loop and display together
"""

from . import config  # registers the TRACE log level
from . import DELTA_ROBOT
from ._version import __version__
from .errors import (
    Cancelled,
    DeltaHRIError,
    HeartbeatMissed,
    MalformedPacket,
    PortUnavailable,
    ProtocolDesync,
    ReadTimeout,
    WriteTimeout,
)
from .kinematics import solve, solve_inverse
from .protocol.types import JointAngles, Phase, Position, PositionSample

__all__ = [
    "__version__",
    "config",
    "DELTA_ROBOT",
    "solve",
    "solve_inverse",
    "JointAngles",
    "Phase",
    "Position",
    "PositionSample",
    "DeltaHRIError",
    "PortUnavailable",
    "WriteTimeout",
    "ReadTimeout",
    "MalformedPacket",
    "HeartbeatMissed",
    "ProtocolDesync",
    "Cancelled",
]
