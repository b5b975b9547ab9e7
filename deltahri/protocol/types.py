"""
Type definitions for the deltahri protocol and control loop.

Defines enums and immutable value types passed between the link threads and
the interaction loop.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Union


class Phase(Enum):
    """Interaction loop phase."""

    IDLE = 0
    DESCEND = 1
    RANDOMIZE = 2
    ENGAGE = 3
    APPROACH = 4
    WAIT = 5
    STOPPED = 6


class SettlePolicy(Enum):
    """What the Wait phase does after the skip/timeout wait."""

    NONE = "none"  # skip or timeout ends the phase
    WAIT = "wait"  # additionally wait for the interaction-settled signal

    @classmethod
    def parse(cls, value: "str | SettlePolicy") -> "SettlePolicy":
        if isinstance(value, SettlePolicy):
            return value
        return cls(value.strip().lower())


@dataclass(slots=True, frozen=True)
class JointAngles:
    """Actuated joint angles in radians, in MCU order."""

    theta1: float
    theta2: float
    theta3: float

    def as_tuple(self) -> tuple[float, float, float]:
        return (self.theta1, self.theta2, self.theta3)


@dataclass(slots=True, frozen=True)
class Position:
    """End-effector position relative to the robot centre (m, z positive down)."""

    x: float
    y: float
    z: float

    def as_tuple(self) -> tuple[float, float, float]:
        return (self.x, self.y, self.z)

    def distance_squared(self, other: "Position") -> float:
        dx = self.x - other.x
        dy = self.y - other.y
        dz = self.z - other.z
        return dx * dx + dy * dy + dz * dz


@dataclass(slots=True, frozen=True)
class ImpedanceSetting:
    """Virtual impedance rendered by the low-level controller {m, b, k}."""

    mass: float
    damping: float
    stiffness: float

    def as_tuple(self) -> tuple[float, float, float]:
        return (self.mass, self.damping, self.stiffness)


@dataclass(slots=True, frozen=True)
class PositionSample:
    """A position telemetry event, stamped with the monotonic receive time."""

    position: Position
    timestamp: float


@dataclass(slots=True, frozen=True)
class Cancel:
    """Telemetry channel message that wakes a blocked consumer for shutdown."""

    reason: str = "stop"


# Messages carried by the telemetry queue
Telemetry = Union[PositionSample, Cancel]


@dataclass(slots=True, frozen=True)
class ForceSample:
    """Interaction force reported by the end-effector sensor (N)."""

    fx: float
    fy: float
    fz: float
    timestamp: float

    @property
    def magnitude(self) -> float:
        return math.sqrt(self.fx * self.fx + self.fy * self.fy + self.fz * self.fz)
