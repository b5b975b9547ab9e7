# Robot geometry, workspace and interaction constants for the delta HRI rig
import logging
from dataclasses import dataclass
from typing import Final

import numpy as np
from numpy.typing import NDArray

logger = logging.getLogger(__name__)

# -----------------------------
# Typing aliases
# -----------------------------
Vec3f = NDArray[np.float64]
ImpedanceTable = NDArray[np.float64]  # shape (n,3): mass, damping, stiffness

SQRT3: Final[float] = 1.7320508075688772


# -----------------------------
# Mechanical geometry (metres)
# -----------------------------
@dataclass(frozen=True, slots=True)
class DeltaGeometry:
    """Fixed dimensions of the three-arm delta mechanism."""

    base_radius: float  # actuator radius, wB
    platform_radius: float  # end-effector radius, uP
    upper_link: float  # parallelogram (forearm) length, l
    lower_link: float  # actuated arm length, L

    @property
    def platform_side(self) -> float:
        return 3.0 * self.platform_radius / SQRT3

    @property
    def platform_half(self) -> float:
        return self.platform_radius / 2.0


geometry: Final[DeltaGeometry] = DeltaGeometry(
    base_radius=300e-3,
    platform_radius=60e-3,
    upper_link=1.0,
    lower_link=0.3,
)

# Arm azimuths about the vertical axis, in the order the MCU reports joints
arm_azimuth_rad: Final[Vec3f] = np.deg2rad(np.array([-90.0, 30.0, 150.0]))


# -----------------------------
# Workspace (metres, z positive downwards from the base plane)
# -----------------------------
@dataclass(frozen=True, slots=True)
class Workspace:
    radius: float
    z_low: float
    z_interaction: float


workspace: Final[Workspace] = Workspace(
    radius=0.25,
    z_low=0.79,
    # Halfway between 1.04 and 0.79
    z_interaction=0.92,
)


# -----------------------------
# Convergence thresholds
# -----------------------------
# Target reached when squared distance is below 0.05^2
dist_thresh_square: Final[float] = 0.0025
# Settled when squared velocity is below (0.01 m/s)^2
velocity_thresh_square: Final[float] = 0.0001


# -----------------------------
# Impedance profiles {m, b, k}
# -----------------------------
_impedance_values: ImpedanceTable = np.array(
    [
        [10.0, 60.0, 0.0],
        [0.0, 50.0, 500.0],
        [10.0, 40.0, 150.0],
    ],
    dtype=np.float64,
)

# Zero mass/damping/stiffness leaves the end-effector passive while repositioning
free_impedance: Final[tuple[float, float, float]] = (0.0, 0.0, 0.0)


@dataclass(frozen=True, slots=True)
class ImpedanceTableConfig:
    values: ImpedanceTable

    @property
    def count(self) -> int:
        return int(self.values.shape[0])

    def as_tuples(self) -> list[tuple[float, float, float]]:
        return [(float(m), float(b), float(k)) for m, b, k in self.values]


impedance: Final[ImpedanceTableConfig] = ImpedanceTableConfig(values=_impedance_values)
