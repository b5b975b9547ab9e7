"""
Closed-form kinematics for the three-arm delta robot.

Joint angles come from the MCU in radians; positions are in metres relative to
the centre of the base plane with z positive downwards (the platform hangs
below the actuators, so reachable z values are positive).
"""

import logging
import math

import numba  # type: ignore[import-untyped]

from deltahri import DELTA_ROBOT
from deltahri.DELTA_ROBOT import SQRT3, DeltaGeometry
from deltahri.protocol.types import JointAngles, Position

logger = logging.getLogger(__name__)


@numba.njit(cache=True)
def _fkin_jit(
    th1: float,
    th2: float,
    th3: float,
    wB: float,
    uP: float,
    l: float,  # noqa: E741
    L: float,
) -> tuple[bool, float, float, float]:
    """JIT-compiled forward kinematics. Returns (reachable, x, y, z)."""
    sP = 3.0 * uP / SQRT3
    wP = uP / 2.0

    y1 = -wB - L * math.cos(th1) + uP
    z1 = L * math.sin(th1)

    x2 = 0.5 * (SQRT3 * (wB + L * math.cos(th2)) - sP)
    y2 = 0.5 * (wB + L * math.cos(th2)) - wP
    z2 = L * math.sin(th2)

    x3 = 0.5 * (-SQRT3 * (wB + L * math.cos(th3)) + sP)
    y3 = 0.5 * (wB + L * math.cos(th3)) - wP
    z3 = L * math.sin(th3)

    dnm = (y2 - y1) * x3 - (y3 - y1) * x2
    if dnm == 0.0:
        return False, 0.0, 0.0, 0.0

    w1 = y1 * y1 + z1 * z1
    w2 = x2 * x2 + y2 * y2 + z2 * z2
    w3 = x3 * x3 + y3 * y3 + z3 * z3

    a1 = (z2 - z1) * (y3 - y1) - (z3 - z1) * (y2 - y1)
    b1 = -((w2 - w1) * (y3 - y1) - (w3 - w1) * (y2 - y1)) / 2.0

    a2 = -(z2 - z1) * x3 + (z3 - z1) * x2
    b2 = ((w2 - w1) * x3 - (w3 - w1) * x2) / 2.0

    a = a1 * a1 + a2 * a2 + dnm * dnm
    b = 2.0 * (a1 * b1 + a2 * (b2 - y1 * dnm) - z1 * dnm * dnm)
    c = (b2 - y1 * dnm) * (b2 - y1 * dnm) + b1 * b1 + dnm * dnm * (z1 * z1 - l * l)

    d = b * b - 4.0 * a * c
    if d < 0.0:
        return False, 0.0, 0.0, 0.0

    # Lower assembly mode, reported with z positive downwards
    z = 0.5 * (b + math.sqrt(d)) / a
    x = (-a1 * z + b1) / dnm
    y = (-a2 * z + b2) / dnm
    return True, x, y, z


@numba.njit(cache=True)
def _arm_residual(
    theta: float,
    px: float,
    py: float,
    pz: float,
    cos_phi: float,
    sin_phi: float,
    wB: float,
    uP: float,
    l: float,  # noqa: E741
    L: float,
) -> float:
    """Squared distance from an elbow to the platform point minus l^2."""
    r = wB + L * math.cos(theta) - uP
    dx = px - r * cos_phi
    dy = py - r * sin_phi
    dz = pz - L * math.sin(theta)
    return dx * dx + dy * dy + dz * dz - l * l


@numba.njit(cache=True)
def _arm_angle_jit(
    px: float,
    py: float,
    pz: float,
    phi: float,
    wB: float,
    uP: float,
    l: float,  # noqa: E741
    L: float,
    steps: int,
) -> tuple[bool, float]:
    """Find the first arm angle in [-pi/2, pi/2] that reaches the point (bisection)."""
    cos_phi = math.cos(phi)
    sin_phi = math.sin(phi)
    lo = -0.5 * math.pi
    step = math.pi / steps
    f_lo = _arm_residual(lo, px, py, pz, cos_phi, sin_phi, wB, uP, l, L)
    for i in range(1, steps + 1):
        hi = -0.5 * math.pi + i * step
        f_hi = _arm_residual(hi, px, py, pz, cos_phi, sin_phi, wB, uP, l, L)
        if f_lo == 0.0:
            return True, lo
        if (f_lo < 0.0) != (f_hi < 0.0):
            for _ in range(60):
                mid = 0.5 * (lo + hi)
                f_mid = _arm_residual(mid, px, py, pz, cos_phi, sin_phi, wB, uP, l, L)
                if (f_mid < 0.0) == (f_lo < 0.0):
                    lo = mid
                    f_lo = f_mid
                else:
                    hi = mid
            return True, 0.5 * (lo + hi)
        lo = hi
        f_lo = f_hi
    return False, 0.0


def solve(
    th1: float,
    th2: float,
    th3: float,
    geom: DeltaGeometry = DELTA_ROBOT.geometry,
) -> Position | None:
    """
    Forward kinematics: joint angles to end-effector position.

    Args:
        th1, th2, th3: Actuated joint angles in radians (MCU order)
        geom: Mechanism dimensions

    Returns:
        Position of the platform centre, or None if the three constraint
        spheres have no real intersection.
    """
    ok, x, y, z = _fkin_jit(
        float(th1),
        float(th2),
        float(th3),
        geom.base_radius,
        geom.platform_radius,
        geom.upper_link,
        geom.lower_link,
    )
    if not ok:
        return None
    return Position(x, y, z)


def solve_angles(
    angles: JointAngles, geom: DeltaGeometry = DELTA_ROBOT.geometry
) -> Position | None:
    """Forward kinematics for a JointAngles value."""
    return solve(angles.theta1, angles.theta2, angles.theta3, geom)


def solve_inverse(
    x: float,
    y: float,
    z: float,
    geom: DeltaGeometry = DELTA_ROBOT.geometry,
    steps: int = 360,
) -> JointAngles | None:
    """
    Inverse kinematics used by the simulated microcontroller.

    Each arm is solved independently by scanning [-pi/2, pi/2] for the first
    sign change of the elbow-to-platform residual and refining it by bisection.

    Returns:
        JointAngles, or None if any arm cannot reach the point.
    """
    thetas = []
    for phi in DELTA_ROBOT.arm_azimuth_rad:
        ok, theta = _arm_angle_jit(
            float(x),
            float(y),
            -float(z),
            float(phi),
            geom.base_radius,
            geom.platform_radius,
            geom.upper_link,
            geom.lower_link,
            steps,
        )
        if not ok:
            return None
        thetas.append(theta)
    return JointAngles(thetas[0], thetas[1], thetas[2])
