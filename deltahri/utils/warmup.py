"""
JIT warmup utilities.

Call warmup_jit() on startup so the first joint-angle packet is not delayed by
numba compilation. With cache=True this is fast once the cache exists.
"""

import logging
import time

import numpy as np

from deltahri import DELTA_ROBOT
from deltahri.kinematics import _arm_angle_jit, _arm_residual, _fkin_jit
from deltahri.server.transports.mock_serial import _slew_jit
from deltahri.utils.filters import _one_euro_step_jit

logger = logging.getLogger(__name__)


def warmup_jit() -> float:
    """
    Pre-compile all numba JIT functions by calling them with dummy data.

    Returns the time taken in seconds.
    """
    logger.info("Warming JIT...")
    start = time.perf_counter()
    g = DELTA_ROBOT.geometry
    wB, uP, l, L = g.base_radius, g.platform_radius, g.upper_link, g.lower_link

    # deltahri/kinematics.py
    _fkin_jit(0.0, 0.0, 0.0, wB, uP, l, L)
    _arm_residual(0.0, 0.0, 0.0, -0.8, 0.0, -1.0, wB, uP, l, L)
    _arm_angle_jit(0.0, 0.0, -0.8, 0.0, wB, uP, l, L, 8)

    # deltahri/server/transports/mock_serial.py
    dummy_3f = np.zeros(3, dtype=np.float64)
    _slew_jit(dummy_3f, np.zeros(3, dtype=np.float64), 0.1)

    # deltahri/utils/filters.py
    state = np.zeros((2, 3), dtype=np.float64)
    _one_euro_step_jit(dummy_3f, state, 30.0, 1.0, 0.5, 1.0)

    elapsed = time.perf_counter() - start
    logger.info("JIT warmup done in %.2fs", elapsed)
    return elapsed
