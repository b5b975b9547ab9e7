"""
Smoothing filters for noisy tracked positions.

The One-Euro filter is a first-order low-pass whose cutoff rises with the
signal's speed: slow movements are smoothed heavily, fast ones pass with
little lag.
"""

import math

import numpy as np
from numba import njit  # type: ignore[import-untyped]

DERIVATIVE_CUTOFF_HZ = 1.0


def smoothing_alpha(rate: float, cutoff: float) -> float:
    """Exponential smoothing factor for a sample rate (Hz) and cutoff (Hz)."""
    tau = 1.0 / (2.0 * math.pi * cutoff)
    te = 1.0 / rate
    return 1.0 / (1.0 + tau / te)


class LowpassFilter:
    def __init__(self):
        self._first = True
        self._last = 0.0

    def last(self) -> float:
        return self._last

    def reset(self) -> None:
        self._first = True
        self._last = 0.0

    def filter(self, x: float, alpha: float) -> float:
        if self._first:
            self._first = False
            value = x
        else:
            value = alpha * x + (1.0 - alpha) * self._last
        self._last = value
        return value


class OneEuroFilter:
    """Scalar One-Euro filter."""

    def __init__(
        self,
        min_cutoff: float,
        beta: float,
        d_cutoff: float = DERIVATIVE_CUTOFF_HZ,
    ):
        """
        Args:
            min_cutoff: Cutoff (Hz) when the signal is still
            beta: Cutoff increase per unit of filtered speed
            d_cutoff: Cutoff (Hz) for the speed estimate
        """
        if min_cutoff <= 0 or d_cutoff <= 0:
            raise ValueError("cutoff frequencies must be positive")
        self.min_cutoff = min_cutoff
        self.beta = beta
        self.d_cutoff = d_cutoff
        self._first = True
        self._x = LowpassFilter()
        self._dx = LowpassFilter()

    def reset(self) -> None:
        self._first = True
        self._x.reset()
        self._dx.reset()

    def filter(self, x: float, rate: float) -> float:
        """Filter one sample taken at ``rate`` Hz."""
        if rate <= 0:
            raise ValueError("rate must be positive")
        if self._first:
            self._first = False
            dx = 0.0
        else:
            dx = (x - self._x.last()) * rate
        edx = self._dx.filter(dx, smoothing_alpha(rate, self.d_cutoff))
        cutoff = self.min_cutoff + self.beta * abs(edx)
        return self._x.filter(x, smoothing_alpha(rate, cutoff))


@njit(cache=True)
def _one_euro_step_jit(
    x: np.ndarray,
    state: np.ndarray,
    rate: float,
    min_cutoff: float,
    beta: float,
    d_cutoff: float,
) -> None:
    """
    In-place One-Euro step over each element of x.

    state rows: 0 = filtered value, 1 = filtered derivative. x is overwritten
    with the filtered values.
    """
    te = 1.0 / rate
    tau_d = 1.0 / (2.0 * math.pi * d_cutoff)
    a_d = 1.0 / (1.0 + tau_d / te)
    for i in range(x.shape[0]):
        dx = (x[i] - state[0, i]) * rate
        edx = a_d * dx + (1.0 - a_d) * state[1, i]
        cutoff = min_cutoff + beta * abs(edx)
        tau = 1.0 / (2.0 * math.pi * cutoff)
        a = 1.0 / (1.0 + tau / te)
        value = a * x[i] + (1.0 - a) * state[0, i]
        state[0, i] = value
        state[1, i] = edx
        x[i] = value


class PositionFilter:
    """One-Euro filter applied independently to x, y and z."""

    def __init__(
        self,
        min_cutoff: float = 1.0,
        beta: float = 0.5,
        d_cutoff: float = DERIVATIVE_CUTOFF_HZ,
    ):
        if min_cutoff <= 0 or d_cutoff <= 0:
            raise ValueError("cutoff frequencies must be positive")
        self.min_cutoff = min_cutoff
        self.beta = beta
        self.d_cutoff = d_cutoff
        self._state = np.zeros((2, 3), dtype=np.float64)
        self._buf = np.zeros(3, dtype=np.float64)
        self._primed = False

    def reset(self) -> None:
        self._state.fill(0.0)
        self._primed = False

    def filter(self, x: float, y: float, z: float, rate: float) -> tuple[float, float, float]:
        if rate <= 0:
            raise ValueError("rate must be positive")
        buf = self._buf
        buf[0] = x
        buf[1] = y
        buf[2] = z
        if not self._primed:
            self._state[0, :] = buf
            self._state[1, :] = 0.0
            self._primed = True
            return (x, y, z)
        _one_euro_step_jit(buf, self._state, rate, self.min_cutoff, self.beta, self.d_cutoff)
        return (float(buf[0]), float(buf[1]), float(buf[2]))
