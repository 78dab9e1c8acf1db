"""
Temporal smoothing helpers for speed readouts and trajectory display.
"""
import numpy as np
from collections import deque
from typing import Optional


class MovingAverage:
    """
    Fixed-window mean used to steady the current-speed readout.

    Usage:
        smoother = MovingAverage(window=5)
        for speed in speeds:
            shown = smoother.push(speed)
    """

    def __init__(self, window: int = 5):
        """
        Args:
            window: Number of most recent values averaged (1 = no smoothing)
        """
        if window < 1:
            raise ValueError("window must be at least 1")
        self.window = window
        self._values: deque = deque(maxlen=window)

    def push(self, value: float) -> float:
        self._values.append(value)
        return float(sum(self._values) / len(self._values))

    @property
    def value(self) -> Optional[float]:
        if not self._values:
            return None
        return float(sum(self._values) / len(self._values))

    def __len__(self) -> int:
        return len(self._values)

    def reset(self):
        """Reset smoother state for a new segment."""
        self._values.clear()


def catmull_rom(
    p0: np.ndarray,
    p1: np.ndarray,
    p2: np.ndarray,
    p3: np.ndarray,
    t: np.ndarray,
) -> np.ndarray:
    """
    Uniform Catmull-Rom interpolation between p1 and p2.

    Args:
        p0, p1, p2, p3: Control points as (x, y) arrays
        t: Parameter values in [0, 1], shape (K,)

    Returns:
        Interpolated points, shape (K, 2)
    """
    t = np.asarray(t, dtype=float)[:, None]
    t2 = t * t
    t3 = t2 * t
    return 0.5 * (
        2 * p1
        + (-p0 + p2) * t
        + (2 * p0 - 5 * p1 + 4 * p2 - p3) * t2
        + (-p0 + 3 * p1 - 3 * p2 + p3) * t3
    )


def smooth_trajectory(points: np.ndarray, segments: int = 8) -> np.ndarray:
    """
    Resample a polyline through Catmull-Rom splines for display.

    The curve passes through every original point; endpoints are handled by
    duplicating the first and last control points.

    Args:
        points: Ordered (M, 2) or (M, 3) array; only x, y are used
        segments: Interpolated points per original segment

    Returns:
        (K, 2) array of display points
    """
    xy = np.asarray(points, dtype=float)[:, :2]
    if len(xy) < 3 or segments < 2:
        return xy.copy()

    padded = np.vstack([xy[:1], xy, xy[-1:]])
    t = np.linspace(0.0, 1.0, segments, endpoint=False)

    pieces = [
        catmull_rom(padded[i - 1], padded[i], padded[i + 1], padded[i + 2], t)
        for i in range(1, len(padded) - 2)
    ]
    pieces.append(xy[-1:])
    return np.vstack(pieces)
