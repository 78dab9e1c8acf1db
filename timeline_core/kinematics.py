"""
================================================================================
KINEMATICS MODULE
================================================================================
Limb speed derivation from consecutive position samples.

Live path (per playback session):
    speed = distance_px / pixels_per_meter / dt * unit_factor

    - Samples below the confidence gate are ignored
    - Duplicate frames / timestamps are skipped (no divide-by-zero)
    - Gaps longer than max_gap_s break continuity instead of producing a speed
    - The reported current speed is a moving average over history_length
    - The peak is monotonic non-decreasing until an explicit reset

Offline path:
    speed_profile() differentiates a whole trajectory, optionally after a
    zero-phase Butterworth low-pass (no phase shift, so peaks stay aligned
    with the frames they happened on).
================================================================================
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

import numpy as np
from scipy.signal import butter, sosfiltfilt

from configs.config import KinematicsConfig
from timeline_core.detections import PoseDetection
from timeline_core.smoothing import MovingAverage

logger = logging.getLogger(__name__)


@dataclass
class VelocitySample:
    """Speed readout for one limb, in the configured unit."""
    current: float = 0.0
    peak: float = 0.0


@dataclass
class _LimbState:
    smoother: MovingAverage
    position: Optional[Tuple[float, float]] = None
    time: Optional[float] = None
    frame: Optional[int] = None
    sample: VelocitySample = field(default_factory=VelocitySample)

    def break_continuity(self) -> None:
        self.position = None
        self.time = None
        self.frame = None
        self.smoother.reset()
        self.sample.current = 0.0


class KinematicsEngine:
    """
    Per-limb current and peak speed.

    Example:
        >>> engine = KinematicsEngine()
        >>> engine.update("right_wrist", 100, 200, time=0.0, frame=0, confidence=0.9)
        >>> engine.update("right_wrist", 110, 200, time=1/30, frame=1, confidence=0.9)
        >>> engine.sample("right_wrist").peak
        10.8
    """

    def __init__(self, config: Optional[KinematicsConfig] = None):
        self.config = config or KinematicsConfig()
        self._limbs: Dict[str, _LimbState] = {}

    def _state(self, limb: str) -> _LimbState:
        state = self._limbs.get(limb)
        if state is None:
            state = _LimbState(smoother=MovingAverage(self.config.history_length))
            self._limbs[limb] = state
        return state

    # ------------------------------------------------------------------
    # Calibration
    # ------------------------------------------------------------------

    def pixels_per_meter(self, pose: Optional[PoseDetection] = None) -> float:
        """
        Scene scale used to convert pixel distances.

        A fixed calibration wins; otherwise the primary person's box height
        is taken as person_height_m.
        """
        if self.config.pixels_per_meter:
            return float(self.config.pixels_per_meter)
        if pose is not None:
            box = pose.primary_box()
            if box is not None:
                height_px = float(box[3] - box[1])
                if height_px > 0:
                    return height_px / self.config.person_height_m
        return self.config.fallback_pixels_per_meter

    # ------------------------------------------------------------------
    # Live updates
    # ------------------------------------------------------------------

    def update(
        self,
        limb: str,
        x: float,
        y: float,
        time: float,
        frame: int,
        confidence: float,
        pixels_per_meter: Optional[float] = None,
    ) -> VelocitySample:
        """
        Feed one position sample for a limb.

        Returns:
            The limb's (possibly unchanged) velocity sample
        """
        state = self._state(limb)
        if confidence <= self.config.min_confidence:
            return state.sample
        if not (math.isfinite(x) and math.isfinite(y)):
            return state.sample

        if state.time is None:
            state.position, state.time, state.frame = (x, y), time, frame
            return state.sample

        dt = time - state.time
        if frame == state.frame or dt == 0:
            return state.sample

        if dt < 0 or dt > self.config.max_gap_s:
            state.break_continuity()
            state.position, state.time, state.frame = (x, y), time, frame
            return state.sample

        scale = pixels_per_meter or self.pixels_per_meter()
        distance_px = math.hypot(x - state.position[0], y - state.position[1])
        speed = distance_px / scale / dt * self.config.unit_factor

        state.position, state.time, state.frame = (x, y), time, frame

        if speed > self.config.max_speed:
            logger.debug("Rejected %.1f speed spike for %s at frame %d", speed, limb, frame)
            return state.sample

        state.sample.current = state.smoother.push(speed)
        state.sample.peak = max(state.sample.peak, state.sample.current)
        return state.sample

    def update_from_pose(
        self,
        pose: Optional[PoseDetection],
        time: float,
        frame: int,
    ) -> Dict[str, VelocitySample]:
        """Feed every tracked limb from the primary person of a pose result."""
        if pose is None:
            return self.samples()
        person = pose.get_primary_person()
        if person is None:
            return self.samples()

        keypoints, scores = person
        scale = self.pixels_per_meter(pose)
        for limb, joint in self.config.tracked_limbs.items():
            x, y = keypoints[joint]
            self.update(limb, float(x), float(y), time, frame, float(scores[joint]), scale)
        return self.samples()

    # ------------------------------------------------------------------
    # Queries and resets
    # ------------------------------------------------------------------

    def sample(self, limb: str) -> VelocitySample:
        state = self._limbs.get(limb)
        if state is None:
            return VelocitySample()
        return VelocitySample(state.sample.current, state.sample.peak)

    def samples(self) -> Dict[str, VelocitySample]:
        return {limb: self.sample(limb) for limb in self._limbs}

    def on_seek(self, time: float) -> None:
        """
        Seeking to the start begins a new session (peaks reset); any other
        seek only breaks continuity so no speed spans the jump.
        """
        if time <= self.config.reset_epsilon_s:
            self.reset()
            return
        for state in self._limbs.values():
            state.break_continuity()

    def reset(self, limb: Optional[str] = None) -> None:
        if limb is None:
            self._limbs.clear()
        else:
            self._limbs.pop(limb, None)

    def profile(
        self,
        points: np.ndarray,
        fps: float,
        pixels_per_meter: Optional[float] = None,
    ) -> np.ndarray:
        """speed_profile() with this engine's scale, unit and low-pass cutoff."""
        return speed_profile(
            points,
            fps,
            pixels_per_meter or self.pixels_per_meter(),
            unit_factor=self.config.unit_factor,
            cutoff_hz=self.config.profile_cutoff_hz,
        )


# ==============================================================================
# OFFLINE SPEED PROFILES
# ==============================================================================

def butterworth_filter(
    data: np.ndarray,
    cutoff_freq: float,
    sample_rate: float,
    order: int = 4,
) -> np.ndarray:
    """
    Zero-phase Butterworth low-pass.

    Args:
        data: 1D array of values to filter
        cutoff_freq: Cutoff frequency in Hz
        sample_rate: Sampling rate in Hz (video FPS)
        order: Filter order (higher = sharper cutoff)

    Returns:
        Filtered data (unchanged when too short to filter)
    """
    data = np.asarray(data, dtype=float)
    if len(data) < 15:
        return data

    nyquist = sample_rate / 2.0
    normalized_cutoff = float(np.clip(cutoff_freq / nyquist, 0.01, 0.99))

    sos = butter(order, normalized_cutoff, btype="low", output="sos")
    return sosfiltfilt(sos, data)


def speed_profile(
    points: np.ndarray,
    fps: float,
    pixels_per_meter: float,
    unit_factor: float = 3.6,
    cutoff_hz: Optional[float] = None,
    order: int = 4,
) -> np.ndarray:
    """
    Speed at every point of a trajectory.

    Args:
        points: (n, 3) array of (x, y, frame), frames increasing
        fps: Frame rate used to turn frame numbers into seconds
        pixels_per_meter: Scene scale
        unit_factor: Multiplier from m/s to the reported unit
        cutoff_hz: Low-pass cutoff applied to x and y before differentiating

    Returns:
        (n,) array of speeds; zeros when fewer than two points
    """
    points = np.asarray(points, dtype=float)
    if len(points) < 2:
        return np.zeros(len(points))

    x, y = points[:, 0], points[:, 1]
    t = points[:, 2] / fps
    if cutoff_hz:
        x = butterworth_filter(x, cutoff_hz, fps, order)
        y = butterworth_filter(y, cutoff_hz, fps, order)

    vx = np.gradient(x, t)
    vy = np.gradient(y, t)
    return np.hypot(vx, vy) / pixels_per_meter * unit_factor
