"""
================================================================================
TRAJECTORY TRACKER MODULE
================================================================================
Bounded per-joint position history built from pose detections.

Storage is a single numpy arena of shape (joints, max_points, 3) holding
(x, y, frame) rows, used as one ring buffer per joint. Memory is fixed at
construction; the oldest point is overwritten once a joint is full.

A point is appended only when:
    - the joint is selected
    - its confidence reaches the gating threshold
    - its frame differs from the joint's last recorded frame
      (re-delivered or re-rendered detections are ignored)

The tracker is a pure function of (detection stream, selected joints,
threshold, max_points), so identical replays give identical trajectories.
================================================================================
"""

import copy
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np

from configs.config import TrajectoryConfig
from timeline_core.detections import PoseDetection
from timeline_core.smoothing import smooth_trajectory

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrajectoryPoint:
    x: float
    y: float
    frame: int


class TrajectoryTracker:
    """
    Ring-buffered joint trajectories.

    Example:
        >>> tracker = TrajectoryTracker(TrajectoryConfig(selected_joints=(9, 10)))
        >>> tracker.update(pose_result)
        2
        >>> tracker.points(10).shape
        (1, 3)
    """

    def __init__(self, config: Optional[TrajectoryConfig] = None):
        self.config = config or TrajectoryConfig()
        self.max_points = self.config.max_points
        self.min_confidence = self.config.min_confidence
        self._allocate(self.config.selected_joints)

    def _allocate(self, joints: Iterable[int]) -> None:
        self.selected_joints = tuple(dict.fromkeys(int(j) for j in joints))
        self._slots: Dict[int, int] = {joint: i for i, joint in enumerate(self.selected_joints)}
        n = len(self.selected_joints)
        self._arena = np.zeros((n, self.max_points, 3), dtype=float)
        self._head = np.zeros(n, dtype=int)
        self._length = np.zeros(n, dtype=int)

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------

    @classmethod
    def from_stream(
        cls,
        stream: Iterable[PoseDetection],
        selected_joints: Sequence[int],
        min_confidence: float = 0.3,
        max_points: int = 300,
    ) -> "TrajectoryTracker":
        """Replay a detection stream into a fresh tracker."""
        config = TrajectoryConfig(
            selected_joints=tuple(selected_joints),
            max_points=max_points,
            min_confidence=min_confidence,
        )
        tracker = cls(config)
        for result in stream:
            tracker.update(result)
        return tracker

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def _last_frame(self, slot: int) -> Optional[int]:
        if self._length[slot] == 0:
            return None
        last = (self._head[slot] - 1) % self.max_points
        return int(self._arena[slot, last, 2])

    def add_point(self, joint: int, x: float, y: float, frame: int, confidence: float) -> bool:
        """
        Append one sample; returns False when gated, or when the frame is
        not newer than the joint's last point (re-delivered or late).
        """
        slot = self._slots.get(joint)
        if slot is None:
            return False
        if confidence <= self.min_confidence:
            return False
        if not (np.isfinite(x) and np.isfinite(y)):
            return False
        last = self._last_frame(slot)
        if last is not None and int(frame) <= last:
            return False

        head = self._head[slot]
        self._arena[slot, head] = (x, y, frame)
        self._head[slot] = (head + 1) % self.max_points
        self._length[slot] = min(self._length[slot] + 1, self.max_points)
        return True

    def update(self, result: Optional[PoseDetection]) -> int:
        """
        Sample the selected joints of the primary person.

        Returns:
            Number of points appended
        """
        if result is None:
            return 0
        person = result.get_primary_person()
        if person is None:
            return 0

        keypoints, scores = person
        added = 0
        for joint in self.selected_joints:
            if joint >= len(keypoints):
                continue
            x, y = keypoints[joint]
            if self.add_point(joint, float(x), float(y), result.frame_idx, float(scores[joint])):
                added += 1
        return added

    def select_joints(self, joints: Iterable[int]) -> None:
        """Change the tracked joints. Existing history is discarded."""
        self._allocate(joints)
        logger.debug("Tracking joints %s", list(self.selected_joints))

    def clear(self) -> None:
        """Reset every joint's history (feature toggled, seek, new video)."""
        self._head[:] = 0
        self._length[:] = 0

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def points(self, joint: int) -> np.ndarray:
        """Ordered (n, 3) array of (x, y, frame), oldest first."""
        slot = self._slots.get(joint)
        if slot is None:
            return np.empty((0, 3))
        length = self._length[slot]
        if length < self.max_points:
            return self._arena[slot, :length].copy()
        head = self._head[slot]
        return np.concatenate([self._arena[slot, head:], self._arena[slot, :head]])

    def trajectory(self, joint: int) -> List[TrajectoryPoint]:
        return [TrajectoryPoint(float(x), float(y), int(f)) for x, y, f in self.points(joint)]

    def display_path(self, joint: int) -> np.ndarray:
        """Points for the overlay renderer, spline-smoothed if configured."""
        points = self.points(joint)
        if self.config.smooth:
            return smooth_trajectory(points, self.config.smoothing_segments)
        return points[:, :2]

    def length(self, joint: int) -> int:
        slot = self._slots.get(joint)
        return 0 if slot is None else int(self._length[slot])

    def latest_frame(self) -> Optional[int]:
        """Newest frame recorded for any joint (None when empty)."""
        frames = [self._last_frame(slot) for slot in self._slots.values()]
        frames = [frame for frame in frames if frame is not None]
        return max(frames) if frames else None

    def lengths(self) -> Dict[int, int]:
        return {joint: int(self._length[slot]) for joint, slot in self._slots.items()}

    def snapshot(self) -> Dict[int, np.ndarray]:
        return {joint: self.points(joint) for joint in self.selected_joints}

    def copy(self) -> "TrajectoryTracker":
        return copy.deepcopy(self)
